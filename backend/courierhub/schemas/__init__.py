from courierhub.schemas.orders import (
    ApplicationCreate,
    ApplicationRead,
    CancelRequest,
    ClosingReportCorrect,
    ClosingReportRead,
    ClosingReportSubmit,
    DisputeCreate,
    DisputeRead,
    DisputeResolve,
    ExtraCostIn,
    OrderCreate,
    OrderRead,
    OrderTransitionsRead,
    RateSnapshotRead,
    ResumeRequest,
    RollbackRequest,
    SelectHelperRead,
    SelectHelperRequest,
    StatusChangeRequest,
    TransitionRead,
)
from courierhub.schemas.policies import (
    CommissionPolicyRead,
    DepositRateRead,
    DepositRateWrite,
    EffectiveRateRead,
    GlobalPolicyWrite,
    HelperOverrideRead,
    HelperOverrideWrite,
    TeamOverrideRead,
    TeamOverrideWrite,
)
from courierhub.schemas.settlements import (
    AdminAdjustmentCreate,
    ClosingSubmitRead,
    DeductionCreate,
    DeductionListRead,
    DeductionRead,
    DeductionReverse,
    HelperPayoutRead,
    IncidentDeductionCreate,
    LedgerResultRead,
    PaySettlementRequest,
    PayoutPreviewRequest,
    SettlementPreviewRequest,
    SettlementRead,
    SettlementResultRead,
)

__all__ = [
    "AdminAdjustmentCreate",
    "ApplicationCreate",
    "ApplicationRead",
    "CancelRequest",
    "ClosingReportCorrect",
    "ClosingReportRead",
    "ClosingReportSubmit",
    "ClosingSubmitRead",
    "CommissionPolicyRead",
    "DeductionCreate",
    "DeductionListRead",
    "DeductionRead",
    "DeductionReverse",
    "DepositRateRead",
    "DepositRateWrite",
    "DisputeCreate",
    "DisputeRead",
    "DisputeResolve",
    "EffectiveRateRead",
    "ExtraCostIn",
    "GlobalPolicyWrite",
    "HelperOverrideRead",
    "HelperOverrideWrite",
    "HelperPayoutRead",
    "IncidentDeductionCreate",
    "LedgerResultRead",
    "OrderCreate",
    "OrderRead",
    "OrderTransitionsRead",
    "PaySettlementRequest",
    "PayoutPreviewRequest",
    "RateSnapshotRead",
    "ResumeRequest",
    "RollbackRequest",
    "SelectHelperRead",
    "SelectHelperRequest",
    "SettlementPreviewRequest",
    "SettlementRead",
    "SettlementResultRead",
    "StatusChangeRequest",
    "TeamOverrideRead",
    "TeamOverrideWrite",
    "TransitionRead",
]
