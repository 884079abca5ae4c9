from courierhub.models.domain import (
    AuditLog,
    ClosingReport,
    CommissionPolicy,
    DeductionLedgerEntry,
    Dispute,
    DomainEvent,
    HelperCommissionOverride,
    IdempotencyKey,
    Order,
    OrderApplication,
    Settlement,
    SystemSetting,
    Team,
    TeamCommissionOverride,
    TeamMember,
)
from courierhub.models.statuses import (
    ActorRole,
    ApplicationStatus,
    DeductionSourceType,
    DisputeStatus,
    OrderStatus,
    PaymentStatus,
    PolicyTier,
    RateSource,
    SettlementStatus,
)

__all__ = [
    "ActorRole",
    "ApplicationStatus",
    "AuditLog",
    "ClosingReport",
    "CommissionPolicy",
    "DeductionLedgerEntry",
    "DeductionSourceType",
    "Dispute",
    "DisputeStatus",
    "DomainEvent",
    "HelperCommissionOverride",
    "IdempotencyKey",
    "Order",
    "OrderApplication",
    "OrderStatus",
    "PaymentStatus",
    "PolicyTier",
    "RateSource",
    "Settlement",
    "SettlementStatus",
    "SystemSetting",
    "Team",
    "TeamCommissionOverride",
    "TeamMember",
]
