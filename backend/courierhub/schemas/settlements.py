from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from courierhub.models import DeductionSourceType
from courierhub.schemas.orders import ClosingReportRead, ExtraCostIn


class SettlementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    helper_id: int

    total_rate: int
    platform_rate: int
    team_leader_rate: int
    team_leader_id: Optional[int] = None
    rate_source: str
    policy_tier: Optional[str] = None

    total_billable_count: int
    delivery_return_amount: int
    etc_amount: int
    extra_costs_total: int
    supply_amount: int
    vat_amount: int
    total_amount: int
    deposit_rate_percent: int
    deposit_amount: int
    balance_amount: int

    platform_fee: int
    platform_commission: int
    team_leader_incentive: int
    deduction_total: int
    net_amount: int
    driver_payout: int

    status: str
    hold_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    payable_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    version: int


class ClosingSubmitRead(BaseModel):
    report: ClosingReportRead
    settlement: SettlementRead
    order_status: str
    created: bool


class PaySettlementRequest(BaseModel):
    payment_reference: Optional[str] = Field(None, max_length=128)


class DeductionCreate(BaseModel):
    source_type: DeductionSourceType
    source_id: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(..., gt=0)
    reason: Optional[str] = None


class DeductionReverse(BaseModel):
    source_type: DeductionSourceType
    source_id: str = Field(..., min_length=1, max_length=128)


class IncidentDeductionCreate(BaseModel):
    incident_id: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(..., gt=0)
    reason: Optional[str] = None


class AdminAdjustmentCreate(BaseModel):
    adjustment_key: str = Field(..., min_length=1, max_length=128)
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=3)


class DeductionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    settlement_id: int
    source_type: str
    source_id: str
    amount: int
    reason: Optional[str] = None
    applied_by: Optional[int] = None
    applied_at: Optional[datetime] = None
    reversed_by: Optional[int] = None
    reversed_at: Optional[datetime] = None
    is_active: bool


class LedgerResultRead(BaseModel):
    entry: DeductionRead
    applied: bool
    settlement: SettlementRead


class DeductionListRead(BaseModel):
    items: List[DeductionRead]
    deduction_total: int
    net_amount: int
    driver_payout: int


class SettlementPreviewRequest(BaseModel):
    """Inputs for a calculator-only preview; nothing is persisted."""

    delivered_count: int = Field(..., ge=0)
    returned_count: int = Field(0, ge=0)
    etc_count: int = Field(0, ge=0)
    unit_price: int = Field(..., ge=0)
    etc_price_per_unit: Optional[int] = Field(None, ge=0)
    extra_costs: List[ExtraCostIn] = Field(default_factory=list)
    deposit_rate_percent: Optional[int] = Field(None, gt=0, le=100)


class PayoutPreviewRequest(SettlementPreviewRequest):
    commission_rate: int = Field(..., ge=0, le=100)
    platform_rate: Optional[int] = Field(None, ge=0, le=100)
    team_leader_rate: int = Field(0, ge=0, le=100)
    damage_deduction: int = Field(0, ge=0)


class SettlementResultRead(BaseModel):
    total_billable_count: int
    delivery_return_amount: int
    etc_amount: int
    extra_costs_total: int
    supply_amount: int
    vat_amount: int
    total_amount: int
    deposit_amount: int
    balance_amount: int


class HelperPayoutRead(SettlementResultRead):
    platform_fee_rate: int
    platform_fee: int
    platform_commission: int
    team_leader_incentive: int
    damage_deduction: int
    driver_payout: int
