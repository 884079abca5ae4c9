from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class OrderCreate(BaseModel):
    unit_price: int = Field(..., ge=0)
    etc_price_per_unit: Optional[int] = Field(None, ge=0)
    title: Optional[str] = Field(None, max_length=255)
    memo: Optional[str] = None
    # Admin-only: create on behalf of a requester.
    requester_id: Optional[int] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    requester_id: int
    title: Optional[str] = None
    memo: Optional[str] = None
    status: str
    payment_status: str
    matched_helper_id: Optional[int] = None
    matched_at: Optional[datetime] = None
    unit_price: int
    etc_price_per_unit: Optional[int] = None
    snapshot_total_rate: Optional[int] = None
    snapshot_platform_rate: Optional[int] = None
    snapshot_team_leader_rate: Optional[int] = None
    snapshot_policy_tier: Optional[str] = None
    closed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderTransitionsRead(BaseModel):
    current: str
    known: bool
    next_valid: List[str]
    recovery: List[str]


class TransitionRead(BaseModel):
    order: OrderRead
    from_status: str
    to_status: str
    changed: bool


class StatusChangeRequest(BaseModel):
    to_status: str = Field(..., min_length=1, max_length=32)
    reason: Optional[str] = None


class RollbackRequest(BaseModel):
    to_status: str = Field(..., min_length=1, max_length=32)
    reason: str = Field(..., min_length=3)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ResumeRequest(BaseModel):
    to_status: str = Field(..., min_length=1, max_length=32)
    payment_reference: Optional[str] = Field(None, max_length=128)


class ApplicationCreate(BaseModel):
    message: Optional[str] = None


class ApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    helper_id: int
    status: str
    message: Optional[str] = None
    snapshot_total_rate: Optional[int] = None
    snapshot_platform_rate: Optional[int] = None
    snapshot_team_leader_rate: Optional[int] = None
    snapshot_team_leader_id: Optional[int] = None
    snapshot_policy_tier: Optional[str] = None
    snapshot_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SelectHelperRequest(BaseModel):
    helper_id: int


class RateSnapshotRead(BaseModel):
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    team_leader_id: Optional[int] = None
    source: str
    policy_tier: Optional[str] = None


class SelectHelperRead(BaseModel):
    order: OrderRead
    application: ApplicationRead
    rate: RateSnapshotRead
    created: bool


class ExtraCostIn(BaseModel):
    label: str = Field(..., max_length=128)
    amount: int = Field(..., ge=0)


class ClosingReportSubmit(BaseModel):
    delivered_count: int = Field(..., ge=0)
    returned_count: int = Field(0, ge=0)
    etc_count: int = Field(0, ge=0)
    etc_price_per_unit: Optional[int] = Field(None, ge=0)
    extra_costs: List[ExtraCostIn] = Field(default_factory=list)
    # Photo/document references, e.g. {"url": "...", "kind": "photo"}.
    evidence: List[dict[str, Any]] = Field(default_factory=list)
    memo: Optional[str] = None


class ClosingReportCorrect(ClosingReportSubmit):
    reason: str = Field(..., min_length=3)


class ClosingReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    helper_id: int
    delivered_count: int
    returned_count: int
    etc_count: int
    etc_price_per_unit: Optional[int] = None
    extra_costs: Optional[List[dict[str, Any]]] = None
    evidence: Optional[List[dict[str, Any]]] = None
    memo: Optional[str] = None
    corrected_by: Optional[int] = None
    corrected_at: Optional[datetime] = None


class DisputeCreate(BaseModel):
    reason: str = Field(..., min_length=3)


class DisputeResolve(BaseModel):
    outcome: Literal["resolved", "rejected"]
    deduction_amount: Optional[int] = Field(None, gt=0)
    note: Optional[str] = None


class DisputeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    settlement_id: Optional[int] = None
    opened_by: int
    reason: str
    status: str
    opened_from_status: str
    deduction_amount: Optional[int] = None
    resolution_note: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
