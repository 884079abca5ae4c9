from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GlobalPolicyWrite(BaseModel):
    total_rate: int = Field(..., ge=0, le=100)
    platform_rate: int = Field(..., ge=0, le=100)
    team_leader_rate: int = Field(0, ge=0, le=100)


class CommissionPolicyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    policy_type: str
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    is_active: bool
    updated_by: Optional[int] = None
    updated_at: Optional[datetime] = None


class TeamOverrideWrite(BaseModel):
    # Omitted shares fall back to the configured team defaults.
    platform_rate: Optional[int] = Field(None, ge=0, le=100)
    team_leader_rate: Optional[int] = Field(None, ge=0, le=100)


class TeamOverrideRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    team_id: int
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    updated_by: Optional[int] = None
    updated_at: Optional[datetime] = None


class HelperOverrideWrite(BaseModel):
    commission_rate: int = Field(..., ge=0, le=100)


class HelperOverrideRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    helper_id: int
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    updated_by: Optional[int] = None
    updated_at: Optional[datetime] = None


class EffectiveRateRead(BaseModel):
    helper_id: int
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    source: str
    team_leader_id: Optional[int] = None


class DepositRateWrite(BaseModel):
    # Range is enforced by the service so the error carries a domain code.
    percent: int


class DepositRateRead(BaseModel):
    percent: int
