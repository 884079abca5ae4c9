from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from courierhub import models
from courierhub.config import Settings, settings
from courierhub.services.settlement_calculator import percent_to_rate

logger = logging.getLogger("courierhub")

DEPOSIT_RATE_KEY = "deposit_rate"
HELPER_POLICY_TYPE = "helper"


@dataclass(frozen=True)
class CommissionRates:
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    tier: str
    team_leader_id: int | None = None


@dataclass(frozen=True)
class PolicyConfig:
    """Configuration captured once at the start of an operation.

    Lifecycle operations receive this object instead of reading settings or
    the ``system_settings`` table while their transaction is open.
    """

    deposit_rate_percent: int
    default_etc_price_per_unit: int
    default_rates: CommissionRates
    default_team_platform_rate: int
    default_team_leader_share: int
    global_rates: CommissionRates | None = None

    @property
    def deposit_rate(self) -> Decimal:
        return percent_to_rate(self.deposit_rate_percent)

    @property
    def base_rates(self) -> CommissionRates:
        """Global policy when configured, otherwise the hard defaults."""

        return self.global_rates or self.default_rates


def _percent_setting(raw: str | None, fallback: int, *, key: str) -> int:
    if raw is None:
        return fallback
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        logger.warning("invalid_system_setting", extra={"key": key, "value": raw})
        return fallback
    if value.is_nan() or value <= 0 or value > 100:
        logger.warning("invalid_system_setting", extra={"key": key, "value": raw})
        return fallback
    return int(value)


def load_policy_config(db: Session, base: Settings | None = None) -> PolicyConfig:
    base = base or settings

    rows = (
        db.query(models.SystemSetting)
        .filter(models.SystemSetting.key.in_([DEPOSIT_RATE_KEY]))
        .all()
    )
    stored = {r.key: r.value for r in rows}

    global_rates = None
    policy = (
        db.query(models.CommissionPolicy)
        .filter(models.CommissionPolicy.policy_type == HELPER_POLICY_TYPE)
        .filter(models.CommissionPolicy.is_active.is_(True))
        .first()
    )
    if policy is not None:
        global_rates = CommissionRates(
            total_rate=int(policy.total_rate),
            platform_rate=int(policy.platform_rate),
            team_leader_rate=int(policy.team_leader_rate),
            tier=models.PolicyTier.global_policy.value,
        )

    return PolicyConfig(
        deposit_rate_percent=_percent_setting(
            stored.get(DEPOSIT_RATE_KEY), base.default_deposit_rate_percent, key=DEPOSIT_RATE_KEY
        ),
        default_etc_price_per_unit=int(base.default_etc_price_per_unit),
        default_rates=CommissionRates(
            total_rate=int(base.default_commission_rate),
            platform_rate=int(base.default_platform_rate),
            team_leader_rate=int(base.default_team_leader_rate),
            tier=models.PolicyTier.default.value,
        ),
        default_team_platform_rate=int(base.default_team_platform_rate),
        default_team_leader_share=int(base.default_team_leader_share),
        global_rates=global_rates,
    )
