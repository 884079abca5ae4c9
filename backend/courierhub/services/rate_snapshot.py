from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from courierhub import models
from courierhub.models import RateSource
from courierhub.services.commission_policy import get_effective_rate
from courierhub.services.policy_config import CommissionRates, PolicyConfig


@dataclass(frozen=True)
class RateSnapshot:
    total_rate: int
    platform_rate: int
    team_leader_rate: int
    team_leader_id: int | None
    source: str
    policy_tier: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def snapshot_from_application(app: models.OrderApplication) -> RateSnapshot:
    return RateSnapshot(
        total_rate=int(app.snapshot_total_rate),
        platform_rate=int(app.snapshot_platform_rate),
        team_leader_rate=int(app.snapshot_team_leader_rate),
        team_leader_id=app.snapshot_team_leader_id,
        source=RateSource.application_snapshot.value,
        policy_tier=app.snapshot_policy_tier,
    )


def _order_has_snapshot(order: models.Order) -> bool:
    return (
        order.snapshot_total_rate is not None
        and order.snapshot_platform_rate is not None
        and order.snapshot_team_leader_rate is not None
    )


def resolve_rate_snapshot(
    db: Session, order: models.Order, helper_id: int, config: PolicyConfig
) -> RateSnapshot:
    """Commission rate that applies to ``order`` performed by ``helper_id``.

    Priority: the helper's application snapshot, then the order's creation
    snapshot, then a live effective-rate lookup. The winning tier is reported
    in ``source``.
    """

    application = (
        db.query(models.OrderApplication)
        .filter(models.OrderApplication.order_id == order.id)
        .filter(models.OrderApplication.helper_id == helper_id)
        .first()
    )
    if application is not None and application.has_rate_snapshot:
        return snapshot_from_application(application)

    if _order_has_snapshot(order):
        return RateSnapshot(
            total_rate=int(order.snapshot_total_rate),
            platform_rate=int(order.snapshot_platform_rate),
            team_leader_rate=int(order.snapshot_team_leader_rate),
            team_leader_id=None,
            source=RateSource.order_snapshot.value,
            policy_tier=order.snapshot_policy_tier,
        )

    rates = get_effective_rate(db, helper_id, config)
    return RateSnapshot(
        total_rate=rates.total_rate,
        platform_rate=rates.platform_rate,
        team_leader_rate=rates.team_leader_rate,
        team_leader_id=rates.team_leader_id,
        source=RateSource.effective_lookup.value,
        policy_tier=rates.tier,
    )


def freeze_rates_on_application(
    application: models.OrderApplication, rates: CommissionRates, now: datetime | None = None
) -> None:
    application.snapshot_total_rate = rates.total_rate
    application.snapshot_platform_rate = rates.platform_rate
    application.snapshot_team_leader_rate = rates.team_leader_rate
    application.snapshot_team_leader_id = rates.team_leader_id
    application.snapshot_policy_tier = rates.tier
    application.snapshot_at = now or datetime.now(timezone.utc)


def freeze_rates_on_order(order: models.Order, rates: CommissionRates) -> None:
    order.snapshot_total_rate = rates.total_rate
    order.snapshot_platform_rate = rates.platform_rate
    order.snapshot_team_leader_rate = rates.team_leader_rate
    order.snapshot_policy_tier = rates.tier
