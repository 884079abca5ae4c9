"""Commission policy writes and the effective-rate lookup.

``platform_rate + team_leader_rate == total_rate`` is enforced here, when a
policy is written. Resolution never re-validates it.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from courierhub import models
from courierhub.services.audit import audit_event
from courierhub.services.errors import InvalidPolicyError, NotFoundError
from courierhub.services.policy_config import (
    DEPOSIT_RATE_KEY,
    HELPER_POLICY_TYPE,
    CommissionRates,
    PolicyConfig,
)

logger = logging.getLogger("courierhub")


def validate_shares(total_rate: int, platform_rate: int, team_leader_rate: int) -> None:
    for name, value in (
        ("total_rate", total_rate),
        ("platform_rate", platform_rate),
        ("team_leader_rate", team_leader_rate),
    ):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidPolicyError(f"{name} must be an integer percent", details={name: value})
        if value < 0 or value > 100:
            raise InvalidPolicyError(f"{name} must be between 0 and 100", details={name: value})
    if platform_rate + team_leader_rate != total_rate:
        raise InvalidPolicyError(
            "platform_rate + team_leader_rate must equal total_rate",
            details={
                "total_rate": total_rate,
                "platform_rate": platform_rate,
                "team_leader_rate": team_leader_rate,
            },
        )


def set_global_policy(
    db: Session,
    *,
    total_rate: int,
    platform_rate: int,
    team_leader_rate: int,
    actor_id: int | None,
) -> models.CommissionPolicy:
    validate_shares(total_rate, platform_rate, team_leader_rate)

    policy = (
        db.query(models.CommissionPolicy)
        .filter(models.CommissionPolicy.policy_type == HELPER_POLICY_TYPE)
        .first()
    )
    if policy is None:
        policy = models.CommissionPolicy(policy_type=HELPER_POLICY_TYPE)
        db.add(policy)
    policy.total_rate = total_rate
    policy.platform_rate = platform_rate
    policy.team_leader_rate = team_leader_rate
    policy.is_active = True
    policy.updated_by = actor_id
    db.flush()

    audit_event(
        "commission_policy.global_set",
        actor_id,
        {"total_rate": total_rate, "platform_rate": platform_rate, "team_leader_rate": team_leader_rate},
        db=db,
    )
    logger.info("commission_policy_updated", extra={"scope": "global", "total_rate": total_rate})
    return policy


def get_global_policy(db: Session) -> models.CommissionPolicy | None:
    return (
        db.query(models.CommissionPolicy)
        .filter(models.CommissionPolicy.policy_type == HELPER_POLICY_TYPE)
        .first()
    )


def set_team_override(
    db: Session,
    config: PolicyConfig,
    *,
    team_id: int,
    platform_rate: int | None = None,
    team_leader_rate: int | None = None,
    actor_id: int | None,
) -> models.TeamCommissionOverride:
    team = db.get(models.Team, team_id)
    if team is None:
        raise NotFoundError("Team not found", code="team_not_found", details={"team_id": team_id})

    if platform_rate is None:
        platform_rate = config.default_team_platform_rate
    if team_leader_rate is None:
        team_leader_rate = config.default_team_leader_share
    total_rate = int(platform_rate) + int(team_leader_rate)
    validate_shares(total_rate, platform_rate, team_leader_rate)

    row = (
        db.query(models.TeamCommissionOverride)
        .filter(models.TeamCommissionOverride.team_id == team_id)
        .first()
    )
    if row is None:
        row = models.TeamCommissionOverride(team_id=team_id)
        db.add(row)
    row.total_rate = total_rate
    row.platform_rate = platform_rate
    row.team_leader_rate = team_leader_rate
    row.updated_by = actor_id
    db.flush()

    audit_event(
        "commission_policy.team_set",
        actor_id,
        {"team_id": team_id, "platform_rate": platform_rate, "team_leader_rate": team_leader_rate},
        db=db,
    )
    return row


def remove_team_override(db: Session, *, team_id: int, actor_id: int | None) -> bool:
    row = (
        db.query(models.TeamCommissionOverride)
        .filter(models.TeamCommissionOverride.team_id == team_id)
        .first()
    )
    if row is None:
        return False
    db.delete(row)
    db.flush()
    audit_event("commission_policy.team_removed", actor_id, {"team_id": team_id}, db=db)
    return True


def set_helper_override(
    db: Session,
    *,
    helper_id: int,
    commission_rate: int,
    actor_id: int | None,
) -> models.HelperCommissionOverride:
    # A personal rate is all platform share; no team leader earns on it.
    validate_shares(commission_rate, commission_rate, 0)

    row = (
        db.query(models.HelperCommissionOverride)
        .filter(models.HelperCommissionOverride.helper_id == helper_id)
        .first()
    )
    if row is None:
        row = models.HelperCommissionOverride(helper_id=helper_id)
        db.add(row)
    row.total_rate = commission_rate
    row.platform_rate = commission_rate
    row.team_leader_rate = 0
    row.updated_by = actor_id
    db.flush()

    audit_event(
        "commission_policy.helper_set",
        actor_id,
        {"helper_id": helper_id, "commission_rate": commission_rate},
        db=db,
    )
    return row


def remove_helper_override(db: Session, *, helper_id: int, actor_id: int | None) -> bool:
    row = (
        db.query(models.HelperCommissionOverride)
        .filter(models.HelperCommissionOverride.helper_id == helper_id)
        .first()
    )
    if row is None:
        return False
    db.delete(row)
    db.flush()
    audit_event("commission_policy.helper_removed", actor_id, {"helper_id": helper_id}, db=db)
    return True


def set_deposit_rate(db: Session, *, percent: int, actor_id: int | None) -> models.SystemSetting:
    if isinstance(percent, bool) or not isinstance(percent, int) or percent <= 0 or percent > 100:
        raise InvalidPolicyError(
            "deposit rate must be an integer percent between 1 and 100",
            code="invalid_deposit_rate",
            details={"percent": percent},
        )
    row = db.query(models.SystemSetting).filter(models.SystemSetting.key == DEPOSIT_RATE_KEY).first()
    if row is None:
        row = models.SystemSetting(key=DEPOSIT_RATE_KEY, value=str(percent))
        db.add(row)
    row.value = str(percent)
    row.updated_by = actor_id
    db.flush()
    audit_event("system_setting.deposit_rate_set", actor_id, {"percent": percent}, db=db)
    return row


def _active_team_for_helper(db: Session, helper_id: int) -> models.Team | None:
    return (
        db.query(models.Team)
        .join(models.TeamMember, models.TeamMember.team_id == models.Team.id)
        .filter(models.TeamMember.helper_id == helper_id)
        .filter(models.TeamMember.is_active.is_(True))
        .filter(models.Team.is_active.is_(True))
        .first()
    )


def get_effective_rate(db: Session, helper_id: int, config: PolicyConfig) -> CommissionRates:
    """Helper override, then team override, then global policy, then defaults."""

    helper_row = (
        db.query(models.HelperCommissionOverride)
        .filter(models.HelperCommissionOverride.helper_id == helper_id)
        .first()
    )
    if helper_row is not None:
        return CommissionRates(
            total_rate=int(helper_row.total_rate),
            platform_rate=int(helper_row.platform_rate),
            team_leader_rate=int(helper_row.team_leader_rate),
            tier=models.PolicyTier.helper_override.value,
        )

    team = _active_team_for_helper(db, helper_id)
    if team is not None:
        team_row = (
            db.query(models.TeamCommissionOverride)
            .filter(models.TeamCommissionOverride.team_id == team.id)
            .first()
        )
        if team_row is not None:
            return CommissionRates(
                total_rate=int(team_row.total_rate),
                platform_rate=int(team_row.platform_rate),
                team_leader_rate=int(team_row.team_leader_rate),
                tier=models.PolicyTier.team_override.value,
                team_leader_id=team.leader_id,
            )

    return config.base_rates
