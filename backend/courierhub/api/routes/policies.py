# ruff: noqa: B008

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from courierhub.api.deps import get_actor, get_db, require_roles
from courierhub.database import atomic
from courierhub.models import ActorRole
from courierhub.schemas import (
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
from courierhub.services import commission_policy
from courierhub.services.order_lifecycle import Actor
from courierhub.services.policy_config import load_policy_config

router = APIRouter(prefix="/commission-policies", tags=["commission-policies"])

_ADMIN = Depends(require_roles(ActorRole.admin))


@router.get("/global", response_model=CommissionPolicyRead)
def get_global_policy(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    policy = commission_policy.get_global_policy(db)
    if policy is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No global policy configured")
    return policy


@router.put("/global", response_model=CommissionPolicyRead)
def set_global_policy(payload: GlobalPolicyWrite, db: Session = Depends(get_db), actor: Actor = _ADMIN):
    with atomic(db):
        policy = commission_policy.set_global_policy(
            db,
            total_rate=payload.total_rate,
            platform_rate=payload.platform_rate,
            team_leader_rate=payload.team_leader_rate,
            actor_id=actor.id,
        )
    return policy


@router.put("/teams/{team_id}", response_model=TeamOverrideRead)
def set_team_override(
    team_id: int, payload: TeamOverrideWrite, db: Session = Depends(get_db), actor: Actor = _ADMIN
):
    with atomic(db):
        row = commission_policy.set_team_override(
            db,
            load_policy_config(db),
            team_id=team_id,
            platform_rate=payload.platform_rate,
            team_leader_rate=payload.team_leader_rate,
            actor_id=actor.id,
        )
    return row


@router.delete("/teams/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_team_override(team_id: int, db: Session = Depends(get_db), actor: Actor = _ADMIN):
    with atomic(db):
        removed = commission_policy.remove_team_override(db, team_id=team_id, actor_id=actor.id)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team override not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/helpers/{helper_id}", response_model=HelperOverrideRead)
def set_helper_override(
    helper_id: int, payload: HelperOverrideWrite, db: Session = Depends(get_db), actor: Actor = _ADMIN
):
    with atomic(db):
        row = commission_policy.set_helper_override(
            db, helper_id=helper_id, commission_rate=payload.commission_rate, actor_id=actor.id
        )
    return row


@router.delete("/helpers/{helper_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_helper_override(helper_id: int, db: Session = Depends(get_db), actor: Actor = _ADMIN):
    with atomic(db):
        removed = commission_policy.remove_helper_override(db, helper_id=helper_id, actor_id=actor.id)
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Helper override not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/helpers/{helper_id}/effective", response_model=EffectiveRateRead)
def get_effective_rate(helper_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    rates = commission_policy.get_effective_rate(db, helper_id, load_policy_config(db))
    return EffectiveRateRead(
        helper_id=helper_id,
        total_rate=rates.total_rate,
        platform_rate=rates.platform_rate,
        team_leader_rate=rates.team_leader_rate,
        source=rates.tier,
        team_leader_id=rates.team_leader_id,
    )


@router.get("/deposit-rate", response_model=DepositRateRead)
def get_deposit_rate(db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return DepositRateRead(percent=load_policy_config(db).deposit_rate_percent)


@router.put("/deposit-rate", response_model=DepositRateRead)
def set_deposit_rate(payload: DepositRateWrite, db: Session = Depends(get_db), actor: Actor = _ADMIN):
    with atomic(db):
        row = commission_policy.set_deposit_rate(db, percent=payload.percent, actor_id=actor.id)
    return DepositRateRead(percent=int(row.value))
