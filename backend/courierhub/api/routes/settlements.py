# ruff: noqa: B008

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from courierhub.api.deps import (
    get_actor,
    get_correlation_id,
    get_db,
    idempotency_key,
    require_roles,
)
from courierhub.api.idempotent import idempotent_response
from courierhub.database import atomic
from courierhub.models import ActorRole
from courierhub.schemas import (
    DeductionCreate,
    DeductionListRead,
    DeductionRead,
    DeductionReverse,
    HelperPayoutRead,
    LedgerResultRead,
    PaySettlementRequest,
    PayoutPreviewRequest,
    SettlementPreviewRequest,
    SettlementRead,
    SettlementResultRead,
)
from courierhub.services import deduction_ledger
from courierhub.services import order_lifecycle as lifecycle
from courierhub.services.order_lifecycle import Actor
from courierhub.services.policy_config import PolicyConfig, load_policy_config
from courierhub.services.settlement_calculator import (
    ClosingData,
    compute_helper_payout,
    compute_settlement,
    parse_extra_costs,
    percent_to_rate,
)

router = APIRouter(prefix="/settlements", tags=["settlements"])

_ADMIN = Depends(require_roles(ActorRole.admin))


def _closing_data(payload: SettlementPreviewRequest, config: PolicyConfig) -> ClosingData:
    etc_price = payload.etc_price_per_unit
    if etc_price is None:
        etc_price = config.default_etc_price_per_unit
    return ClosingData(
        delivered_count=payload.delivered_count,
        returned_count=payload.returned_count,
        etc_count=payload.etc_count,
        unit_price=payload.unit_price,
        etc_price_per_unit=etc_price,
        extra_costs=parse_extra_costs([c.model_dump() for c in payload.extra_costs]),
    )


def _preview_deposit_rate(payload: SettlementPreviewRequest, config: PolicyConfig):
    return percent_to_rate(payload.deposit_rate_percent or config.deposit_rate_percent)


def _ledger_read(db: Session, result: deduction_ledger.LedgerResult, settlement_id: int) -> LedgerResultRead:
    return LedgerResultRead(
        entry=DeductionRead.model_validate(result.entry),
        applied=result.applied,
        settlement=SettlementRead.model_validate(lifecycle.get_settlement(db, settlement_id)),
    )


@router.post("/preview", response_model=SettlementResultRead)
def preview_settlement(
    payload: SettlementPreviewRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    config = load_policy_config(db)
    deposit_rate = _preview_deposit_rate(payload, config)
    result = compute_settlement(_closing_data(payload, config), deposit_rate)
    return SettlementResultRead(**result.as_dict())


@router.post("/payout-preview", response_model=HelperPayoutRead)
def preview_payout(
    payload: PayoutPreviewRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    config = load_policy_config(db)
    deposit_rate = _preview_deposit_rate(payload, config)
    payout = compute_helper_payout(
        _closing_data(payload, config),
        payload.commission_rate,
        payload.damage_deduction,
        deposit_rate=deposit_rate,
        platform_rate=payload.platform_rate,
        team_leader_rate=payload.team_leader_rate,
    )
    return HelperPayoutRead(**payout.as_dict())


@router.get("/{settlement_id}", response_model=SettlementRead)
def get_settlement(settlement_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return lifecycle.get_settlement(db, settlement_id)


@router.post("/{settlement_id}/pay", response_model=SettlementRead)
def pay_settlement(
    settlement_id: int,
    payload: PaySettlementRequest,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
    key: Optional[str] = Depends(idempotency_key),
):
    def _do() -> dict:
        settlement = lifecycle.pay_settlement(
            db,
            settlement_id,
            actor=actor,
            payment_reference=payload.payment_reference,
            correlation_id=correlation_id,
        )
        return SettlementRead.model_validate(settlement).model_dump(mode="json")

    return idempotent_response(
        db,
        actor=actor,
        operation="settlement.pay",
        key=key,
        payload={"settlement_id": settlement_id, **payload.model_dump()},
        fn=_do,
    )


@router.get("/{settlement_id}/deductions", response_model=DeductionListRead)
def list_deductions(
    settlement_id: int,
    include_reversed: bool = Query(True),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    settlement = lifecycle.get_settlement(db, settlement_id)
    entries = deduction_ledger.list_deductions(db, settlement.id, include_reversed=include_reversed)
    return DeductionListRead(
        items=[DeductionRead.model_validate(e) for e in entries],
        deduction_total=settlement.deduction_total,
        net_amount=settlement.net_amount,
        driver_payout=settlement.driver_payout,
    )


@router.post("/{settlement_id}/deductions", response_model=LedgerResultRead)
def apply_deduction(
    settlement_id: int,
    payload: DeductionCreate,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        result = deduction_ledger.apply_deduction(
            db,
            settlement_id=settlement_id,
            source_type=payload.source_type,
            source_id=payload.source_id,
            amount=payload.amount,
            reason=payload.reason,
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
    return _ledger_read(db, result, settlement_id)


@router.post("/{settlement_id}/deductions/reverse", response_model=LedgerResultRead)
def reverse_deduction(
    settlement_id: int,
    payload: DeductionReverse,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        result = deduction_ledger.reverse_deduction(
            db,
            settlement_id=settlement_id,
            source_type=payload.source_type,
            source_id=payload.source_id,
            actor_id=actor.id,
            correlation_id=correlation_id,
        )
    return _ledger_read(db, result, settlement_id)
