# ruff: noqa: B008

from typing import Optional

from fastapi import APIRouter, Depends, Response, status
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
    AdminAdjustmentCreate,
    ApplicationCreate,
    ApplicationRead,
    CancelRequest,
    ClosingReportCorrect,
    ClosingReportRead,
    ClosingReportSubmit,
    ClosingSubmitRead,
    DeductionRead,
    DisputeCreate,
    DisputeRead,
    IncidentDeductionCreate,
    LedgerResultRead,
    OrderCreate,
    OrderRead,
    OrderTransitionsRead,
    RateSnapshotRead,
    ResumeRequest,
    RollbackRequest,
    SelectHelperRead,
    SelectHelperRequest,
    SettlementRead,
    StatusChangeRequest,
    TransitionRead,
)
from courierhub.services import order_lifecycle as lifecycle
from courierhub.services.order_lifecycle import Actor, ClosingInput

router = APIRouter(prefix="/orders", tags=["orders"])

_REQUESTER = Depends(require_roles(ActorRole.requester))
_HELPER = Depends(require_roles(ActorRole.helper))
_ADMIN = Depends(require_roles(ActorRole.admin))


def _transition_read(outcome: lifecycle.TransitionOutcome) -> TransitionRead:
    return TransitionRead(
        order=OrderRead.model_validate(outcome.order),
        from_status=outcome.from_status,
        to_status=outcome.to_status,
        changed=outcome.changed,
    )


def _closing_input(payload: ClosingReportSubmit) -> ClosingInput:
    return ClosingInput(
        delivered_count=payload.delivered_count,
        returned_count=payload.returned_count,
        etc_count=payload.etc_count,
        etc_price_per_unit=payload.etc_price_per_unit,
        extra_costs=tuple(c.model_dump() for c in payload.extra_costs),
        evidence=tuple(payload.evidence),
        memo=payload.memo,
    )


def _closing_read(outcome: lifecycle.ClosingOutcome) -> ClosingSubmitRead:
    return ClosingSubmitRead(
        report=ClosingReportRead.model_validate(outcome.report),
        settlement=SettlementRead.model_validate(outcome.settlement),
        order_status=outcome.order.status,
        created=outcome.created,
    )


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        order = lifecycle.create_order(
            db,
            actor=actor,
            unit_price=payload.unit_price,
            etc_price_per_unit=payload.etc_price_per_unit,
            title=payload.title,
            memo=payload.memo,
            requester_id=payload.requester_id,
            correlation_id=correlation_id,
        )
    return order


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return lifecycle.get_order(db, order_id)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(order_id: int, db: Session = Depends(get_db), actor: Actor = _REQUESTER):
    with atomic(db):
        lifecycle.delete_order(db, order_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{order_id}/transitions", response_model=OrderTransitionsRead)
def get_transitions(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    summary = lifecycle.describe_transitions(lifecycle.get_order(db, order_id))
    return OrderTransitionsRead(
        current=summary.current,
        known=summary.known,
        next_valid=summary.next_valid,
        recovery=summary.recovery,
    )


@router.post("/{order_id}/deposit-confirmation", response_model=TransitionRead)
def confirm_deposit(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.confirm_deposit(db, order_id, actor=actor, correlation_id=correlation_id)
    return _transition_read(outcome)


@router.post("/{order_id}/applications", response_model=ApplicationRead)
def apply_to_order(
    order_id: int,
    payload: ApplicationCreate,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = _HELPER,
):
    with atomic(db):
        application, created = lifecycle.apply_to_order(db, order_id, actor=actor, message=payload.message)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return application


@router.post("/{order_id}/select-helper", response_model=SelectHelperRead)
def select_helper(
    order_id: int,
    payload: SelectHelperRequest,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        result = lifecycle.select_helper(
            db, order_id, helper_id=payload.helper_id, actor=actor, correlation_id=correlation_id
        )
    return SelectHelperRead(
        order=OrderRead.model_validate(result.order),
        application=ApplicationRead.model_validate(result.application),
        rate=RateSnapshotRead(**result.snapshot.as_dict()),
        created=result.created,
    )


@router.post("/{order_id}/start", response_model=TransitionRead)
def start_work(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _HELPER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.start_work(db, order_id, actor=actor, correlation_id=correlation_id)
    return _transition_read(outcome)


@router.post("/{order_id}/closing-report", response_model=ClosingSubmitRead)
def submit_closing_report(
    order_id: int,
    payload: ClosingReportSubmit,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor = _HELPER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.submit_closing_report(
            db, order_id, actor=actor, data=_closing_input(payload), correlation_id=correlation_id
        )
        body = _closing_read(outcome)
    response.status_code = status.HTTP_201_CREATED if outcome.created else status.HTTP_200_OK
    return body


@router.patch("/{order_id}/closing-report", response_model=ClosingSubmitRead)
def correct_closing_report(
    order_id: int,
    payload: ClosingReportCorrect,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.correct_closing_report(
            db,
            order_id,
            actor=actor,
            data=_closing_input(payload),
            reason=payload.reason,
            correlation_id=correlation_id,
        )
        body = _closing_read(outcome)
    return body


@router.post("/{order_id}/confirm", response_model=SettlementRead)
def confirm_final_amount(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
    key: Optional[str] = Depends(idempotency_key),
):
    def _do() -> dict:
        settlement = lifecycle.confirm_final_amount(db, order_id, actor=actor, correlation_id=correlation_id)
        return SettlementRead.model_validate(settlement).model_dump(mode="json")

    return idempotent_response(
        db,
        actor=actor,
        operation="order.confirm_final_amount",
        key=key,
        payload={"order_id": order_id},
        fn=_do,
    )


@router.post("/{order_id}/balance-paid", response_model=SettlementRead)
def mark_balance_paid(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        settlement = lifecycle.mark_balance_paid(db, order_id, actor=actor, correlation_id=correlation_id)
    return settlement


@router.post("/{order_id}/settle", response_model=TransitionRead)
def mark_settled(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.mark_settled(db, order_id, actor=actor, correlation_id=correlation_id)
    return _transition_read(outcome)


@router.post("/{order_id}/close", response_model=TransitionRead)
def close_order(
    order_id: int,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.close_order(db, order_id, actor=actor, correlation_id=correlation_id)
    return _transition_read(outcome)


@router.post("/{order_id}/cancel", response_model=TransitionRead)
def cancel_order(
    order_id: int,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    actor: Actor = _REQUESTER,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.cancel_order(
            db, order_id, actor=actor, reason=payload.reason, correlation_id=correlation_id
        )
    return _transition_read(outcome)


@router.post("/{order_id}/disputes", response_model=DisputeRead, status_code=status.HTTP_201_CREATED)
def open_dispute(
    order_id: int,
    payload: DisputeCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        dispute = lifecycle.open_dispute(
            db, order_id, actor=actor, reason=payload.reason, correlation_id=correlation_id
        )
    return dispute


@router.post("/{order_id}/resume", response_model=TransitionRead)
def resume_after_dispute(
    order_id: int,
    payload: ResumeRequest,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.resume_after_dispute(
            db,
            order_id,
            actor=actor,
            to_status=payload.to_status,
            payment_reference=payload.payment_reference,
            correlation_id=correlation_id,
        )
    return _transition_read(outcome)


@router.post("/{order_id}/rollback", response_model=TransitionRead)
def rollback_status(
    order_id: int,
    payload: RollbackRequest,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.rollback_status(
            db,
            order_id,
            actor=actor,
            to_status=payload.to_status,
            reason=payload.reason,
            correlation_id=correlation_id,
        )
    return _transition_read(outcome)


@router.post("/{order_id}/transition", response_model=TransitionRead)
def transition_order_status(
    order_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        outcome = lifecycle.transition_order_status(
            db,
            order_id,
            actor=actor,
            to_status=payload.to_status,
            reason=payload.reason,
            correlation_id=correlation_id,
        )
    return _transition_read(outcome)


@router.get("/{order_id}/settlement", response_model=SettlementRead)
def get_order_settlement(order_id: int, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return lifecycle.get_order_settlement(db, order_id)


@router.post("/{order_id}/incident-deductions", response_model=LedgerResultRead)
def record_incident_deduction(
    order_id: int,
    payload: IncidentDeductionCreate,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        result = lifecycle.record_incident_deduction(
            db,
            order_id,
            actor=actor,
            incident_id=payload.incident_id,
            amount=payload.amount,
            reason=payload.reason,
            correlation_id=correlation_id,
        )
    return LedgerResultRead(
        entry=DeductionRead.model_validate(result.entry),
        applied=result.applied,
        settlement=SettlementRead.model_validate(lifecycle.get_order_settlement(db, order_id)),
    )


@router.post("/{order_id}/adjustments", response_model=LedgerResultRead)
def apply_admin_adjustment(
    order_id: int,
    payload: AdminAdjustmentCreate,
    db: Session = Depends(get_db),
    actor: Actor = _ADMIN,
    correlation_id: str = Depends(get_correlation_id),
):
    with atomic(db):
        result = lifecycle.apply_admin_adjustment(
            db,
            order_id,
            actor=actor,
            adjustment_key=payload.adjustment_key,
            amount=payload.amount,
            reason=payload.reason,
            correlation_id=correlation_id,
        )
    return LedgerResultRead(
        entry=DeductionRead.model_validate(result.entry),
        applied=result.applied,
        settlement=SettlementRead.model_validate(lifecycle.get_order_settlement(db, order_id)),
    )
