# ruff: noqa: B008

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from courierhub.api.deps import get_correlation_id, get_db, idempotency_key, require_roles
from courierhub.api.idempotent import idempotent_response
from courierhub.models import ActorRole
from courierhub.schemas import DisputeRead, DisputeResolve
from courierhub.services import order_lifecycle as lifecycle
from courierhub.services.order_lifecycle import Actor

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("/{dispute_id}/resolve", response_model=DisputeRead)
def resolve_dispute(
    dispute_id: int,
    payload: DisputeResolve,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ActorRole.admin)),
    correlation_id: str = Depends(get_correlation_id),
    key: Optional[str] = Depends(idempotency_key),
):
    def _do() -> dict:
        dispute = lifecycle.resolve_dispute(
            db,
            dispute_id,
            actor=actor,
            outcome=payload.outcome,
            deduction_amount=payload.deduction_amount,
            note=payload.note,
            correlation_id=correlation_id,
        )
        return DisputeRead.model_validate(dispute).model_dump(mode="json")

    return idempotent_response(
        db,
        actor=actor,
        operation="dispute.resolve",
        key=key,
        payload={"dispute_id": dispute_id, **payload.model_dump()},
        fn=_do,
    )
