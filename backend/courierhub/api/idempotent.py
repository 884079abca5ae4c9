from typing import Any, Callable, Optional

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from courierhub.database import atomic
from courierhub.services.idempotency import run_idempotent
from courierhub.services.order_lifecycle import Actor


def idempotent_response(
    db: Session,
    *,
    actor: Actor,
    operation: str,
    key: Optional[str],
    payload: dict[str, Any],
    fn: Callable[[], dict[str, Any]],
    status_code: int = 200,
) -> JSONResponse:
    """Run ``fn`` once per idempotency key, in one transaction with the key row."""

    with atomic(db):
        outcome = run_idempotent(
            db,
            actor_id=actor.id,
            operation=operation,
            key=key,
            payload=payload,
            fn=fn,
            status_code=status_code,
        )
    headers = {"Idempotent-Replayed": "true"} if outcome.replayed else None
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=headers)
