from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courierhub import models

logger = logging.getLogger("courierhub")

ORDER_STATUS_CHANGED = "order_status_changed"
HELPER_SELECTED = "helper_selected"
SETTLEMENT_CREATED = "settlement_created"
SETTLEMENT_RECALCULATED = "settlement_recalculated"
SETTLEMENT_STATUS_CHANGED = "settlement_status_changed"
DEDUCTION_APPLIED = "deduction_applied"
DEDUCTION_REVERSED = "deduction_reversed"
DISPUTE_OPENED = "dispute_opened"
DISPUTE_RESOLVED = "dispute_resolved"


def correlation_id_from_request_id(request_id: str | None) -> str:
    """Reuse X-Request-ID when it is a UUID, else mint a new one."""

    if request_id:
        try:
            return str(uuid.UUID(str(request_id)))
        except ValueError:
            pass
    return str(uuid.uuid4())


@dataclass(frozen=True)
class EmitResult:
    event: models.DomainEvent
    created: bool


def _find(db: Session, event_type: str, idempotency_key: str) -> models.DomainEvent | None:
    return (
        db.query(models.DomainEvent)
        .filter(models.DomainEvent.event_type == event_type)
        .filter(models.DomainEvent.idempotency_key == idempotency_key)
        .order_by(models.DomainEvent.id.desc())
        .first()
    )


def emit_domain_event(
    *,
    db: Session,
    event_type: str,
    subject_type: str,
    subject_id: int,
    idempotency_key: str,
    correlation_id: str | None = None,
    order_id: int | None = None,
    payload: dict[str, Any] | None = None,
    actor_id: int | None = None,
    audit_log_id: int | None = None,
    occurred_at: datetime | None = None,
) -> EmitResult:
    """Record a status/settlement change for downstream consumers.

    Written in the caller's transaction, so an event is visible exactly when
    the change it describes is. Idempotent on (event_type, idempotency_key).
    """

    existing = _find(db, event_type, idempotency_key)
    if existing is not None:
        return EmitResult(event=existing, created=False)

    ev = models.DomainEvent(
        event_type=event_type,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        subject_type=subject_type,
        subject_id=int(subject_id),
        order_id=order_id,
        correlation_id=correlation_id or str(uuid.uuid4()),
        idempotency_key=idempotency_key,
        payload=payload or None,
        actor_id=actor_id,
        audit_log_id=audit_log_id,
    )

    try:
        with db.begin_nested():
            db.add(ev)
    except IntegrityError:
        existing = _find(db, event_type, idempotency_key)
        if existing is None:
            raise
        return EmitResult(event=existing, created=False)

    logger.info(
        event_type,
        extra={
            "subject_type": subject_type,
            "subject_id": subject_id,
            "order_id": order_id,
            "correlation_id": ev.correlation_id,
            "actor_id": actor_id,
        },
    )
    return EmitResult(event=ev, created=True)
