import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from courierhub import models

logger = logging.getLogger("courierhub")


def audit_event(
    action: str,
    actor_id: Optional[int],
    payload: Dict[str, Any],
    *,
    db: Session,
    idempotency_key: str | None = None,
    request_id: str | None = None,
) -> Optional[int]:
    """Record an admin/policy action inside the caller's transaction.

    The row is written in a savepoint so a failed audit insert never poisons
    the surrounding lifecycle transaction; the failure is logged instead.
    Returns the audit log id when available.
    """

    if idempotency_key:
        existing = (
            db.query(models.AuditLog)
            .filter(models.AuditLog.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            return existing.id

    log = models.AuditLog(
        action=action,
        actor_id=actor_id,
        payload_json=json.dumps(payload or {}, sort_keys=True, default=str),
        idempotency_key=idempotency_key,
        request_id=request_id,
    )
    try:
        with db.begin_nested():
            db.add(log)
    except SQLAlchemyError as exc:
        logger.warning(
            "audit_write_failed",
            extra={"action": action, "actor_id": actor_id, "error": str(exc)},
        )
        return None
    return log.id
