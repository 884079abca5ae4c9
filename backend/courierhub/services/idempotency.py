from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courierhub import models
from courierhub.config import settings
from courierhub.services.errors import ConflictError, IdempotencyConflictError

logger = logging.getLogger("courierhub")


def _canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def request_hash(payload: dict[str, Any]) -> str:
    return _sha256_hex(_canonical_json(payload or {}))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class IdempotentOutcome:
    status_code: int
    body: dict[str, Any]
    replayed: bool


def run_idempotent(
    db: Session,
    *,
    actor_id: int,
    operation: str,
    key: str | None,
    payload: dict[str, Any],
    fn: Callable[[], dict[str, Any]],
    status_code: int = 200,
    ttl_hours: int | None = None,
    now: datetime | None = None,
) -> IdempotentOutcome:
    """Deduplicate a mutating call on ``(actor, operation, key)``.

    - No key: ``fn`` runs every time.
    - Known key, same payload: the stored response is returned and ``fn`` is
      not called.
    - Known key, different payload: ``IdempotencyConflictError``.

    The key row is written in the caller's transaction, so it commits or rolls
    back together with the work ``fn`` did.
    """

    if not key:
        return IdempotentOutcome(status_code=status_code, body=fn(), replayed=False)

    now = now or datetime.now(timezone.utc)
    ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.idempotency_ttl_hours)
    digest = request_hash(payload)

    K = models.IdempotencyKey
    existing = (
        db.query(K)
        .filter(K.actor_id == actor_id)
        .filter(K.operation == operation)
        .filter(K.key == key)
        .first()
    )
    if existing is not None:
        if _as_utc(existing.expires_at) <= now:
            db.delete(existing)
            db.flush()
        elif existing.request_hash != digest:
            raise IdempotencyConflictError(
                "Idempotency key was already used with a different request",
                details={"operation": operation, "key": key},
            )
        else:
            logger.info(
                "idempotent_replay",
                extra={"actor_id": actor_id, "operation": operation, "idempotency_key": key},
            )
            return IdempotentOutcome(
                status_code=int(existing.status_code),
                body=dict(existing.response_json or {}),
                replayed=True,
            )

    body = fn()

    row = K(
        actor_id=actor_id,
        operation=operation,
        key=key,
        request_hash=digest,
        status_code=status_code,
        response_json=body,
        created_at=now,
        expires_at=now + ttl,
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError as exc:
        raise ConflictError(
            "Another request with this idempotency key is in flight",
            code="idempotency_in_flight",
            retryable=True,
            details={"operation": operation, "key": key},
        ) from exc

    return IdempotentOutcome(status_code=status_code, body=body, replayed=False)
