"""Append-only deduction ledger for settlements.

``apply_deduction`` and ``reverse_deduction`` never recompute a settlement's
totals. They move ``deduction_total``/``net_amount`` by the entry amount with a
single conditional UPDATE, so concurrent corrections on unrelated fields are
kept. Callers control commit/rollback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courierhub import models
from courierhub.models import DeductionSourceType, SettlementStatus
from courierhub.services import event_sink
from courierhub.services.errors import ConflictError, NotFoundError, PreconditionFailedError
from courierhub.services.settlement_status import LEDGER_LOCKED_STATUSES

logger = logging.getLogger("courierhub")

_LOCKED_VALUES = [s.value for s in LEDGER_LOCKED_STATUSES]


@dataclass(frozen=True)
class LedgerResult:
    entry: models.DeductionLedgerEntry
    applied: bool


def _coerce_source_type(source_type: object) -> str:
    try:
        return DeductionSourceType(
            source_type.value if isinstance(source_type, DeductionSourceType) else str(source_type)
        ).value
    except ValueError as exc:
        raise PreconditionFailedError(
            f"Unknown deduction source type '{source_type}'",
            code="invalid_source_type",
            details={"allowed": [s.value for s in DeductionSourceType]},
        ) from exc


def _load_open_settlement(db: Session, settlement_id: int) -> models.Settlement:
    settlement = db.get(models.Settlement, settlement_id)
    if settlement is None:
        raise NotFoundError(
            "Settlement not found",
            code="settlement_not_found",
            details={"settlement_id": settlement_id},
        )
    if settlement.status in _LOCKED_VALUES:
        code = (
            "settlement_already_paid"
            if settlement.status == SettlementStatus.paid.value
            else "settlement_cancelled"
        )
        raise PreconditionFailedError(
            f"Settlement is {settlement.status}; its ledger is closed",
            code=code,
            details={"settlement_id": settlement_id, "status": settlement.status},
        )
    return settlement


def _find_active(
    db: Session, settlement_id: int, source_type: str, source_id: str
) -> models.DeductionLedgerEntry | None:
    return (
        db.query(models.DeductionLedgerEntry)
        .filter(models.DeductionLedgerEntry.settlement_id == settlement_id)
        .filter(models.DeductionLedgerEntry.source_type == source_type)
        .filter(models.DeductionLedgerEntry.source_id == source_id)
        .filter(models.DeductionLedgerEntry.reversed_at.is_(None))
        .first()
    )


def _shift_totals(db: Session, settlement: models.Settlement, delta: int) -> None:
    S = models.Settlement
    db.flush()
    rowcount = (
        db.query(S)
        .filter(S.id == settlement.id)
        .filter(S.status.notin_(_LOCKED_VALUES))
        .update(
            {
                S.deduction_total: S.deduction_total + delta,
                S.net_amount: S.net_amount - delta,
                S.version: S.version + 1,
            },
            synchronize_session=False,
        )
    )
    if not rowcount:
        raise ConflictError(
            "Settlement changed while the deduction was being recorded",
            code="concurrent_update",
            retryable=True,
            details={"settlement_id": settlement.id},
        )
    db.refresh(settlement)


def apply_deduction(
    db: Session,
    *,
    settlement_id: int,
    source_type: DeductionSourceType | str,
    source_id: str,
    amount: int,
    reason: str | None = None,
    actor_id: int | None = None,
    correlation_id: str | None = None,
) -> LedgerResult:
    source_type = _coerce_source_type(source_type)
    source_id = str(source_id)
    if isinstance(amount, bool) or int(amount) <= 0:
        raise PreconditionFailedError(
            "Deduction amount must be a positive integer",
            code="invalid_deduction_amount",
            details={"amount": amount},
        )
    amount = int(amount)

    settlement = _load_open_settlement(db, settlement_id)

    existing = _find_active(db, settlement.id, source_type, source_id)
    if existing is not None:
        logger.info(
            "deduction_skipped_duplicate",
            extra={
                "settlement_id": settlement.id,
                "source_type": source_type,
                "source_id": source_id,
                "entry_id": existing.id,
            },
        )
        return LedgerResult(entry=existing, applied=False)

    entry = models.DeductionLedgerEntry(
        settlement_id=settlement.id,
        source_type=source_type,
        source_id=source_id,
        amount=amount,
        reason=reason,
        applied_by=actor_id,
        applied_at=datetime.now(timezone.utc),
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        # Lost a race against an identical apply; that one wins.
        existing = _find_active(db, settlement.id, source_type, source_id)
        if existing is None:
            raise
        logger.info(
            "deduction_skipped_duplicate",
            extra={"settlement_id": settlement.id, "source_type": source_type, "source_id": source_id},
        )
        return LedgerResult(entry=existing, applied=False)

    _shift_totals(db, settlement, amount)

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.DEDUCTION_APPLIED,
        subject_type="settlement",
        subject_id=settlement.id,
        order_id=settlement.order_id,
        idempotency_key=f"ledger:{entry.id}:applied",
        correlation_id=correlation_id,
        actor_id=actor_id,
        payload={
            "entry_id": entry.id,
            "source_type": source_type,
            "source_id": source_id,
            "amount": amount,
            "reason": reason,
        },
    )
    return LedgerResult(entry=entry, applied=True)


def reverse_deduction(
    db: Session,
    *,
    settlement_id: int,
    source_type: DeductionSourceType | str,
    source_id: str,
    actor_id: int | None = None,
    correlation_id: str | None = None,
) -> LedgerResult:
    source_type = _coerce_source_type(source_type)
    source_id = str(source_id)

    settlement = _load_open_settlement(db, settlement_id)

    entry = _find_active(db, settlement.id, source_type, source_id)
    if entry is None:
        already = (
            db.query(models.DeductionLedgerEntry)
            .filter(models.DeductionLedgerEntry.settlement_id == settlement.id)
            .filter(models.DeductionLedgerEntry.source_type == source_type)
            .filter(models.DeductionLedgerEntry.source_id == source_id)
            .order_by(models.DeductionLedgerEntry.id.desc())
            .first()
        )
        if already is not None:
            logger.info(
                "deduction_reverse_skipped",
                extra={"settlement_id": settlement.id, "entry_id": already.id},
            )
            return LedgerResult(entry=already, applied=False)
        raise NotFoundError(
            "No deduction recorded for this source",
            code="deduction_not_found",
            details={"settlement_id": settlement.id, "source_type": source_type, "source_id": source_id},
        )

    E = models.DeductionLedgerEntry
    db.flush()
    now = datetime.now(timezone.utc)
    rowcount = (
        db.query(E)
        .filter(E.id == entry.id)
        .filter(E.reversed_at.is_(None))
        .update({E.reversed_at: now, E.reversed_by: actor_id}, synchronize_session=False)
    )
    db.refresh(entry)
    if not rowcount:
        return LedgerResult(entry=entry, applied=False)

    _shift_totals(db, settlement, -int(entry.amount))

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.DEDUCTION_REVERSED,
        subject_type="settlement",
        subject_id=settlement.id,
        order_id=settlement.order_id,
        idempotency_key=f"ledger:{entry.id}:reversed",
        correlation_id=correlation_id,
        actor_id=actor_id,
        payload={
            "entry_id": entry.id,
            "source_type": source_type,
            "source_id": source_id,
            "amount": int(entry.amount),
        },
    )
    return LedgerResult(entry=entry, applied=True)


def list_deductions(
    db: Session, settlement_id: int, *, include_reversed: bool = True
) -> list[models.DeductionLedgerEntry]:
    q = db.query(models.DeductionLedgerEntry).filter(
        models.DeductionLedgerEntry.settlement_id == settlement_id
    )
    if not include_reversed:
        q = q.filter(models.DeductionLedgerEntry.reversed_at.is_(None))
    return q.order_by(models.DeductionLedgerEntry.id.asc()).all()
