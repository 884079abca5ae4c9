from __future__ import annotations

from courierhub.models.statuses import SettlementStatus
from courierhub.services.order_status import TransitionCheck

ST = SettlementStatus

SETTLEMENT_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    ST.pending: frozenset({ST.confirmed, ST.on_hold, ST.cancelled}),
    ST.confirmed: frozenset({ST.payable, ST.pending, ST.on_hold, ST.cancelled}),
    ST.payable: frozenset({ST.paid, ST.confirmed, ST.on_hold}),
    ST.on_hold: frozenset({ST.pending, ST.confirmed, ST.payable, ST.paid, ST.cancelled}),
    ST.paid: frozenset(),
    ST.cancelled: frozenset(),
}

# Once money has left (or the settlement is void) the ledger is frozen.
LEDGER_LOCKED_STATUSES = frozenset({ST.paid, ST.cancelled})


def coerce_settlement_status(value: object) -> SettlementStatus | None:
    if value is None:
        return None
    if isinstance(value, SettlementStatus):
        return value
    return SettlementStatus(str(value))


def validate_settlement_transition(from_status: object, to_status: object) -> TransitionCheck:
    src = coerce_settlement_status(from_status)
    dst = coerce_settlement_status(to_status)
    allowed = tuple(s.value for s in SettlementStatus if s in SETTLEMENT_TRANSITIONS[src])
    if src == dst:
        return TransitionCheck(
            valid=True, from_status=src.value, to_status=dst.value, allowed=allowed, is_noop=True
        )
    if dst not in SETTLEMENT_TRANSITIONS[src]:
        return TransitionCheck(
            valid=False,
            from_status=src.value,
            to_status=dst.value,
            allowed=allowed,
            error=f"Settlement cannot move from '{src.value}' to '{dst.value}'",
        )
    return TransitionCheck(valid=True, from_status=src.value, to_status=dst.value, allowed=allowed)
