"""Order status registry.

Pure, stateless rules for the order lifecycle: the closed status set, the
directed transition graph, the narrower admin recovery map and the composite
(order, settlement, payment) validity table. Nothing here touches storage or
raises on an invalid transition; callers receive a ``TransitionCheck`` and
decide what to do with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Union

from courierhub.models.statuses import OrderStatus, PaymentStatus, SettlementStatus

logger = logging.getLogger("courierhub")

S = OrderStatus


@dataclass(frozen=True)
class UnknownStatus:
    """A status string that is neither canonical nor a known legacy alias."""

    raw: str

    @property
    def value(self) -> str:
        return self.raw


NormalizedStatus = Union[OrderStatus, UnknownStatus]

LEGACY_STATUS_ALIASES: dict[str, OrderStatus] = {
    "registered": S.open,
    "matching": S.open,
    "matched": S.scheduled,
    "assigned": S.scheduled,
    "working": S.in_progress,
    "closing_approved": S.final_amount_confirmed,
    "completed": S.closed,
}

VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    S.awaiting_deposit: frozenset({S.open, S.cancelled}),
    S.open: frozenset({S.scheduled, S.cancelled}),
    S.scheduled: frozenset({S.in_progress, S.open, S.cancelled}),
    S.in_progress: frozenset({S.closing_submitted, S.scheduled}),
    S.closing_submitted: frozenset({S.final_amount_confirmed, S.in_progress, S.dispute_reviewing}),
    S.final_amount_confirmed: frozenset({S.balance_paid, S.closing_submitted, S.dispute_reviewing}),
    S.balance_paid: frozenset({S.settlement_paid, S.final_amount_confirmed, S.dispute_reviewing}),
    S.settlement_paid: frozenset({S.closed, S.settled}),
    S.dispute_reviewing: frozenset({S.dispute_resolved, S.dispute_rejected}),
    S.dispute_resolved: frozenset(
        {S.final_amount_confirmed, S.balance_paid, S.settlement_paid, S.closed}
    ),
    S.dispute_rejected: frozenset(
        {S.final_amount_confirmed, S.balance_paid, S.settlement_paid, S.closed}
    ),
    S.settled: frozenset({S.closed}),
    S.closed: frozenset(),
    S.cancelled: frozenset(),
}

# Admin rollback only. Deliberately narrower than VALID_TRANSITIONS.
RECOVERY_OPTIONS: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    S.scheduled: (S.open,),
    S.in_progress: (S.scheduled,),
    S.closing_submitted: (S.in_progress,),
    S.final_amount_confirmed: (S.closing_submitted,),
    S.balance_paid: (S.final_amount_confirmed,),
}

TERMINAL_STATUSES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)

CAN_APPLY = frozenset({S.open})
CAN_SELECT_HELPER = frozenset({S.open})
CAN_START_WORK = frozenset({S.scheduled})
CAN_SUBMIT_CLOSING = frozenset({S.scheduled, S.in_progress})
CAN_CONFIRM_FINAL_AMOUNT = frozenset({S.closing_submitted})
CAN_CONFIRM_BALANCE = frozenset({S.final_amount_confirmed})
CAN_CANCEL = frozenset(s for s, targets in VALID_TRANSITIONS.items() if S.cancelled in targets)
CAN_OPEN_DISPUTE = frozenset(
    s for s, targets in VALID_TRANSITIONS.items() if S.dispute_reviewing in targets
)
DISPUTE_STATUSES = frozenset({S.dispute_reviewing, S.dispute_resolved, S.dispute_rejected})
DISPUTE_EXIT_STATUSES = VALID_TRANSITIONS[S.dispute_resolved]
IN_PROGRESS_STATUSES = frozenset({S.scheduled, S.in_progress})
# Pre-match states; anything past matching owns money and cannot be deleted.
DELETABLE_STATUSES = frozenset({S.awaiting_deposit, S.open, S.cancelled})


def normalize_status(raw: object) -> NormalizedStatus:
    if isinstance(raw, OrderStatus):
        return raw
    if isinstance(raw, UnknownStatus):
        return raw

    s = str(raw or "").strip().lower()
    try:
        return OrderStatus(s)
    except ValueError:
        pass

    alias = LEGACY_STATUS_ALIASES.get(s)
    if alias is not None:
        return alias

    logger.warning("unknown_order_status", extra={"raw_status": str(raw) if raw is not None else None})
    return UnknownStatus(raw=str(raw) if raw is not None else "")


def is_known(status: NormalizedStatus) -> bool:
    return isinstance(status, OrderStatus)


def _label(status: NormalizedStatus) -> str:
    return status.value


def can_transition(from_status: object, to_status: object) -> bool:
    """Adjacency lookup only; same-state is not an edge."""

    src = normalize_status(from_status)
    dst = normalize_status(to_status)
    if not (is_known(src) and is_known(dst)):
        return False
    return dst in VALID_TRANSITIONS[src]


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    from_status: str
    to_status: str
    allowed: tuple[str, ...] = ()
    error: str | None = None
    is_noop: bool = False


def next_valid_statuses(current: object) -> list[OrderStatus]:
    src = normalize_status(current)
    if not is_known(src):
        return []
    targets = VALID_TRANSITIONS[src]
    return [s for s in OrderStatus if s in targets]


def recovery_options(current: object) -> list[OrderStatus]:
    src = normalize_status(current)
    if not is_known(src):
        # Unrecognized data can only be recovered to the start of the marketplace flow.
        return [S.open]
    return list(RECOVERY_OPTIONS.get(src, ()))


def validate_transition(from_status: object, to_status: object) -> TransitionCheck:
    src = normalize_status(from_status)
    dst = normalize_status(to_status)
    allowed = tuple(s.value for s in next_valid_statuses(src))

    if not is_known(src):
        return TransitionCheck(
            valid=False,
            from_status=_label(src),
            to_status=_label(dst),
            allowed=allowed,
            error=f"Current status '{_label(src)}' is not a recognized order status",
        )
    if not is_known(dst):
        return TransitionCheck(
            valid=False,
            from_status=_label(src),
            to_status=_label(dst),
            allowed=allowed,
            error=f"Requested status '{_label(dst)}' is not a recognized order status",
        )
    if src == dst:
        return TransitionCheck(
            valid=True, from_status=src.value, to_status=dst.value, allowed=allowed, is_noop=True
        )
    if dst not in VALID_TRANSITIONS[src]:
        if src in TERMINAL_STATUSES:
            error = f"Order is in terminal status '{src.value}'"
        else:
            error = (
                f"Cannot transition from '{src.value}' to '{dst.value}'. "
                f"Allowed: {', '.join(allowed) or 'none'}"
            )
        return TransitionCheck(
            valid=False, from_status=src.value, to_status=dst.value, allowed=allowed, error=error
        )
    return TransitionCheck(valid=True, from_status=src.value, to_status=dst.value, allowed=allowed)


def validate_recovery(from_status: object, to_status: object) -> TransitionCheck:
    src = normalize_status(from_status)
    dst = normalize_status(to_status)
    options = recovery_options(src)
    allowed = tuple(s.value for s in options)
    if is_known(dst) and dst in options:
        return TransitionCheck(valid=True, from_status=_label(src), to_status=dst.value, allowed=allowed)
    return TransitionCheck(
        valid=False,
        from_status=_label(src),
        to_status=_label(dst),
        allowed=allowed,
        error=f"'{_label(dst)}' is not a recovery option for '{_label(src)}'",
    )


# ---------------------------------------------------------------------------
# Composite state: order phase x settlement phase x payment phase.
# ---------------------------------------------------------------------------

ST = SettlementStatus
P = PaymentStatus

_PRE_CLOSING = frozenset({None, ST.pending})

ALLOWED_SETTLEMENT_PHASES: dict[OrderStatus, frozenset[SettlementStatus | None]] = {
    S.awaiting_deposit: frozenset({None}),
    S.open: frozenset({None}),
    **{s: _PRE_CLOSING for s in IN_PROGRESS_STATUSES},
    S.closing_submitted: frozenset({ST.pending}),
    S.final_amount_confirmed: frozenset({ST.confirmed}),
    S.balance_paid: frozenset({ST.payable}),
    S.settlement_paid: frozenset({ST.paid}),
    S.settled: frozenset({ST.paid}),
    S.closed: frozenset({ST.paid, ST.cancelled}),
    S.cancelled: frozenset({None, ST.cancelled}),
    **{s: frozenset({ST.on_hold}) for s in DISPUTE_STATUSES},
}

_DEPOSITED = frozenset({P.deposit_confirmed})
_BALANCED = frozenset({P.balance_confirmed})

ALLOWED_PAYMENT_PHASES: dict[OrderStatus, frozenset[PaymentStatus]] = {
    S.awaiting_deposit: frozenset({P.awaiting_deposit}),
    S.open: _DEPOSITED,
    S.scheduled: _DEPOSITED,
    S.in_progress: _DEPOSITED,
    S.closing_submitted: _DEPOSITED,
    S.final_amount_confirmed: _DEPOSITED,
    S.balance_paid: _BALANCED,
    S.settlement_paid: _BALANCED,
    S.settled: _BALANCED,
    S.closed: frozenset({P.deposit_confirmed, P.balance_confirmed}),
    S.cancelled: frozenset({P.awaiting_deposit, P.deposit_confirmed}),
    **{s: frozenset({P.deposit_confirmed, P.balance_confirmed}) for s in DISPUTE_STATUSES},
}

# Order phases that pin the settlement to one status.
_SETTLEMENT_PHASE_FOR_ORDER: dict[OrderStatus, SettlementStatus] = {
    S.closing_submitted: ST.pending,
    S.final_amount_confirmed: ST.confirmed,
    S.balance_paid: ST.payable,
    S.settlement_paid: ST.paid,
    S.settled: ST.paid,
    **{s: ST.on_hold for s in DISPUTE_STATUSES},
    S.cancelled: ST.cancelled,
}

_PAYMENT_PHASE_FOR_ORDER: dict[OrderStatus, PaymentStatus] = {
    S.awaiting_deposit: P.awaiting_deposit,
    S.open: P.deposit_confirmed,
    S.scheduled: P.deposit_confirmed,
    S.in_progress: P.deposit_confirmed,
    S.closing_submitted: P.deposit_confirmed,
    S.final_amount_confirmed: P.deposit_confirmed,
    S.balance_paid: P.balance_confirmed,
    S.settlement_paid: P.balance_confirmed,
    S.settled: P.balance_confirmed,
}


@dataclass(frozen=True)
class CompositeState:
    order_status: OrderStatus
    settlement_status: SettlementStatus | None
    payment_status: PaymentStatus


def settlement_phase_for(
    order_status: OrderStatus, current: SettlementStatus | None
) -> SettlementStatus | None:
    """Settlement status implied by moving the order into ``order_status``."""

    if current is None:
        return None
    if order_status == S.closed:
        return current if current == ST.paid else ST.cancelled
    return _SETTLEMENT_PHASE_FOR_ORDER.get(order_status, current)


def payment_phase_for(order_status: OrderStatus, current: PaymentStatus) -> PaymentStatus:
    return _PAYMENT_PHASE_FOR_ORDER.get(order_status, current)


def composite_violation(state: CompositeState) -> str | None:
    settlement_ok = ALLOWED_SETTLEMENT_PHASES[state.order_status]
    if state.settlement_status not in settlement_ok:
        have = state.settlement_status.value if state.settlement_status else "none"
        return f"order '{state.order_status.value}' cannot hold a settlement in '{have}'"
    payment_ok = ALLOWED_PAYMENT_PHASES[state.order_status]
    if state.payment_status not in payment_ok:
        return (
            f"order '{state.order_status.value}' cannot have payment status "
            f"'{state.payment_status.value}'"
        )
    return None


def is_valid_composite(state: CompositeState) -> bool:
    return composite_violation(state) is None


def status_values(statuses: Iterable[OrderStatus]) -> list[str]:
    return [s.value for s in statuses]
