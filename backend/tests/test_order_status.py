import pytest

from courierhub.models import OrderStatus, PaymentStatus, SettlementStatus
from courierhub.services import order_status as reg
from courierhub.services.order_status import (
    RECOVERY_OPTIONS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    CompositeState,
    UnknownStatus,
    can_transition,
    composite_violation,
    is_valid_composite,
    next_valid_statuses,
    normalize_status,
    recovery_options,
    validate_recovery,
    validate_transition,
)
from courierhub.services.settlement_status import validate_settlement_transition

S = OrderStatus
ST = SettlementStatus
P = PaymentStatus


def test_every_status_has_an_entry_in_the_transition_table():
    assert set(VALID_TRANSITIONS) == set(OrderStatus)


def test_transition_targets_are_closed_over_the_status_set():
    for targets in VALID_TRANSITIONS.values():
        assert targets <= set(OrderStatus)


def test_terminal_statuses_are_closed_and_cancelled():
    assert TERMINAL_STATUSES == {S.closed, S.cancelled}
    for terminal in TERMINAL_STATUSES:
        assert next_valid_statuses(terminal) == []


def test_every_non_terminal_status_reaches_a_terminal_one():
    for start in OrderStatus:
        seen = {start}
        frontier = [start]
        while frontier:
            current = frontier.pop()
            for nxt in VALID_TRANSITIONS[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        assert seen & TERMINAL_STATUSES, start


def test_happy_path_edges_are_allowed():
    path = [
        S.awaiting_deposit,
        S.open,
        S.scheduled,
        S.in_progress,
        S.closing_submitted,
        S.final_amount_confirmed,
        S.balance_paid,
        S.settlement_paid,
        S.closed,
    ]
    for src, dst in zip(path, path[1:]):
        assert can_transition(src, dst), (src, dst)


@pytest.mark.parametrize(
    "src,dst",
    [
        (S.awaiting_deposit, S.scheduled),
        (S.open, S.in_progress),
        (S.in_progress, S.cancelled),
        (S.settlement_paid, S.dispute_reviewing),
        (S.closed, S.open),
        (S.cancelled, S.open),
        (S.dispute_reviewing, S.closed),
    ],
)
def test_forbidden_edges_are_rejected(src, dst):
    assert not can_transition(src, dst)
    check = validate_transition(src, dst)
    assert not check.valid
    assert check.error


def test_same_state_is_a_valid_noop_but_not_an_edge():
    check = validate_transition(S.open, S.open)
    assert check.valid
    assert check.is_noop
    assert not can_transition(S.open, S.open)


def test_terminal_error_message_mentions_terminal():
    check = validate_transition(S.closed, S.open)
    assert "terminal" in check.error
    assert check.allowed == ()


def test_invalid_transition_reports_allowed_targets():
    check = validate_transition(S.open, S.closed)
    assert check.from_status == "open"
    assert check.to_status == "closed"
    assert set(check.allowed) == {"scheduled", "cancelled"}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("registered", S.open),
        ("matching", S.open),
        ("matched", S.scheduled),
        ("assigned", S.scheduled),
        ("working", S.in_progress),
        ("closing_approved", S.final_amount_confirmed),
        ("completed", S.closed),
        ("  In_Progress ", S.in_progress),
        (S.settled, S.settled),
    ],
)
def test_normalize_maps_aliases_and_canonical_values(raw, expected):
    assert normalize_status(raw) == expected


def test_unrecognized_status_is_kept_as_unknown():
    status = normalize_status("teleported")
    assert isinstance(status, UnknownStatus)
    assert status.raw == "teleported"
    assert not reg.is_known(status)


def test_unknown_status_never_transitions():
    check = validate_transition("teleported", S.open)
    assert not check.valid
    assert check.from_status == "teleported"
    assert next_valid_statuses("teleported") == []
    assert not can_transition("teleported", S.open)


def test_unknown_target_is_rejected():
    check = validate_transition(S.open, "nowhere")
    assert not check.valid
    assert "nowhere" in check.error


def test_legacy_alias_transitions_like_its_canonical_status():
    assert validate_transition("matched", S.in_progress).valid
    assert validate_transition("matched", S.in_progress).from_status == "scheduled"


def test_recovery_map_is_narrower_than_the_graph():
    for src, targets in RECOVERY_OPTIONS.items():
        for dst in targets:
            assert dst in VALID_TRANSITIONS[src]


def test_recovery_options_and_validation():
    assert recovery_options(S.balance_paid) == [S.final_amount_confirmed]
    assert recovery_options(S.open) == []
    assert recovery_options(S.closed) == []
    assert validate_recovery(S.scheduled, S.open).valid
    # In the normal graph, but not a recovery option.
    assert not validate_recovery(S.scheduled, S.cancelled).valid


def test_unknown_status_recovers_only_to_open():
    assert recovery_options("garbage") == [S.open]
    assert validate_recovery("garbage", S.open).valid
    assert not validate_recovery("garbage", S.scheduled).valid


def test_composite_accepts_consistent_states():
    assert is_valid_composite(CompositeState(S.awaiting_deposit, None, P.awaiting_deposit))
    assert is_valid_composite(CompositeState(S.in_progress, None, P.deposit_confirmed))
    assert is_valid_composite(CompositeState(S.in_progress, ST.pending, P.deposit_confirmed))
    assert is_valid_composite(CompositeState(S.balance_paid, ST.payable, P.balance_confirmed))
    assert is_valid_composite(CompositeState(S.closed, ST.cancelled, P.deposit_confirmed))
    assert is_valid_composite(CompositeState(S.dispute_reviewing, ST.on_hold, P.balance_confirmed))


@pytest.mark.parametrize(
    "state",
    [
        CompositeState(S.open, ST.pending, P.deposit_confirmed),
        CompositeState(S.closing_submitted, None, P.deposit_confirmed),
        CompositeState(S.final_amount_confirmed, ST.pending, P.deposit_confirmed),
        CompositeState(S.settlement_paid, ST.payable, P.balance_confirmed),
        CompositeState(S.balance_paid, ST.payable, P.deposit_confirmed),
        CompositeState(S.open, None, P.awaiting_deposit),
    ],
)
def test_composite_rejects_inconsistent_states(state):
    assert composite_violation(state) is not None


def test_settlement_phase_follows_the_order():
    assert reg.settlement_phase_for(S.final_amount_confirmed, ST.pending) == ST.confirmed
    assert reg.settlement_phase_for(S.in_progress, ST.pending) == ST.pending
    assert reg.settlement_phase_for(S.closed, ST.on_hold) == ST.cancelled
    assert reg.settlement_phase_for(S.closed, ST.paid) == ST.paid
    assert reg.settlement_phase_for(S.open, None) is None


def test_settlement_transitions():
    assert validate_settlement_transition(ST.pending, ST.confirmed).valid
    assert validate_settlement_transition(ST.on_hold, ST.paid).valid
    assert not validate_settlement_transition(ST.paid, ST.pending).valid
    assert not validate_settlement_transition(ST.cancelled, ST.pending).valid
    assert validate_settlement_transition(ST.paid, ST.paid).is_noop


def test_capability_sets_follow_the_graph():
    assert reg.CAN_CANCEL == {S.awaiting_deposit, S.open, S.scheduled}
    assert reg.CAN_OPEN_DISPUTE == {S.closing_submitted, S.final_amount_confirmed, S.balance_paid}
    assert reg.IN_PROGRESS_STATUSES == reg.CAN_SUBMIT_CLOSING
    assert not reg.DELETABLE_STATUSES & reg.IN_PROGRESS_STATUSES
    for status in reg.DISPUTE_STATUSES:
        assert reg.ALLOWED_SETTLEMENT_PHASES[status] == {ST.on_hold}


def test_composite_tables_cover_every_status():
    assert set(reg.ALLOWED_SETTLEMENT_PHASES) == set(OrderStatus)
    assert set(reg.ALLOWED_PAYMENT_PHASES) == set(OrderStatus)
