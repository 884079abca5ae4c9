import pytest

from courierhub import models
from courierhub.database import atomic
from courierhub.models import ActorRole
from courierhub.services import commission_policy, event_sink
from courierhub.services import order_lifecycle as lifecycle
from courierhub.services.errors import (
    ConflictError,
    ForbiddenActorError,
    InconsistentStateError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from courierhub.services.order_lifecycle import Actor, ClosingInput

REQUESTER = Actor(10, ActorRole.requester)
OTHER_REQUESTER = Actor(11, ActorRole.requester)
HELPER = Actor(7, ActorRole.helper)
OTHER_HELPER = Actor(8, ActorRole.helper)
ADMIN = Actor(1, ActorRole.admin)

EVIDENCE = ({"kind": "photo", "url": "https://files.example/closing/1.jpg"},)


def _closing(**kw) -> ClosingInput:
    base = dict(delivered_count=100, returned_count=20, etc_count=5, evidence=EVIDENCE)
    base.update(kw)
    return ClosingInput(**base)


def _run(db, fn, *args, **kwargs):
    with atomic(db):
        return fn(db, *args, **kwargs)


def _open_order(db, unit_price=1000) -> int:
    order = _run(db, lifecycle.create_order, actor=REQUESTER, unit_price=unit_price)
    _run(db, lifecycle.confirm_deposit, order.id, actor=REQUESTER)
    return order.id


def _scheduled_order(db) -> int:
    order_id = _open_order(db)
    _run(db, lifecycle.apply_to_order, order_id, actor=HELPER)
    _run(db, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)
    return order_id


def _submitted_order(db, **closing) -> int:
    order_id = _scheduled_order(db)
    _run(db, lifecycle.start_work, order_id, actor=HELPER)
    _run(db, lifecycle.submit_closing_report, order_id, actor=HELPER, data=_closing(**closing))
    return order_id


def _force_status(db, order_id, **values):
    # Bypasses the ORM validators to reproduce legacy or corrupted rows.
    db.query(models.Order).filter(models.Order.id == order_id).update(values, synchronize_session=False)
    db.commit()


def _order(db, order_id) -> models.Order:
    order = db.get(models.Order, order_id)
    db.refresh(order)
    return order


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_full_lifecycle_from_creation_to_close(db_session):
    order_id = _submitted_order(db_session)

    order = _order(db_session, order_id)
    settlement = order.settlement
    assert order.status == "closing_submitted"
    assert order.payment_status == "deposit_confirmed"
    assert settlement.status == "pending"
    assert settlement.total_amount == 141900
    assert settlement.deposit_amount == 14190
    assert settlement.balance_amount == 127710
    assert settlement.platform_fee == 14190
    assert settlement.platform_commission == 11352
    assert settlement.team_leader_incentive == 2838
    assert settlement.net_amount == 127710
    assert settlement.etc_amount == 9000

    _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)
    assert _order(db_session, order_id).settlement.status == "confirmed"

    _run(db_session, lifecycle.mark_balance_paid, order_id, actor=REQUESTER)
    order = _order(db_session, order_id)
    assert order.status == "balance_paid"
    assert order.payment_status == "balance_confirmed"
    assert order.settlement.status == "payable"

    _run(db_session, lifecycle.pay_settlement, settlement.id, actor=ADMIN, payment_reference="PAY-001")
    order = _order(db_session, order_id)
    assert order.status == "settlement_paid"
    assert order.settlement.status == "paid"
    assert order.settlement.payment_reference == "PAY-001"
    assert order.settlement.paid_at is not None

    _run(db_session, lifecycle.close_order, order_id, actor=ADMIN)
    order = _order(db_session, order_id)
    assert order.status == "closed"
    assert order.closed_at is not None
    assert order.settlement.status == "paid"

    transitions = (
        db_session.query(models.DomainEvent)
        .filter(models.DomainEvent.order_id == order_id)
        .filter(models.DomainEvent.event_type == event_sink.ORDER_STATUS_CHANGED)
        .count()
    )
    # created + 8 edges
    assert transitions == 9


def test_settled_is_a_detour_before_close(db_session):
    order_id = _submitted_order(db_session)
    _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)
    _run(db_session, lifecycle.mark_balance_paid, order_id, actor=REQUESTER)
    settlement_id = _order(db_session, order_id).settlement.id
    _run(db_session, lifecycle.pay_settlement, settlement_id, actor=ADMIN)

    _run(db_session, lifecycle.mark_settled, order_id, actor=ADMIN)
    assert _order(db_session, order_id).status == "settled"
    _run(db_session, lifecycle.close_order, order_id, actor=ADMIN)
    assert _order(db_session, order_id).status == "closed"


def test_created_order_freezes_base_rates(db_session):
    order = _run(db_session, lifecycle.create_order, actor=REQUESTER, unit_price=1200, title="Morning run")
    order = _order(db_session, order.id)
    assert order.status == "awaiting_deposit"
    assert order.payment_status == "awaiting_deposit"
    rates = (order.snapshot_total_rate, order.snapshot_platform_rate, order.snapshot_team_leader_rate)
    assert rates == (10, 8, 2)
    assert order.requester_id == REQUESTER.id


# ---------------------------------------------------------------------------
# Helper selection
# ---------------------------------------------------------------------------


def test_selecting_a_helper_rejects_the_other_applicants(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=OTHER_HELPER)

    result = _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)

    assert result.created is True
    order = _order(db_session, order_id)
    assert order.status == "scheduled"
    assert order.matched_helper_id == HELPER.id
    statuses = {a.helper_id: a.status for a in order.applications}
    assert statuses == {HELPER.id: "selected", OTHER_HELPER.id: "rejected"}


def test_reselecting_the_matched_helper_returns_the_existing_match(db_session):
    order_id = _scheduled_order(db_session)

    again = _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)

    assert again.created is False
    assert again.snapshot.total_rate == 10


def test_selecting_a_second_helper_conflicts(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=OTHER_HELPER)
    _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)

    with pytest.raises(ConflictError) as exc:
        _run(db_session, lifecycle.select_helper, order_id, helper_id=OTHER_HELPER.id, actor=REQUESTER)
    assert exc.value.code == "helper_already_matched"
    assert exc.value.retryable is True


def test_losing_a_selection_race_reports_the_winner(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=OTHER_HELPER)

    order = db_session.get(models.Order, order_id)
    assert order.status == "open"
    # Another request matches OTHER_HELPER after this session read the order.
    db_session.query(models.Order).filter(models.Order.id == order_id).update(
        {"status": "scheduled", "matched_helper_id": OTHER_HELPER.id}, synchronize_session=False
    )

    with pytest.raises(ConflictError) as exc:
        _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)
    assert exc.value.code == "helper_already_matched"


def test_selecting_a_helper_who_did_not_apply_fails(db_session):
    order_id = _open_order(db_session)

    with pytest.raises(PreconditionFailedError) as exc:
        _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)
    assert exc.value.code == "helper_not_applied"


def test_applying_twice_returns_the_same_application(db_session):
    order_id = _open_order(db_session)
    first, created = _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)
    second, created_again = _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)

    assert created is True
    assert created_again is False
    assert first.id == second.id


def test_applying_to_an_order_awaiting_deposit_fails(db_session):
    order = _run(db_session, lifecycle.create_order, actor=REQUESTER, unit_price=1000)

    with pytest.raises(PreconditionFailedError) as exc:
        _run(db_session, lifecycle.apply_to_order, order.id, actor=HELPER)
    assert exc.value.code == "order_not_open"


# ---------------------------------------------------------------------------
# Actor rules
# ---------------------------------------------------------------------------


def test_actor_checks(db_session):
    with pytest.raises(ForbiddenActorError):
        _run(db_session, lifecycle.create_order, actor=HELPER, unit_price=1000)

    order = _run(db_session, lifecycle.create_order, actor=REQUESTER, unit_price=1000)
    with pytest.raises(ForbiddenActorError):
        _run(db_session, lifecycle.confirm_deposit, order.id, actor=OTHER_REQUESTER)

    order_id = _scheduled_order(db_session)
    with pytest.raises(ForbiddenActorError):
        _run(db_session, lifecycle.start_work, order_id, actor=OTHER_HELPER)
    with pytest.raises(ForbiddenActorError):
        _run(db_session, lifecycle.close_order, order_id, actor=REQUESTER)

    # Admins may act for any party.
    _run(db_session, lifecycle.start_work, order_id, actor=ADMIN)
    assert _order(db_session, order_id).status == "in_progress"


# ---------------------------------------------------------------------------
# Closing and settlement
# ---------------------------------------------------------------------------


def test_closing_from_scheduled_passes_through_in_progress(db_session):
    order_id = _scheduled_order(db_session)

    outcome = _run(db_session, lifecycle.submit_closing_report, order_id, actor=HELPER, data=_closing())

    assert outcome.created is True
    assert _order(db_session, order_id).status == "closing_submitted"
    steps = [
        (e.payload["from"], e.payload["to"])
        for e in db_session.query(models.DomainEvent)
        .filter(models.DomainEvent.order_id == order_id)
        .filter(models.DomainEvent.event_type == event_sink.ORDER_STATUS_CHANGED)
        .order_by(models.DomainEvent.id)
        .all()
    ]
    assert steps[-2:] == [("scheduled", "in_progress"), ("in_progress", "closing_submitted")]


def test_resubmitting_a_landed_closing_report_is_a_replay(db_session):
    order_id = _submitted_order(db_session)
    first = _order(db_session, order_id).settlement

    replay = _run(
        db_session, lifecycle.submit_closing_report, order_id,
        actor=HELPER, data=_closing(delivered_count=1) )

    assert replay.created is False
    assert replay.settlement.id == first.id
    assert replay.settlement.total_amount == 141900
    assert db_session.query(models.Settlement).count() == 1


def test_resubmission_after_rollback_recomputes_but_keeps_rates_and_deductions(db_session):
    order_id = _submitted_order(db_session)
    settlement_id = _order(db_session, order_id).settlement.id
    _run(
        db_session, lifecycle.record_incident_deduction, order_id,
        actor=ADMIN, incident_id="INC-9", amount=5000
    )
    _run(
        db_session, lifecycle.rollback_status, order_id,
        actor=ADMIN, to_status="in_progress", reason="recount"
    )

    outcome = _run(
        db_session,
        lifecycle.submit_closing_report,
        order_id,
        actor=HELPER,
        data=_closing(delivered_count=50, returned_count=0, etc_count=0),
    )

    settlement = outcome.settlement
    assert settlement.id == settlement_id
    assert outcome.created is False
    assert settlement.total_amount == 55000
    assert settlement.platform_fee == 5500
    assert settlement.deduction_total == 5000
    assert settlement.net_amount == 55000 - 5500 - 5000
    assert settlement.total_rate == 10
    assert _order(db_session, order_id).status == "closing_submitted"


def test_admin_correction_recalculates_and_audits(db_session):
    order_id = _submitted_order(db_session)

    outcome = _run(
        db_session,
        lifecycle.correct_closing_report,
        order_id,
        actor=ADMIN,
        data=_closing(delivered_count=10, returned_count=0, etc_count=0),
        reason="miscounted",
    )

    assert outcome.settlement.total_amount == 11000
    assert outcome.report.corrected_by == ADMIN.id
    assert (
        db_session.query(models.AuditLog)
        .filter(models.AuditLog.action == "closing_report.corrected")
        .count()
        == 1
    )


def test_correction_keeps_the_deposit_rate_frozen_on_the_settlement(db_session):
    order_id = _submitted_order(db_session)
    _run(db_session, commission_policy.set_deposit_rate, percent=50, actor_id=ADMIN.id)

    outcome = _run(
        db_session, lifecycle.correct_closing_report, order_id, actor=ADMIN, data=_closing(), reason="recheck"
    )

    settlement = outcome.settlement
    assert settlement.deposit_rate_percent == 10
    assert settlement.deposit_amount == 14190
    assert settlement.balance_amount == 127710


def test_resubmission_keeps_the_deposit_rate_frozen_on_the_settlement(db_session):
    order_id = _submitted_order(db_session)
    _run(db_session, commission_policy.set_deposit_rate, percent=20, actor_id=ADMIN.id)
    _run(
        db_session, lifecycle.rollback_status, order_id,
        actor=ADMIN, to_status="in_progress", reason="recount"
    )

    outcome = _run(
        db_session, lifecycle.submit_closing_report, order_id,
        actor=HELPER, data=_closing(delivered_count=50, returned_count=0, etc_count=0)
    )

    settlement = outcome.settlement
    assert settlement.total_amount == 55000
    assert settlement.deposit_rate_percent == 10
    assert settlement.deposit_amount == 5500


def test_vat_ignores_a_stored_system_setting(db_session):
    db_session.add(models.SystemSetting(key="vat_rate", value="5"))
    db_session.commit()

    order_id = _submitted_order(db_session)

    settlement = _order(db_session, order_id).settlement
    assert settlement.vat_amount == 12900
    assert settlement.total_amount == 141900


def test_final_amount_requires_evidence(db_session):
    order_id = _submitted_order(db_session, evidence=())

    with pytest.raises(PreconditionFailedError) as exc:
        _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)
    assert exc.value.code == "closing_evidence_required"


def test_confirming_the_final_amount_twice_is_harmless(db_session):
    order_id = _submitted_order(db_session)
    _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)

    settlement = _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)

    assert settlement.status == "confirmed"


def test_negative_closing_counts_are_rejected():
    with pytest.raises(PreconditionFailedError) as exc:
        ClosingInput(delivered_count=-3)
    assert exc.value.code == "invalid_closing_report"


def test_paying_before_the_balance_is_confirmed_is_invalid(db_session):
    order_id = _submitted_order(db_session)
    settlement_id = _order(db_session, order_id).settlement.id

    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.pay_settlement, settlement_id, actor=ADMIN)
    assert _order(db_session, order_id).settlement.status == "pending"


# ---------------------------------------------------------------------------
# Cancel, delete
# ---------------------------------------------------------------------------


def test_cancel_rejects_pending_applications(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)

    _run(db_session, lifecycle.cancel_order, order_id, actor=REQUESTER, reason="no longer needed")

    order = _order(db_session, order_id)
    assert order.status == "cancelled"
    assert order.cancelled_at is not None
    assert [a.status for a in order.applications] == ["rejected"]

    again = _run(db_session, lifecycle.cancel_order, order_id, actor=REQUESTER)
    assert again.changed is False


def test_work_in_progress_cannot_be_cancelled(db_session):
    order_id = _scheduled_order(db_session)
    _run(db_session, lifecycle.start_work, order_id, actor=HELPER)

    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.cancel_order, order_id, actor=REQUESTER)


def test_delete_is_limited_to_pre_match_orders(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.delete_order, order_id, actor=REQUESTER)
    assert db_session.get(models.Order, order_id) is None

    order_id = _scheduled_order(db_session)
    with pytest.raises(PreconditionFailedError) as exc:
        _run(db_session, lifecycle.delete_order, order_id, actor=REQUESTER)
    assert exc.value.code == "order_not_deletable"


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


def test_dispute_holds_the_settlement_and_deducts_on_resolution(db_session):
    order_id = _submitted_order(db_session)

    dispute = _run(
        db_session, lifecycle.open_dispute, order_id,
        actor=REQUESTER, reason="two parcels damaged" )
    order = _order(db_session, order_id)
    assert order.status == "dispute_reviewing"
    assert order.settlement.status == "on_hold"
    assert order.settlement.hold_reason == "two parcels damaged"

    same = _run(db_session, lifecycle.open_dispute, order_id, actor=HELPER, reason="again")
    assert same.id == dispute.id

    _run(
        db_session,
        lifecycle.resolve_dispute,
        dispute.id,
        actor=ADMIN,
        outcome="resolved",
        deduction_amount=5000,
        note="helper liable",
    )
    order = _order(db_session, order_id)
    assert order.status == "dispute_resolved"
    assert order.settlement.deduction_total == 5000
    assert order.settlement.net_amount == 127710 - 5000
    entry = db_session.query(models.DeductionLedgerEntry).one()
    assert (entry.source_type, entry.source_id) == ("dispute", str(dispute.id))

    # Retrying the resolution does not deduct twice.
    _run(
        db_session, lifecycle.resolve_dispute, dispute.id,
        actor=ADMIN, outcome="resolved", deduction_amount=5000
    )
    assert _order(db_session, order_id).settlement.deduction_total == 5000

    _run(
        db_session, lifecycle.resume_after_dispute, order_id,
        actor=ADMIN, to_status="final_amount_confirmed" )
    order = _order(db_session, order_id)
    assert order.status == "final_amount_confirmed"
    assert order.settlement.status == "confirmed"
    assert order.settlement.hold_reason is None


def test_closing_a_disputed_order_cancels_the_unpaid_settlement(db_session):
    order_id = _submitted_order(db_session)
    dispute = _run(db_session, lifecycle.open_dispute, order_id, actor=HELPER, reason="requester unreachable")
    _run(db_session, lifecycle.resolve_dispute, dispute.id, actor=ADMIN, outcome="rejected")

    _run(db_session, lifecycle.resume_after_dispute, order_id, actor=ADMIN, to_status="closed")

    order = _order(db_session, order_id)
    assert order.status == "closed"
    assert order.settlement.status == "cancelled"


def test_rejected_dispute_cannot_carry_a_deduction(db_session):
    order_id = _submitted_order(db_session)
    dispute = _run(db_session, lifecycle.open_dispute, order_id, actor=REQUESTER, reason="late delivery")

    with pytest.raises(PreconditionFailedError) as exc:
        _run(
            db_session, lifecycle.resolve_dispute, dispute.id,
            actor=ADMIN, outcome="rejected", deduction_amount=100
        )
    assert exc.value.code == "deduction_requires_resolution"


def test_disputes_cannot_be_opened_before_closing(db_session):
    order_id = _scheduled_order(db_session)
    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.open_dispute, order_id, actor=REQUESTER, reason="too early")


def test_resume_target_must_be_a_dispute_exit(db_session):
    order_id = _submitted_order(db_session)
    dispute = _run(db_session, lifecycle.open_dispute, order_id, actor=REQUESTER, reason="wrong count")
    _run(db_session, lifecycle.resolve_dispute, dispute.id, actor=ADMIN, outcome="resolved")

    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.resume_after_dispute, order_id, actor=ADMIN, to_status="in_progress")


# ---------------------------------------------------------------------------
# Admin recovery
# ---------------------------------------------------------------------------


def test_rollback_to_open_unmatches_and_reopens_applications(db_session):
    order_id = _open_order(db_session)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=HELPER)
    _run(db_session, lifecycle.apply_to_order, order_id, actor=OTHER_HELPER)
    _run(db_session, lifecycle.select_helper, order_id, helper_id=HELPER.id, actor=REQUESTER)

    _run(db_session, lifecycle.rollback_status, order_id, actor=ADMIN, to_status="open", reason="helper sick")

    order = _order(db_session, order_id)
    assert order.status == "open"
    assert order.matched_helper_id is None
    assert {a.status for a in order.applications} == {"applied"}
    assert db_session.query(models.AuditLog).filter(models.AuditLog.action == "order.rollback").count() == 1

    result = _run(db_session, lifecycle.select_helper, order_id, helper_id=OTHER_HELPER.id, actor=REQUESTER)
    assert result.order.matched_helper_id == OTHER_HELPER.id


def test_rollback_outside_the_recovery_map_is_rejected(db_session):
    order_id = _submitted_order(db_session)
    with pytest.raises(InvalidTransitionError):
        _run(
            db_session, lifecycle.rollback_status, order_id,
            actor=ADMIN, to_status="scheduled", reason="skip" )


def test_unmatching_is_blocked_once_a_settlement_exists(db_session):
    order_id = _submitted_order(db_session)
    _run(
        db_session, lifecycle.rollback_status, order_id,
        actor=ADMIN, to_status="in_progress", reason="recount"
    )
    _run(
        db_session, lifecycle.rollback_status, order_id,
        actor=ADMIN, to_status="scheduled", reason="restart" )

    with pytest.raises(InconsistentStateError):
        _run(db_session, lifecycle.rollback_status, order_id, actor=ADMIN, to_status="open", reason="unmatch")
    assert _order(db_session, order_id).status == "scheduled"


def test_admin_transition_follows_the_normal_graph(db_session):
    order_id = _scheduled_order(db_session)

    outcome = _run(
        db_session, lifecycle.transition_order_status, order_id,
        actor=ADMIN, to_status="in_progress", reason="ops"
    )
    assert outcome.changed is True
    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.transition_order_status, order_id, actor=ADMIN, to_status="closed")


def test_legacy_status_behaves_like_its_canonical_status(db_session):
    order_id = _scheduled_order(db_session)
    _force_status(db_session, order_id, status="matched")

    _run(db_session, lifecycle.start_work, order_id, actor=HELPER)

    assert _order(db_session, order_id).status == "in_progress"


def test_unknown_status_is_frozen_until_recovered_to_open(db_session):
    order_id = _open_order(db_session)
    _force_status(db_session, order_id, status="teleported")

    order = _order(db_session, order_id)
    summary = lifecycle.describe_transitions(order)
    assert summary.known is False
    assert summary.next_valid == []
    assert summary.recovery == ["open"]

    with pytest.raises(InvalidTransitionError):
        _run(db_session, lifecycle.cancel_order, order_id, actor=REQUESTER)

    _run(db_session, lifecycle.rollback_status, order_id, actor=ADMIN, to_status="open", reason="repair")
    assert _order(db_session, order_id).status == "open"


# ---------------------------------------------------------------------------
# Deductions through the controller
# ---------------------------------------------------------------------------


def test_admin_adjustment_is_idempotent_and_audited_once(db_session):
    order_id = _submitted_order(db_session)

    adjustment = dict(actor=ADMIN, adjustment_key="fuel-2026-10", amount=3000, reason="fuel card")
    first = _run(db_session, lifecycle.apply_admin_adjustment, order_id, **adjustment)
    second = _run(db_session, lifecycle.apply_admin_adjustment, order_id, **adjustment)

    assert first.applied is True
    assert second.applied is False
    assert _order(db_session, order_id).settlement.deduction_total == 3000
    audits = (
        db_session.query(models.AuditLog)
        .filter(models.AuditLog.action == "settlement.admin_adjustment")
        .count()
    )
    assert audits == 1


def test_paid_settlement_ledger_is_locked(db_session):
    order_id = _submitted_order(db_session)
    _run(db_session, lifecycle.confirm_final_amount, order_id, actor=REQUESTER)
    _run(db_session, lifecycle.mark_balance_paid, order_id, actor=REQUESTER)
    _run(db_session, lifecycle.pay_settlement, _order(db_session, order_id).settlement.id, actor=ADMIN)

    with pytest.raises(PreconditionFailedError) as exc:
        _run(
            db_session, lifecycle.record_incident_deduction, order_id,
            actor=ADMIN, incident_id="late", amount=100
        )
    assert exc.value.code == "settlement_already_paid"
