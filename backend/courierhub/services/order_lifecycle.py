"""Order lifecycle controller.

Every operation here validates the requested transition against the status
registry, writes the order, its settlement and ledger changes, and the
matching domain events. Nothing is committed: callers wrap each operation in
``courierhub.database.atomic`` so the whole operation is one transaction.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from courierhub import models
from courierhub.models import (
    ActorRole,
    ApplicationStatus,
    DeductionSourceType,
    DisputeStatus,
    OrderStatus,
    PaymentStatus,
    SettlementStatus,
)
from courierhub.services import event_sink
from courierhub.services.audit import audit_event
from courierhub.services.commission_policy import get_effective_rate
from courierhub.services.deduction_ledger import LedgerResult, apply_deduction
from courierhub.services.errors import (
    ConflictError,
    ForbiddenActorError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from courierhub.services.order_status import (
    CAN_APPLY,
    CAN_CANCEL,
    CAN_CONFIRM_BALANCE,
    CAN_CONFIRM_FINAL_AMOUNT,
    CAN_OPEN_DISPUTE,
    CAN_SELECT_HELPER,
    CAN_START_WORK,
    CAN_SUBMIT_CLOSING,
    DELETABLE_STATUSES,
    DISPUTE_EXIT_STATUSES,
    CompositeState,
    TransitionCheck,
    composite_violation,
    is_known,
    next_valid_statuses,
    normalize_status,
    payment_phase_for,
    recovery_options,
    settlement_phase_for,
    status_values,
    validate_recovery,
    validate_transition,
)
from courierhub.services.policy_config import PolicyConfig, load_policy_config
from courierhub.services.rate_snapshot import (
    RateSnapshot,
    freeze_rates_on_application,
    freeze_rates_on_order,
    resolve_rate_snapshot,
    snapshot_from_application,
)
from courierhub.services.settlement_calculator import (
    ExtraCost,
    compute_helper_payout,
    extra_costs_to_json,
    parse_closing_report,
    parse_extra_costs,
    percent_to_rate,
)
from courierhub.services.settlement_status import (
    coerce_settlement_status,
    validate_settlement_transition,
)

logger = logging.getLogger("courierhub")

# Statuses that only make sense with a matched helper.
_UNMATCHED_STATUSES = frozenset({OrderStatus.awaiting_deposit, OrderStatus.open, OrderStatus.cancelled})


@dataclass(frozen=True)
class Actor:
    id: int
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.admin


@dataclass(frozen=True)
class TransitionOutcome:
    order: models.Order
    from_status: str
    to_status: str
    changed: bool


@dataclass(frozen=True)
class SelectHelperResult:
    order: models.Order
    application: models.OrderApplication
    snapshot: RateSnapshot
    created: bool


@dataclass(frozen=True)
class SettlementWrite:
    settlement: models.Settlement
    created: bool


@dataclass(frozen=True)
class ClosingOutcome:
    order: models.Order
    report: models.ClosingReport
    settlement: models.Settlement
    created: bool


@dataclass(frozen=True)
class ClosingInput:
    delivered_count: int
    returned_count: int = 0
    etc_count: int = 0
    etc_price_per_unit: int | None = None
    extra_costs: tuple[ExtraCost, ...] = ()
    evidence: tuple[dict[str, Any], ...] = ()
    memo: str | None = None

    def __post_init__(self) -> None:
        for name in ("delivered_count", "returned_count", "etc_count", "etc_price_per_unit"):
            value = getattr(self, name)
            if value is not None and int(value) < 0:
                raise PreconditionFailedError(
                    f"{name} must be a non-negative integer",
                    code="invalid_closing_report",
                    details={name: value},
                )
        try:
            costs = parse_extra_costs(list(self.extra_costs or ()))
        except ValueError as exc:
            raise PreconditionFailedError(str(exc), code="invalid_closing_report") from exc
        object.__setattr__(self, "extra_costs", costs)
        object.__setattr__(self, "evidence", tuple(self.evidence or ()))


@dataclass(frozen=True)
class TransitionSummary:
    current: str
    known: bool
    next_valid: list[str] = field(default_factory=list)
    recovery: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _correlation(correlation_id: str | None) -> str:
    return correlation_id or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Loading and actor checks
# ---------------------------------------------------------------------------


def get_order(db: Session, order_id: int) -> models.Order:
    order = db.get(models.Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", code="order_not_found", details={"order_id": order_id})
    return order


def get_settlement(db: Session, settlement_id: int) -> models.Settlement:
    settlement = db.get(models.Settlement, settlement_id)
    if settlement is None:
        raise NotFoundError(
            "Settlement not found",
            code="settlement_not_found",
            details={"settlement_id": settlement_id},
        )
    return settlement


def get_order_settlement(db: Session, order_id: int) -> models.Settlement:
    order = get_order(db, order_id)
    if order.settlement is None:
        raise NotFoundError(
            "Order has no settlement yet",
            code="settlement_not_found",
            details={"order_id": order_id},
        )
    return order.settlement


def _forbid(actor: Actor, action: str) -> ForbiddenActorError:
    return ForbiddenActorError(
        f"Actor is not allowed to {action} on this order",
        details={"actor_id": actor.id, "role": actor.role.value},
    )


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise _forbid(actor, action)


def _require_requester(order: models.Order, actor: Actor, action: str) -> None:
    if actor.is_admin:
        return
    if actor.role != ActorRole.requester or int(order.requester_id) != int(actor.id):
        raise _forbid(actor, action)


def _require_matched_helper(order: models.Order, actor: Actor, action: str) -> None:
    if actor.is_admin:
        return
    if actor.role != ActorRole.helper or order.matched_helper_id != actor.id:
        raise _forbid(actor, action)


def _require_party(order: models.Order, actor: Actor, action: str) -> None:
    if actor.is_admin:
        return
    if actor.role == ActorRole.requester and int(order.requester_id) == int(actor.id):
        return
    if actor.role == ActorRole.helper and order.matched_helper_id == actor.id:
        return
    raise _forbid(actor, action)


def _known_status(order: models.Order, requested: OrderStatus) -> OrderStatus:
    current = normalize_status(order.status)
    if not is_known(current):
        raise InvalidTransitionError.from_check(validate_transition(current, requested))
    return current


def _require_capability(
    order: models.Order, capability: frozenset[OrderStatus], requested: OrderStatus, action: str
) -> OrderStatus:
    current = _known_status(order, requested)
    if current not in capability:
        raise InvalidTransitionError(
            f"Cannot {action} while order is '{current.value}'",
            details={
                "current": current.value,
                "requested": requested.value,
                "allowed": sorted(s.value for s in capability),
            },
        )
    return current


# ---------------------------------------------------------------------------
# Guarded transition
# ---------------------------------------------------------------------------


def _set_settlement_status(
    db: Session,
    settlement: models.Settlement,
    target: SettlementStatus,
    *,
    now: datetime,
    actor: Actor,
    correlation_id: str,
    hold_reason: str | None = None,
) -> None:
    current = coerce_settlement_status(settlement.status)
    check = validate_settlement_transition(current, target)
    if not check.valid:
        raise InconsistentStateError(
            check.error or "settlement transition not allowed",
            details={
                "current": check.from_status,
                "requested": check.to_status,
                "allowed": list(check.allowed),
            },
        )
    if check.is_noop:
        return

    settlement.status = target.value
    if target == SettlementStatus.pending:
        settlement.confirmed_at = None
        settlement.payable_at = None
    elif target == SettlementStatus.confirmed:
        settlement.confirmed_at = settlement.confirmed_at or now
        settlement.payable_at = None
    elif target == SettlementStatus.payable:
        settlement.confirmed_at = settlement.confirmed_at or now
        settlement.payable_at = now
    elif target == SettlementStatus.paid:
        settlement.paid_at = now

    if target == SettlementStatus.on_hold:
        settlement.hold_reason = hold_reason or settlement.hold_reason
    else:
        settlement.hold_reason = None
    settlement.version = int(settlement.version or 1) + 1
    db.flush()

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.SETTLEMENT_STATUS_CHANGED,
        subject_type="settlement",
        subject_id=settlement.id,
        order_id=settlement.order_id,
        idempotency_key=f"settlement:{settlement.id}:{current.value}->{target.value}:{correlation_id}",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={"from": current.value, "to": target.value},
    )


def _guarded_transition(
    db: Session,
    order: models.Order,
    to_status: OrderStatus,
    *,
    actor: Actor,
    correlation_id: str,
    reason: str | None = None,
    check: TransitionCheck | None = None,
    updates: dict[str, Any] | None = None,
    extra_filters: Iterable[Any] = (),
    hold_reason: str | None = None,
    settlement_paid_reference: str | None = None,
    trigger: str = "user",
) -> TransitionOutcome:
    """Move ``order`` to ``to_status`` under the registry and composite rules.

    The write is a conditional UPDATE on the status the order was read with,
    so a concurrent writer makes this call fail with a retryable conflict
    instead of overwriting it.
    """

    if check is None:
        check = validate_transition(order.status, to_status)
    if not check.valid:
        raise InvalidTransitionError.from_check(check)
    if check.is_noop:
        return TransitionOutcome(
            order=order, from_status=check.from_status, to_status=check.to_status, changed=False
        )

    now = _now()
    settlement = order.settlement
    settlement_now = coerce_settlement_status(settlement.status) if settlement is not None else None
    settlement_next = settlement_phase_for(to_status, settlement_now)
    payment_next = payment_phase_for(to_status, PaymentStatus(order.payment_status))

    violation = composite_violation(
        CompositeState(order_status=to_status, settlement_status=settlement_next, payment_status=payment_next)
    )
    if violation:
        raise InconsistentStateError(
            violation,
            details={
                "order_status": to_status.value,
                "settlement_status": settlement_next.value if settlement_next else None,
                "payment_status": payment_next.value,
            },
        )

    values: dict[str, Any] = dict(updates or {})
    if to_status == OrderStatus.open:
        values.setdefault("matched_helper_id", None)
        values.setdefault("matched_at", None)
    matched_helper = values.get("matched_helper_id", order.matched_helper_id)
    if to_status not in _UNMATCHED_STATUSES and matched_helper is None:
        raise InconsistentStateError(
            f"order '{to_status.value}' requires a matched helper",
            details={"order_status": to_status.value},
        )

    db.flush()
    O = models.Order
    values.update({"status": to_status.value, "payment_status": payment_next.value})
    rowcount = (
        db.query(O)
        .filter(O.id == order.id)
        .filter(O.status == order.status)
        .filter(*extra_filters)
        .update(values, synchronize_session=False)
    )
    if not rowcount:
        raise ConflictError(
            "Order changed concurrently; reload and retry",
            code="concurrent_update",
            retryable=True,
            details={"order_id": order.id, "expected_status": check.from_status},
        )
    db.refresh(order)

    if settlement is not None and settlement_next is not None:
        _set_settlement_status(
            db,
            settlement,
            settlement_next,
            now=now,
            actor=actor,
            correlation_id=correlation_id,
            hold_reason=hold_reason,
        )
        if settlement_next == SettlementStatus.paid and settlement_paid_reference:
            settlement.payment_reference = settlement_paid_reference
            db.flush()

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.ORDER_STATUS_CHANGED,
        subject_type="order",
        subject_id=order.id,
        order_id=order.id,
        idempotency_key=f"order:{order.id}:{check.from_status}->{to_status.value}:{correlation_id}",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={
            "from": check.from_status,
            "to": to_status.value,
            "reason": reason,
            "trigger": trigger,
            "payment_status": payment_next.value,
            "settlement_status": settlement_next.value if settlement_next else None,
        },
    )
    return TransitionOutcome(
        order=order, from_status=check.from_status, to_status=to_status.value, changed=True
    )


# ---------------------------------------------------------------------------
# Settlement creation
# ---------------------------------------------------------------------------


def _apply_payout(settlement: models.Settlement, payout) -> None:
    settlement.total_billable_count = payout.total_billable_count
    settlement.delivery_return_amount = payout.delivery_return_amount
    settlement.etc_amount = payout.etc_amount
    settlement.extra_costs_total = payout.extra_costs_total
    settlement.supply_amount = payout.supply_amount
    settlement.vat_amount = payout.vat_amount
    settlement.total_amount = payout.total_amount
    settlement.deposit_amount = payout.deposit_amount
    settlement.balance_amount = payout.balance_amount
    settlement.platform_fee = payout.platform_fee
    settlement.platform_commission = payout.platform_commission
    settlement.team_leader_incentive = payout.team_leader_incentive
    settlement.net_amount = payout.total_amount - payout.platform_fee - int(settlement.deduction_total or 0)


def _payout_for(
    report: models.ClosingReport,
    order: models.Order,
    config: PolicyConfig,
    rates,
    *,
    deposit_rate_percent: int,
):
    closing = parse_closing_report(
        report, order, default_etc_price_per_unit=config.default_etc_price_per_unit
    )
    return compute_helper_payout(
        closing,
        rates.total_rate,
        deposit_rate=percent_to_rate(deposit_rate_percent),
        platform_rate=rates.platform_rate,
        team_leader_rate=rates.team_leader_rate,
    )


def _recalculate_settlement(
    db: Session,
    settlement: models.Settlement,
    report: models.ClosingReport,
    order: models.Order,
    config: PolicyConfig,
    *,
    actor: Actor,
    correlation_id: str,
) -> None:
    if settlement.status not in {SettlementStatus.pending.value, SettlementStatus.on_hold.value}:
        raise PreconditionFailedError(
            f"Settlement is {settlement.status}; amounts can no longer change",
            code="settlement_locked",
            details={"settlement_id": settlement.id, "status": settlement.status},
        )
    before = settlement.total_amount
    # Commission and deposit rates stay as frozen; only the closing inputs changed.
    payout = _payout_for(
        report, order, config, settlement, deposit_rate_percent=settlement.deposit_rate_percent
    )
    _apply_payout(settlement, payout)
    settlement.version = int(settlement.version or 1) + 1
    db.flush()

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.SETTLEMENT_RECALCULATED,
        subject_type="settlement",
        subject_id=settlement.id,
        order_id=order.id,
        idempotency_key=f"settlement:{settlement.id}:recalculated:v{settlement.version}",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={"total_before": before, "total_after": settlement.total_amount},
    )


def ensure_settlement(
    db: Session,
    order: models.Order,
    report: models.ClosingReport,
    config: PolicyConfig,
    *,
    actor: Actor,
    correlation_id: str,
) -> SettlementWrite:
    """Create the order's settlement once; later calls return the existing row."""

    existing = db.query(models.Settlement).filter(models.Settlement.order_id == order.id).first()
    if existing is not None:
        logger.info("settlement_create_skipped", extra={"order_id": order.id, "settlement_id": existing.id})
        db.expire(order, ["settlement"])
        return SettlementWrite(settlement=existing, created=False)

    snapshot = resolve_rate_snapshot(db, order, order.matched_helper_id, config)
    payout = _payout_for(
        report, order, config, snapshot, deposit_rate_percent=config.deposit_rate_percent
    )

    settlement = models.Settlement(
        order_id=order.id,
        helper_id=order.matched_helper_id,
        total_rate=snapshot.total_rate,
        platform_rate=snapshot.platform_rate,
        team_leader_rate=snapshot.team_leader_rate,
        team_leader_id=snapshot.team_leader_id,
        rate_source=snapshot.source,
        policy_tier=snapshot.policy_tier,
        deposit_rate_percent=config.deposit_rate_percent,
        deduction_total=0,
        status=SettlementStatus.pending.value,
        version=1,
    )
    _apply_payout(settlement, payout)

    try:
        with db.begin_nested():
            db.add(settlement)
    except IntegrityError:
        existing = db.query(models.Settlement).filter(models.Settlement.order_id == order.id).first()
        if existing is None:
            raise
        db.expire(order, ["settlement"])
        return SettlementWrite(settlement=existing, created=False)

    db.expire(order, ["settlement"])
    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.SETTLEMENT_CREATED,
        subject_type="settlement",
        subject_id=settlement.id,
        order_id=order.id,
        idempotency_key=f"settlement:order:{order.id}:created",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={
            "rate": snapshot.as_dict(),
            "total_amount": settlement.total_amount,
            "platform_fee": settlement.platform_fee,
            "net_amount": settlement.net_amount,
        },
    )
    logger.info(
        "settlement_created",
        extra={"order_id": order.id, "settlement_id": settlement.id, "rate_source": snapshot.source},
    )
    return SettlementWrite(settlement=settlement, created=True)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def create_order(
    db: Session,
    *,
    actor: Actor,
    unit_price: int,
    etc_price_per_unit: int | None = None,
    title: str | None = None,
    memo: str | None = None,
    requester_id: int | None = None,
    config: PolicyConfig | None = None,
    correlation_id: str | None = None,
) -> models.Order:
    if actor.role == ActorRole.helper:
        raise _forbid(actor, "create orders")
    config = config or load_policy_config(db)
    correlation_id = _correlation(correlation_id)

    order = models.Order(
        requester_id=requester_id if (actor.is_admin and requester_id is not None) else actor.id,
        unit_price=unit_price,
        etc_price_per_unit=etc_price_per_unit,
        title=title,
        memo=memo,
        status=OrderStatus.awaiting_deposit.value,
        payment_status=PaymentStatus.awaiting_deposit.value,
    )
    freeze_rates_on_order(order, config.base_rates)
    db.add(order)
    db.flush()

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.ORDER_STATUS_CHANGED,
        subject_type="order",
        subject_id=order.id,
        order_id=order.id,
        idempotency_key=f"order:{order.id}:created",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={"from": None, "to": order.status, "trigger": "user"},
    )
    return order


def confirm_deposit(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> TransitionOutcome:
    order = get_order(db, order_id)
    _require_requester(order, actor, "confirm the deposit")
    return _guarded_transition(
        db, order, OrderStatus.open, actor=actor, correlation_id=_correlation(correlation_id)
    )


def apply_to_order(
    db: Session, order_id: int, *, actor: Actor, message: str | None = None
) -> tuple[models.OrderApplication, bool]:
    if actor.role != ActorRole.helper:
        raise _forbid(actor, "apply")
    order = get_order(db, order_id)

    existing = (
        db.query(models.OrderApplication)
        .filter(models.OrderApplication.order_id == order.id)
        .filter(models.OrderApplication.helper_id == actor.id)
        .first()
    )
    if existing is not None:
        return existing, False

    current = normalize_status(order.status)
    if current not in CAN_APPLY:
        raise PreconditionFailedError(
            "Order is not accepting applications",
            code="order_not_open",
            details={"current": current.value},
        )

    application = models.OrderApplication(
        order_id=order.id,
        helper_id=actor.id,
        status=ApplicationStatus.applied.value,
        message=message,
    )
    try:
        with db.begin_nested():
            db.add(application)
    except IntegrityError:
        existing = (
            db.query(models.OrderApplication)
            .filter(models.OrderApplication.order_id == order.id)
            .filter(models.OrderApplication.helper_id == actor.id)
            .first()
        )
        if existing is None:
            raise
        return existing, False
    return application, True


def select_helper(
    db: Session,
    order_id: int,
    *,
    helper_id: int,
    actor: Actor,
    config: PolicyConfig | None = None,
    correlation_id: str | None = None,
) -> SelectHelperResult:
    """Match ``helper_id`` to the order and freeze their commission rate.

    Racing selections are resolved by the conditional UPDATE: the loser gets
    a retryable ``helper_already_matched`` conflict. Re-selecting the helper
    who already won returns the existing match.
    """

    config = config or load_policy_config(db)
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    _require_requester(order, actor, "select a helper")

    def _existing_match() -> SelectHelperResult | None:
        if order.matched_helper_id is None:
            return None
        if order.matched_helper_id != helper_id:
            logger.info(
                "helper_select_conflict",
                extra={
                    "order_id": order.id,
                    "matched_helper_id": order.matched_helper_id,
                    "helper_id": helper_id,
                },
            )
            raise ConflictError(
                "Another helper has already been selected for this order",
                code="helper_already_matched",
                retryable=True,
                details={"order_id": order.id},
            )
        application = (
            db.query(models.OrderApplication)
            .filter(models.OrderApplication.order_id == order.id)
            .filter(models.OrderApplication.helper_id == helper_id)
            .one()
        )
        return SelectHelperResult(
            order=order,
            application=application,
            snapshot=snapshot_from_application(application),
            created=False,
        )

    found = _existing_match()
    if found is not None:
        return found

    _require_capability(order, CAN_SELECT_HELPER, OrderStatus.scheduled, "select a helper")

    application = (
        db.query(models.OrderApplication)
        .filter(models.OrderApplication.order_id == order.id)
        .filter(models.OrderApplication.helper_id == helper_id)
        .first()
    )
    if application is None or application.status != ApplicationStatus.applied.value:
        raise PreconditionFailedError(
            "Helper has no open application for this order",
            code="helper_not_applied",
            details={"order_id": order.id, "helper_id": helper_id},
        )

    rates = get_effective_rate(db, helper_id, config)
    now = _now()
    try:
        _guarded_transition(
            db,
            order,
            OrderStatus.scheduled,
            actor=actor,
            correlation_id=correlation_id,
            updates={"matched_helper_id": helper_id, "matched_at": now},
            extra_filters=[models.Order.matched_helper_id.is_(None)],
        )
    except ConflictError as exc:
        if exc.code != "concurrent_update":
            raise
        db.refresh(order)
        found = _existing_match()
        if found is not None:
            return found
        raise

    freeze_rates_on_application(application, rates, now)
    application.status = ApplicationStatus.selected.value
    (
        db.query(models.OrderApplication)
        .filter(models.OrderApplication.order_id == order.id)
        .filter(models.OrderApplication.id != application.id)
        .filter(models.OrderApplication.status == ApplicationStatus.applied.value)
        .update({"status": ApplicationStatus.rejected.value}, synchronize_session=False)
    )
    db.flush()

    snapshot = snapshot_from_application(application)
    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.HELPER_SELECTED,
        subject_type="order",
        subject_id=order.id,
        order_id=order.id,
        idempotency_key=f"order:{order.id}:helper:{helper_id}:selected:{correlation_id}",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={"helper_id": helper_id, "rate": snapshot.as_dict()},
    )
    return SelectHelperResult(order=order, application=application, snapshot=snapshot, created=True)


def start_work(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> TransitionOutcome:
    order = get_order(db, order_id)
    _require_matched_helper(order, actor, "start work")
    current = normalize_status(order.status)
    if current == OrderStatus.in_progress:
        return TransitionOutcome(
            order=order, from_status=current.value, to_status=current.value, changed=False
        )
    _require_capability(order, CAN_START_WORK, OrderStatus.in_progress, "start work")
    return _guarded_transition(
        db, order, OrderStatus.in_progress, actor=actor, correlation_id=_correlation(correlation_id)
    )


def _write_report_fields(
    report: models.ClosingReport, data: ClosingInput, order: models.Order, config: PolicyConfig
) -> None:
    etc_price = data.etc_price_per_unit
    if etc_price is None:
        etc_price = order.etc_price_per_unit
    if etc_price is None:
        etc_price = config.default_etc_price_per_unit
    report.delivered_count = data.delivered_count
    report.returned_count = data.returned_count
    report.etc_count = data.etc_count
    report.etc_price_per_unit = etc_price
    report.extra_costs = extra_costs_to_json(data.extra_costs)
    report.evidence = [dict(e) for e in data.evidence]
    report.memo = data.memo


def submit_closing_report(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    data: ClosingInput,
    config: PolicyConfig | None = None,
    correlation_id: str | None = None,
) -> ClosingOutcome:
    """Record the helper's closing report and compute the settlement.

    Retrying a submission that already landed returns the existing report and
    settlement unchanged.
    """

    config = config or load_policy_config(db)
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    _require_matched_helper(order, actor, "submit the closing report")

    current = normalize_status(order.status)
    if current == OrderStatus.closing_submitted and order.settlement is not None:
        logger.info("closing_report_replayed", extra={"order_id": order.id})
        return ClosingOutcome(
            order=order, report=order.closing_report, settlement=order.settlement, created=False
        )
    _require_capability(order, CAN_SUBMIT_CLOSING, OrderStatus.closing_submitted, "submit a closing report")

    report = order.closing_report
    resubmission = report is not None
    if report is None:
        report = models.ClosingReport(order_id=order.id, helper_id=order.matched_helper_id)
        db.add(report)
    else:
        report.corrected_by = actor.id
        report.corrected_at = _now()
    _write_report_fields(report, data, order, config)
    db.flush()

    if order.settlement is not None and resubmission:
        _recalculate_settlement(
            db, order.settlement, report, order, config, actor=actor, correlation_id=correlation_id
        )
        settlement = order.settlement
        created = False
    else:
        write = ensure_settlement(db, order, report, config, actor=actor, correlation_id=correlation_id)
        settlement = write.settlement
        created = write.created

    if current == OrderStatus.scheduled:
        _guarded_transition(db, order, OrderStatus.in_progress, actor=actor, correlation_id=correlation_id)
    _guarded_transition(db, order, OrderStatus.closing_submitted, actor=actor, correlation_id=correlation_id)
    return ClosingOutcome(order=order, report=report, settlement=settlement, created=created)


def correct_closing_report(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    data: ClosingInput,
    reason: str,
    config: PolicyConfig | None = None,
    correlation_id: str | None = None,
) -> ClosingOutcome:
    _require_admin(actor, "correct a closing report")
    config = config or load_policy_config(db)
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    report = order.closing_report
    if report is None or order.settlement is None:
        raise PreconditionFailedError(
            "Order has no closing report to correct",
            code="closing_report_missing",
            details={"order_id": order.id},
        )

    before = {
        "delivered_count": report.delivered_count,
        "returned_count": report.returned_count,
        "etc_count": report.etc_count,
        "etc_price_per_unit": report.etc_price_per_unit,
        "extra_costs": report.extra_costs,
    }
    _write_report_fields(report, data, order, config)
    report.corrected_by = actor.id
    report.corrected_at = _now()
    db.flush()
    _recalculate_settlement(
        db, order.settlement, report, order, config, actor=actor, correlation_id=correlation_id
    )

    audit_event(
        "closing_report.corrected",
        actor.id,
        {"order_id": order.id, "reason": reason, "before": before},
        db=db,
        request_id=correlation_id,
    )
    return ClosingOutcome(order=order, report=report, settlement=order.settlement, created=False)


def confirm_final_amount(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> models.Settlement:
    order = get_order(db, order_id)
    _require_requester(order, actor, "confirm the final amount")
    current = normalize_status(order.status)
    if current == OrderStatus.final_amount_confirmed:
        return order.settlement
    _require_capability(
        order, CAN_CONFIRM_FINAL_AMOUNT, OrderStatus.final_amount_confirmed, "confirm the final amount"
    )

    report = order.closing_report
    if report is None or not report.evidence:
        raise PreconditionFailedError(
            "Closing report has no evidence attached",
            code="closing_evidence_required",
            details={"order_id": order.id},
        )
    if order.settlement is None:
        raise PreconditionFailedError(
            "Order has no settlement", code="settlement_missing", details={"order_id": order.id}
        )

    _guarded_transition(
        db,
        order,
        OrderStatus.final_amount_confirmed,
        actor=actor,
        correlation_id=_correlation(correlation_id),
    )
    return order.settlement


def mark_balance_paid(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> models.Settlement:
    order = get_order(db, order_id)
    _require_requester(order, actor, "mark the balance paid")
    current = normalize_status(order.status)
    if current == OrderStatus.balance_paid:
        return order.settlement
    _require_capability(order, CAN_CONFIRM_BALANCE, OrderStatus.balance_paid, "mark the balance paid")
    _guarded_transition(
        db, order, OrderStatus.balance_paid, actor=actor, correlation_id=_correlation(correlation_id)
    )
    return order.settlement


def pay_settlement(
    db: Session,
    settlement_id: int,
    *,
    actor: Actor,
    payment_reference: str | None = None,
    correlation_id: str | None = None,
) -> models.Settlement:
    _require_admin(actor, "pay settlements")
    settlement = get_settlement(db, settlement_id)
    order = get_order(db, settlement.order_id)
    _guarded_transition(
        db,
        order,
        OrderStatus.settlement_paid,
        actor=actor,
        correlation_id=_correlation(correlation_id),
        settlement_paid_reference=payment_reference,
    )
    return settlement


def mark_settled(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> TransitionOutcome:
    _require_admin(actor, "mark orders settled")
    order = get_order(db, order_id)
    return _guarded_transition(
        db, order, OrderStatus.settled, actor=actor, correlation_id=_correlation(correlation_id)
    )


def close_order(
    db: Session, order_id: int, *, actor: Actor, correlation_id: str | None = None
) -> TransitionOutcome:
    _require_admin(actor, "close orders")
    order = get_order(db, order_id)
    return _guarded_transition(
        db,
        order,
        OrderStatus.closed,
        actor=actor,
        correlation_id=_correlation(correlation_id),
        updates={"closed_at": _now()},
    )


def cancel_order(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> TransitionOutcome:
    order = get_order(db, order_id)
    _require_requester(order, actor, "cancel")
    current = normalize_status(order.status)
    if current == OrderStatus.cancelled:
        return TransitionOutcome(
            order=order, from_status=current.value, to_status=current.value, changed=False
        )
    _require_capability(order, CAN_CANCEL, OrderStatus.cancelled, "cancel")

    outcome = _guarded_transition(
        db,
        order,
        OrderStatus.cancelled,
        actor=actor,
        correlation_id=_correlation(correlation_id),
        reason=reason,
        updates={"cancelled_at": _now()},
    )
    (
        db.query(models.OrderApplication)
        .filter(models.OrderApplication.order_id == order.id)
        .filter(models.OrderApplication.status == ApplicationStatus.applied.value)
        .update({"status": ApplicationStatus.rejected.value}, synchronize_session=False)
    )
    return outcome


def open_dispute(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    reason: str,
    correlation_id: str | None = None,
) -> models.Dispute:
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    _require_party(order, actor, "open a dispute")

    current = normalize_status(order.status)
    if current == OrderStatus.dispute_reviewing:
        open_one = (
            db.query(models.Dispute)
            .filter(models.Dispute.order_id == order.id)
            .filter(models.Dispute.status == DisputeStatus.reviewing.value)
            .first()
        )
        if open_one is not None:
            return open_one
    _require_capability(order, CAN_OPEN_DISPUTE, OrderStatus.dispute_reviewing, "open a dispute")

    dispute = models.Dispute(
        order_id=order.id,
        settlement_id=order.settlement.id if order.settlement is not None else None,
        opened_by=actor.id,
        reason=reason,
        status=DisputeStatus.reviewing.value,
        opened_from_status=current.value,
    )
    db.add(dispute)
    db.flush()

    _guarded_transition(
        db,
        order,
        OrderStatus.dispute_reviewing,
        actor=actor,
        correlation_id=correlation_id,
        reason=reason,
        hold_reason=reason,
    )
    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.DISPUTE_OPENED,
        subject_type="dispute",
        subject_id=dispute.id,
        order_id=order.id,
        idempotency_key=f"dispute:{dispute.id}:opened",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={"reason": reason, "opened_from_status": current.value},
    )
    return dispute


def resolve_dispute(
    db: Session,
    dispute_id: int,
    *,
    actor: Actor,
    outcome: DisputeStatus | str,
    deduction_amount: int | None = None,
    note: str | None = None,
    correlation_id: str | None = None,
) -> models.Dispute:
    """Close a dispute, optionally deducting from the helper's settlement.

    Safe to retry: the deduction is keyed by the dispute id in the ledger.
    """

    _require_admin(actor, "resolve disputes")
    correlation_id = _correlation(correlation_id)
    outcome = DisputeStatus(outcome.value if isinstance(outcome, DisputeStatus) else str(outcome))
    if outcome == DisputeStatus.reviewing:
        raise PreconditionFailedError(
            "A dispute can only be resolved or rejected",
            code="invalid_dispute_outcome",
            details={"outcome": outcome.value},
        )
    if deduction_amount and outcome != DisputeStatus.resolved:
        raise PreconditionFailedError(
            "Only a resolved dispute can carry a deduction",
            code="deduction_requires_resolution",
        )

    dispute = db.get(models.Dispute, dispute_id)
    if dispute is None:
        raise NotFoundError("Dispute not found", code="dispute_not_found", details={"dispute_id": dispute_id})
    order = get_order(db, dispute.order_id)

    if dispute.status != DisputeStatus.reviewing.value:
        if dispute.status == outcome.value:
            return dispute
        raise PreconditionFailedError(
            f"Dispute is already {dispute.status}",
            code="dispute_already_closed",
            details={"dispute_id": dispute.id, "status": dispute.status},
        )

    settlement = order.settlement
    if settlement is not None and settlement.status == SettlementStatus.paid.value:
        raise PreconditionFailedError(
            "Settlement for this dispute has already been paid",
            code="settlement_already_paid",
            details={"dispute_id": dispute.id, "settlement_id": settlement.id},
        )

    ledger: LedgerResult | None = None
    if deduction_amount:
        if settlement is None:
            raise PreconditionFailedError(
                "Order has no settlement", code="settlement_missing", details={"order_id": order.id}
            )
        ledger = apply_deduction(
            db,
            settlement_id=settlement.id,
            source_type=DeductionSourceType.dispute,
            source_id=str(dispute.id),
            amount=int(deduction_amount),
            reason=note or dispute.reason,
            actor_id=actor.id,
            correlation_id=correlation_id,
        )

    target = (
        OrderStatus.dispute_resolved if outcome == DisputeStatus.resolved else OrderStatus.dispute_rejected
    )
    _guarded_transition(
        db, order, target, actor=actor, correlation_id=correlation_id, reason=note, trigger="admin"
    )

    dispute.status = outcome.value
    dispute.deduction_amount = int(deduction_amount) if deduction_amount else None
    dispute.resolution_note = note
    dispute.resolved_by = actor.id
    dispute.resolved_at = _now()
    db.flush()

    event_sink.emit_domain_event(
        db=db,
        event_type=event_sink.DISPUTE_RESOLVED,
        subject_type="dispute",
        subject_id=dispute.id,
        order_id=order.id,
        idempotency_key=f"dispute:{dispute.id}:{outcome.value}",
        correlation_id=correlation_id,
        actor_id=actor.id,
        payload={
            "outcome": outcome.value,
            "deduction_amount": dispute.deduction_amount,
            "ledger_entry_id": ledger.entry.id if ledger else None,
        },
    )
    return dispute


def resume_after_dispute(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    to_status: OrderStatus | str,
    payment_reference: str | None = None,
    correlation_id: str | None = None,
) -> TransitionOutcome:
    _require_admin(actor, "resume a disputed order")
    order = get_order(db, order_id)
    target = normalize_status(to_status)
    if not is_known(target) or target not in DISPUTE_EXIT_STATUSES:
        raise InvalidTransitionError(
            f"'{target.value}' is not a valid exit from a dispute",
            details={
                "current": order.status,
                "requested": target.value,
                "allowed": sorted(s.value for s in DISPUTE_EXIT_STATUSES),
            },
        )
    updates = {"closed_at": _now()} if target == OrderStatus.closed else None
    return _guarded_transition(
        db,
        order,
        target,
        actor=actor,
        correlation_id=_correlation(correlation_id),
        updates=updates,
        settlement_paid_reference=payment_reference,
        trigger="admin",
    )


def rollback_status(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    to_status: OrderStatus | str,
    reason: str,
    correlation_id: str | None = None,
) -> TransitionOutcome:
    """Admin recovery along the curated reverse map only."""

    _require_admin(actor, "roll back order status")
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    check = validate_recovery(order.status, to_status)
    if not check.valid:
        raise InvalidTransitionError.from_check(check)
    target = OrderStatus(check.to_status)

    outcome = _guarded_transition(
        db,
        order,
        target,
        actor=actor,
        correlation_id=correlation_id,
        reason=reason,
        check=check,
        trigger="admin",
    )
    if target == OrderStatus.open:
        # Unmatching reopens every non-withdrawn application for reselection.
        (
            db.query(models.OrderApplication)
            .filter(models.OrderApplication.order_id == order.id)
            .filter(
                models.OrderApplication.status.in_(
                    [ApplicationStatus.selected.value, ApplicationStatus.rejected.value]
                )
            )
            .update({"status": ApplicationStatus.applied.value}, synchronize_session=False)
        )

    audit_event(
        "order.rollback",
        actor.id,
        {"order_id": order.id, "from": outcome.from_status, "to": outcome.to_status, "reason": reason},
        db=db,
        request_id=correlation_id,
    )
    return outcome


def transition_order_status(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    to_status: OrderStatus | str,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> TransitionOutcome:
    """Admin transition along the normal graph, with all the usual guards."""

    _require_admin(actor, "force a status transition")
    correlation_id = _correlation(correlation_id)
    order = get_order(db, order_id)
    check = validate_transition(order.status, to_status)
    if not check.valid:
        raise InvalidTransitionError.from_check(check)
    target = OrderStatus(check.to_status)
    updates: dict[str, Any] = {}
    if target == OrderStatus.closed:
        updates["closed_at"] = _now()
    elif target == OrderStatus.cancelled:
        updates["cancelled_at"] = _now()

    outcome = _guarded_transition(
        db,
        order,
        target,
        actor=actor,
        correlation_id=correlation_id,
        reason=reason,
        check=check,
        updates=updates,
        trigger="admin",
    )
    if outcome.changed:
        audit_event(
            "order.transition",
            actor.id,
            {"order_id": order.id, "from": outcome.from_status, "to": outcome.to_status, "reason": reason},
            db=db,
            request_id=correlation_id,
        )
    return outcome


def delete_order(db: Session, order_id: int, *, actor: Actor) -> None:
    order = get_order(db, order_id)
    _require_requester(order, actor, "delete")
    current = normalize_status(order.status)
    if current not in DELETABLE_STATUSES:
        raise PreconditionFailedError(
            f"Order in '{current.value}' can no longer be deleted",
            code="order_not_deletable",
            details={"current": current.value, "allowed": sorted(s.value for s in DELETABLE_STATUSES)},
        )
    db.delete(order)
    db.flush()
    logger.info("order_deleted", extra={"order_id": order_id, "actor_id": actor.id})


def record_incident_deduction(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    incident_id: str,
    amount: int,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> LedgerResult:
    _require_admin(actor, "record incident deductions")
    settlement = get_order_settlement(db, order_id)
    return apply_deduction(
        db,
        settlement_id=settlement.id,
        source_type=DeductionSourceType.incident,
        source_id=str(incident_id),
        amount=amount,
        reason=reason,
        actor_id=actor.id,
        correlation_id=correlation_id,
    )


def apply_admin_adjustment(
    db: Session,
    order_id: int,
    *,
    actor: Actor,
    adjustment_key: str,
    amount: int,
    reason: str,
    correlation_id: str | None = None,
) -> LedgerResult:
    _require_admin(actor, "adjust settlements")
    settlement = get_order_settlement(db, order_id)
    result = apply_deduction(
        db,
        settlement_id=settlement.id,
        source_type=DeductionSourceType.admin_adjustment,
        source_id=str(adjustment_key),
        amount=amount,
        reason=reason,
        actor_id=actor.id,
        correlation_id=correlation_id,
    )
    if result.applied:
        audit_event(
            "settlement.admin_adjustment",
            actor.id,
            {"order_id": order_id, "settlement_id": settlement.id, "key": adjustment_key, "amount": amount},
            db=db,
            request_id=correlation_id,
        )
    return result


def describe_transitions(order: models.Order) -> TransitionSummary:
    current = normalize_status(order.status)
    return TransitionSummary(
        current=current.value,
        known=is_known(current),
        next_valid=status_values(next_valid_statuses(current)),
        recovery=status_values(recovery_options(current)),
    )
