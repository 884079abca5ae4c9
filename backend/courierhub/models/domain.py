# ruff: noqa: E501
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from courierhub.database import Base
from courierhub.models.statuses import (
    ApplicationStatus,
    DeductionSourceType,
    DisputeStatus,
    OrderStatus,
    PaymentStatus,
    SettlementStatus,
)


def _check_choice(kind: str, value, allowed_enum):
    if isinstance(value, allowed_enum):
        return value.value
    allowed = {s.value for s in allowed_enum}
    if value not in allowed:
        raise ValueError(f"Invalid {kind}: {value}")
    return value


def _check_shares(kind: str, total_rate, platform_rate, team_leader_rate) -> None:
    for name, v in (
        ("total_rate", total_rate),
        ("platform_rate", platform_rate),
        ("team_leader_rate", team_leader_rate),
    ):
        if v is None or int(v) < 0 or int(v) > 100:
            raise ValueError(f"{kind}.{name} must be between 0 and 100")
    if int(platform_rate) + int(team_leader_rate) != int(total_rate):
        raise ValueError(f"{kind}: platform_rate + team_leader_rate must equal total_rate")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    requester_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255))
    memo: Mapped[str | None] = mapped_column(Text)

    # Stored as plain strings: legacy rows may still carry pre-rename values.
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=OrderStatus.awaiting_deposit.value, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentStatus.awaiting_deposit.value
    )

    matched_helper_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    etc_price_per_unit: Mapped[int | None] = mapped_column(BigInteger)

    # Commission frozen at creation time; covers the window before a helper is chosen.
    snapshot_total_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_platform_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_team_leader_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_policy_tier: Mapped[str | None] = mapped_column(String(32))

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    applications = relationship(
        "OrderApplication", back_populates="order", cascade="all, delete-orphan"
    )
    closing_report = relationship(
        "ClosingReport", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )
    settlement = relationship(
        "Settlement", back_populates="order", uselist=False, cascade="all, delete-orphan"
    )
    disputes = relationship("Dispute", back_populates="order", cascade="all, delete-orphan")

    @validates("status")
    def _validate_status(self, _key, value):
        return _check_choice("order status", value, OrderStatus)

    @validates("payment_status")
    def _validate_payment_status(self, _key, value):
        return _check_choice("payment status", value, PaymentStatus)

    @validates("unit_price", "etc_price_per_unit")
    def _validate_price(self, key, value):
        if value is not None and int(value) < 0:
            raise ValueError(f"Order.{key} must be >= 0")
        return value


class OrderApplication(Base):
    __tablename__ = "order_applications"
    __table_args__ = (
        UniqueConstraint("order_id", "helper_id", name="uq_order_applications_order_helper"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    helper_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ApplicationStatus.applied.value
    )
    message: Mapped[str | None] = mapped_column(Text)

    # Rate frozen when the helper is selected.
    snapshot_total_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_platform_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_team_leader_rate: Mapped[int | None] = mapped_column(Integer)
    snapshot_team_leader_id: Mapped[int | None] = mapped_column(Integer)
    snapshot_policy_tier: Mapped[str | None] = mapped_column(String(32))
    snapshot_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="applications")

    @validates("status")
    def _validate_status(self, _key, value):
        return _check_choice("application status", value, ApplicationStatus)

    @property
    def has_rate_snapshot(self) -> bool:
        return (
            self.snapshot_total_rate is not None
            and self.snapshot_platform_rate is not None
            and self.snapshot_team_leader_rate is not None
        )


class ClosingReport(Base):
    __tablename__ = "closing_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id"), nullable=False, unique=True, index=True
    )
    helper_id: Mapped[int] = mapped_column(Integer, nullable=False)

    delivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    returned_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    etc_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    etc_price_per_unit: Mapped[int | None] = mapped_column(BigInteger)

    # [{"label": str, "amount": int}, ...]
    extra_costs: Mapped[list | None] = mapped_column(JSON)
    # [{"url": str, "kind": str}, ...]
    evidence: Mapped[list | None] = mapped_column(JSON)
    memo: Mapped[str | None] = mapped_column(Text)

    corrected_by: Mapped[int | None] = mapped_column(Integer)
    corrected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="closing_report")

    @validates("delivered_count", "returned_count", "etc_count", "etc_price_per_unit")
    def _validate_non_negative(self, key, value):
        if value is not None and int(value) < 0:
            raise ValueError(f"ClosingReport.{key} must be >= 0")
        return value


class Settlement(Base):
    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id"), nullable=False, unique=True, index=True
    )
    helper_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    # Frozen rate snapshot
    total_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    team_leader_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    team_leader_id: Mapped[int | None] = mapped_column(Integer)
    rate_source: Mapped[str] = mapped_column(String(32), nullable=False)
    policy_tier: Mapped[str | None] = mapped_column(String(32))

    # SettlementResult
    total_billable_count: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_return_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    etc_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    extra_costs_total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    supply_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vat_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_rate_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    deposit_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Fees and running ledger totals
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_commission: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    team_leader_incentive: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    deduction_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SettlementStatus.pending.value, index=True
    )
    hold_reason: Mapped[str | None] = mapped_column(Text)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payable_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_reference: Mapped[str | None] = mapped_column(String(128))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    order = relationship("Order", back_populates="settlement")
    deductions = relationship(
        "DeductionLedgerEntry",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="DeductionLedgerEntry.id",
    )

    @validates("status")
    def _validate_status(self, _key, value):
        return _check_choice("settlement status", value, SettlementStatus)

    @property
    def driver_payout(self) -> int:
        return max(0, int(self.net_amount or 0))

    def _validate_invariants(self) -> None:
        _check_shares("Settlement", self.total_rate, self.platform_rate, self.team_leader_rate)

        if self.supply_amount != self.delivery_return_amount + self.etc_amount + self.extra_costs_total:
            raise ValueError("Settlement.supply_amount must equal the sum of its components")
        if self.total_amount != self.supply_amount + self.vat_amount:
            raise ValueError("Settlement.total_amount must equal supply_amount + vat_amount")
        if self.balance_amount != self.total_amount - self.deposit_amount:
            raise ValueError("Settlement.balance_amount must equal total_amount - deposit_amount")
        if int(self.deduction_total or 0) < 0:
            raise ValueError("Settlement.deduction_total must be >= 0")
        if self.net_amount != self.total_amount - self.platform_fee - int(self.deduction_total or 0):
            raise ValueError(
                "Settlement.net_amount must equal total_amount - platform_fee - deduction_total"
            )


@event.listens_for(Settlement, "before_insert")
def _settlement_before_insert(_mapper, _connection, target: Settlement):
    target._validate_invariants()


@event.listens_for(Settlement, "before_update")
def _settlement_before_update(_mapper, _connection, target: Settlement):
    target._validate_invariants()


class DeductionLedgerEntry(Base):
    __tablename__ = "deduction_ledger_entries"
    __table_args__ = (
        # At most one active (non-reversed) entry per source.
        Index(
            "uq_deduction_ledger_active_source",
            "settlement_id",
            "source_type",
            "source_id",
            unique=True,
            sqlite_where=text("reversed_at IS NULL"),
            postgresql_where=text("reversed_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        ForeignKey("settlements.id"), nullable=False, index=True
    )
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)

    applied_by: Mapped[int | None] = mapped_column(Integer)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    reversed_by: Mapped[int | None] = mapped_column(Integer)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    settlement = relationship("Settlement", back_populates="deductions")

    @validates("source_type")
    def _validate_source_type(self, _key, value):
        return _check_choice("deduction source type", value, DeductionSourceType)

    @validates("amount")
    def _validate_amount(self, _key, value):
        if value is None or int(value) <= 0:
            raise ValueError("DeductionLedgerEntry.amount must be > 0")
        return int(value)

    @property
    def is_active(self) -> bool:
        return self.reversed_at is None


class Dispute(Base):
    __tablename__ = "disputes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    settlement_id: Mapped[int | None] = mapped_column(ForeignKey("settlements.id"))
    opened_by: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DisputeStatus.reviewing.value
    )
    # Order status the dispute was raised from.
    opened_from_status: Mapped[str] = mapped_column(String(32), nullable=False)

    deduction_amount: Mapped[int | None] = mapped_column(BigInteger)
    resolution_note: Mapped[str | None] = mapped_column(Text)
    resolved_by: Mapped[int | None] = mapped_column(Integer)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="disputes")

    @validates("status")
    def _validate_status(self, _key, value):
        return _check_choice("dispute status", value, DisputeStatus)


class CommissionPolicy(Base):
    """Global commission policy, one row per policy type."""

    __tablename__ = "commission_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_type: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    total_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    team_leader_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_by: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Team(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    leader_id: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")


class TeamMember(Base):
    __tablename__ = "team_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), nullable=False, index=True)
    helper_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    team = relationship("Team", back_populates="members")


class TeamCommissionOverride(Base):
    __tablename__ = "team_commission_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("teams.id"), nullable=False, unique=True)
    total_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    team_leader_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    team = relationship("Team")


class HelperCommissionOverride(Base):
    __tablename__ = "helper_commission_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    helper_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    total_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    # Helper overrides carry no team-leader share.
    platform_rate: Mapped[int] = mapped_column(Integer, nullable=False)
    team_leader_rate: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_by: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


def _policy_rows_before_write(_mapper, _connection, target) -> None:
    _check_shares(type(target).__name__, target.total_rate, target.platform_rate, target.team_leader_rate)


for _policy_model in (CommissionPolicy, TeamCommissionOverride, HelperCommissionOverride):
    event.listen(_policy_model, "before_insert", _policy_rows_before_write)
    event.listen(_policy_model, "before_update", _policy_rows_before_write)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_by: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[int | None] = mapped_column(Integer, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True)
    request_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DomainEvent(Base):
    __tablename__ = "domain_events"

    __table_args__ = (
        UniqueConstraint(
            "event_type",
            "idempotency_key",
            name="uq_domain_events_event_type_idempotency_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # What happened
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )

    # Primary subject (entity)
    subject_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order_id: Mapped[int | None] = mapped_column(Integer, index=True)

    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    actor_id: Mapped[int | None] = mapped_column(Integer, index=True)
    audit_log_id: Mapped[int | None] = mapped_column(ForeignKey("audit_logs.id"), nullable=True)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    audit_log = relationship("AuditLog", foreign_keys=[audit_log_id])


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("actor_id", "operation", "key", name="uq_idempotency_keys_actor_op_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    response_json: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
