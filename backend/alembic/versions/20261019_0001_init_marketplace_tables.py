"""init marketplace tables

Revision ID: 20261019_0001
Revises: None
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001_init_marketplace_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return cols


def _rate_columns() -> list[sa.Column]:
    return [
        sa.Column("total_rate", sa.Integer(), nullable=False),
        sa.Column("platform_rate", sa.Integer(), nullable=False),
        sa.Column("team_leader_rate", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_by", sa.Integer()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Statuses are plain strings so legacy values survive; validation happens in the ORM.
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("requester_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=255)),
        sa.Column("memo", sa.Text()),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="awaiting_deposit"),
        sa.Column(
            "payment_status", sa.String(length=32), nullable=False, server_default="awaiting_deposit"
        ),
        sa.Column("matched_helper_id", sa.Integer()),
        sa.Column("matched_at", sa.DateTime(timezone=True)),
        sa.Column("unit_price", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("etc_price_per_unit", sa.BigInteger()),
        sa.Column("snapshot_total_rate", sa.Integer()),
        sa.Column("snapshot_platform_rate", sa.Integer()),
        sa.Column("snapshot_team_leader_rate", sa.Integer()),
        sa.Column("snapshot_policy_tier", sa.String(length=32)),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=True),
    )
    op.create_index("ix_orders_requester_id", "orders", ["requester_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_matched_helper_id", "orders", ["matched_helper_id"])

    op.create_table(
        "order_applications",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("helper_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="applied"),
        sa.Column("message", sa.Text()),
        sa.Column("snapshot_total_rate", sa.Integer()),
        sa.Column("snapshot_platform_rate", sa.Integer()),
        sa.Column("snapshot_team_leader_rate", sa.Integer()),
        sa.Column("snapshot_team_leader_id", sa.Integer()),
        sa.Column("snapshot_policy_tier", sa.String(length=32)),
        sa.Column("snapshot_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("order_id", "helper_id", name="uq_order_applications_order_helper"),
    )
    op.create_index("ix_order_applications_order_id", "order_applications", ["order_id"])
    op.create_index("ix_order_applications_helper_id", "order_applications", ["helper_id"])

    op.create_table(
        "closing_reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("helper_id", sa.Integer(), nullable=False),
        sa.Column("delivered_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("returned_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("etc_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("etc_price_per_unit", sa.BigInteger()),
        sa.Column("extra_costs", sa.JSON()),
        sa.Column("evidence", sa.JSON()),
        sa.Column("memo", sa.Text()),
        sa.Column("corrected_by", sa.Integer()),
        sa.Column("corrected_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_closing_reports_order_id", "closing_reports", ["order_id"], unique=True)

    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("helper_id", sa.Integer(), nullable=False),
        sa.Column("total_rate", sa.Integer(), nullable=False),
        sa.Column("platform_rate", sa.Integer(), nullable=False),
        sa.Column("team_leader_rate", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("team_leader_id", sa.Integer()),
        sa.Column("rate_source", sa.String(length=32), nullable=False),
        sa.Column("policy_tier", sa.String(length=32)),
        sa.Column("total_billable_count", sa.Integer(), nullable=False),
        sa.Column("delivery_return_amount", sa.BigInteger(), nullable=False),
        sa.Column("etc_amount", sa.BigInteger(), nullable=False),
        sa.Column("extra_costs_total", sa.BigInteger(), nullable=False),
        sa.Column("supply_amount", sa.BigInteger(), nullable=False),
        sa.Column("vat_amount", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("deposit_rate_percent", sa.Integer(), nullable=False),
        sa.Column("deposit_amount", sa.BigInteger(), nullable=False),
        sa.Column("balance_amount", sa.BigInteger(), nullable=False),
        sa.Column("platform_fee", sa.BigInteger(), nullable=False),
        sa.Column("platform_commission", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("team_leader_incentive", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("deduction_total", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("hold_reason", sa.Text()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column("payable_at", sa.DateTime(timezone=True)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("payment_reference", sa.String(length=128)),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(updated=True),
    )
    # One settlement per order; concurrent creators race on this index.
    op.create_index("ix_settlements_order_id", "settlements", ["order_id"], unique=True)
    op.create_index("ix_settlements_helper_id", "settlements", ["helper_id"])
    op.create_index("ix_settlements_status", "settlements", ["status"])

    op.create_table(
        "deduction_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("settlement_id", sa.Integer(), sa.ForeignKey("settlements.id"), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("applied_by", sa.Integer()),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("reversed_by", sa.Integer()),
        sa.Column("reversed_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_deduction_ledger_entries_settlement_id", "deduction_ledger_entries", ["settlement_id"]
    )
    op.create_index(
        "uq_deduction_ledger_active_source",
        "deduction_ledger_entries",
        ["settlement_id", "source_type", "source_id"],
        unique=True,
        sqlite_where=sa.text("reversed_at IS NULL"),
        postgresql_where=sa.text("reversed_at IS NULL"),
    )

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("settlement_id", sa.Integer(), sa.ForeignKey("settlements.id")),
        sa.Column("opened_by", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="reviewing"),
        sa.Column("opened_from_status", sa.String(length=32), nullable=False),
        sa.Column("deduction_amount", sa.BigInteger()),
        sa.Column("resolution_note", sa.Text()),
        sa.Column("resolved_by", sa.Integer()),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_disputes_order_id", "disputes", ["order_id"])

    op.create_table(
        "commission_policies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("policy_type", sa.String(length=32), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_rate_columns(),
    )

    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("leader_id", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "team_members",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("helper_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"])

    op.create_table(
        "team_commission_overrides",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False, unique=True),
        *_rate_columns(),
    )

    op.create_table(
        "helper_commission_overrides",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("helper_id", sa.Integer(), nullable=False, unique=True),
        *_rate_columns(),
    )

    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.Column("updated_by", sa.Integer()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("payload_json", sa.Text()),
        sa.Column("idempotency_key", sa.String(length=128), unique=True),
        sa.Column("request_id", sa.String(length=64)),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])

    op.create_table(
        "domain_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("subject_type", sa.String(length=32), nullable=False),
        sa.Column("subject_id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer()),
        sa.Column("correlation_id", sa.String(length=36), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128)),
        sa.Column("actor_id", sa.Integer()),
        sa.Column("audit_log_id", sa.Integer(), sa.ForeignKey("audit_logs.id")),
        sa.Column("payload", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "event_type", "idempotency_key", name="uq_domain_events_event_type_idempotency_key"
        ),
    )
    for col in (
        "event_type",
        "occurred_at",
        "subject_type",
        "subject_id",
        "order_id",
        "correlation_id",
        "actor_id",
    ):
        op.create_index(f"ix_domain_events_{col}", "domain_events", [col])

    op.create_table(
        "idempotency_keys",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("response_json", sa.JSON()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("actor_id", "operation", "key", name="uq_idempotency_keys_actor_op_key"),
    )


def downgrade() -> None:
    for table in (
        "idempotency_keys",
        "domain_events",
        "audit_logs",
        "system_settings",
        "helper_commission_overrides",
        "team_commission_overrides",
        "team_members",
        "teams",
        "commission_policies",
        "disputes",
        "deduction_ledger_entries",
        "settlements",
        "closing_reports",
        "order_applications",
        "orders",
    ):
        op.drop_table(table)
