from enum import Enum as PyEnum


class OrderStatus(str, PyEnum):
    awaiting_deposit = "awaiting_deposit"
    open = "open"
    scheduled = "scheduled"
    in_progress = "in_progress"
    closing_submitted = "closing_submitted"
    final_amount_confirmed = "final_amount_confirmed"
    balance_paid = "balance_paid"
    settlement_paid = "settlement_paid"
    closed = "closed"
    cancelled = "cancelled"
    dispute_reviewing = "dispute_reviewing"
    dispute_resolved = "dispute_resolved"
    dispute_rejected = "dispute_rejected"
    settled = "settled"


class SettlementStatus(str, PyEnum):
    pending = "pending"
    confirmed = "confirmed"
    payable = "payable"
    paid = "paid"
    on_hold = "on_hold"
    cancelled = "cancelled"


class PaymentStatus(str, PyEnum):
    awaiting_deposit = "awaiting_deposit"
    deposit_confirmed = "deposit_confirmed"
    balance_confirmed = "balance_confirmed"


class ApplicationStatus(str, PyEnum):
    applied = "applied"
    selected = "selected"
    rejected = "rejected"
    withdrawn = "withdrawn"


class DeductionSourceType(str, PyEnum):
    incident = "incident"
    admin_adjustment = "admin_adjustment"
    dispute = "dispute"


class DisputeStatus(str, PyEnum):
    reviewing = "reviewing"
    resolved = "resolved"
    rejected = "rejected"


class RateSource(str, PyEnum):
    application_snapshot = "application_snapshot"
    order_snapshot = "order_snapshot"
    effective_lookup = "effective_lookup"


class PolicyTier(str, PyEnum):
    helper_override = "helper_override"
    team_override = "team_override"
    global_policy = "global"
    default = "default"


class ActorRole(str, PyEnum):
    requester = "requester"
    helper = "helper"
    admin = "admin"
