from courierhub.services import event_sink, order_lifecycle, order_status, settlement_calculator
from courierhub.services.audit import audit_event
from courierhub.services.errors import DomainError

__all__ = [
    "DomainError",
    "audit_event",
    "event_sink",
    "order_lifecycle",
    "order_status",
    "settlement_calculator",
]
