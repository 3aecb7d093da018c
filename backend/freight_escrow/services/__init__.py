from freight_escrow.services import disputes, escrow, settlement
from freight_escrow.services.audit import audit_event
from freight_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway

__all__ = [
    "PaymentGateway",
    "audit_event",
    "disputes",
    "escrow",
    "get_payment_gateway",
    "settlement",
]
