from freight_escrow.models.domain import (
    CARRIER_ASSIGNED_STATUSES,
    AuditLog,
    Bid,
    BidStatus,
    Carrier,
    CarrierPayout,
    Document,
    DocumentType,
    EquipmentType,
    Load,
    LoadStatus,
    Payment,
    PaymentStatus,
    PayoutStatus,
    RoleName,
)

__all__ = [
    "CARRIER_ASSIGNED_STATUSES",
    "AuditLog",
    "Bid",
    "BidStatus",
    "Carrier",
    "CarrierPayout",
    "Document",
    "DocumentType",
    "EquipmentType",
    "Load",
    "LoadStatus",
    "Payment",
    "PaymentStatus",
    "PayoutStatus",
    "RoleName",
]
