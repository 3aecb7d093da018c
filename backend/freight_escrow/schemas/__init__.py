from freight_escrow.schemas.carriers import CarrierConnectStatusRead
from freight_escrow.schemas.loads import BidCreate, BidRead, LoadRead, LoadStatusUpdate
from freight_escrow.schemas.payments import (
    DisputeOpenRequest,
    DisputeOpenResponse,
    DisputeResolveRequest,
    DisputeResolveResponse,
    HoldConfirmRequest,
    HoldConfirmResponse,
    HoldCreateRequest,
    HoldCreateResponse,
    PaymentRead,
    PayoutRead,
    PayoutResponse,
    ReleaseRequest,
    ReleaseResponse,
    TransferSummary,
)
from freight_escrow.schemas.sweeps import AutoReleaseResponse, ExpireBidsResponse

__all__ = [
    "AutoReleaseResponse",
    "BidCreate",
    "BidRead",
    "CarrierConnectStatusRead",
    "DisputeOpenRequest",
    "DisputeOpenResponse",
    "DisputeResolveRequest",
    "DisputeResolveResponse",
    "ExpireBidsResponse",
    "HoldConfirmRequest",
    "HoldConfirmResponse",
    "HoldCreateRequest",
    "HoldCreateResponse",
    "LoadRead",
    "LoadStatusUpdate",
    "PaymentRead",
    "PayoutRead",
    "PayoutResponse",
    "ReleaseRequest",
    "ReleaseResponse",
    "TransferSummary",
]
