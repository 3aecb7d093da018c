from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from freight_escrow.models import Payment, PaymentStatus, PayoutStatus
from freight_escrow.services.money import from_minor_units


class PaymentRead(BaseModel):
    id: str
    load_id: str
    bid_id: Optional[str] = None
    shipper_id: str
    carrier_id: str
    amount: Decimal
    final_amount: Optional[Decimal] = None
    currency: str
    status: PaymentStatus
    stripe_payment_intent_id: Optional[str] = None
    stripe_transfer_id: Optional[str] = None
    escrow_held_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentRead":
        # Money is stored in minor units; decimals exist only at the HTTP edge.
        return cls(
            id=payment.id,
            load_id=payment.load_id,
            bid_id=payment.bid_id,
            shipper_id=payment.shipper_id,
            carrier_id=payment.carrier_id,
            amount=from_minor_units(payment.amount_cents),
            final_amount=from_minor_units(payment.final_amount_cents),
            currency=payment.currency,
            status=payment.status,
            stripe_payment_intent_id=payment.stripe_payment_intent_id,
            stripe_transfer_id=payment.stripe_transfer_id,
            escrow_held_at=payment.escrow_held_at,
            released_at=payment.released_at,
            completed_at=payment.completed_at,
            dispute_reason=payment.dispute_reason,
            notes=payment.notes,
        )


class HoldCreateRequest(BaseModel):
    load_id: str
    amount: Decimal
    carrier_id: str
    bid_id: Optional[str] = None


class HoldCreateResponse(BaseModel):
    payment_intent_id: str
    client_secret: Optional[str] = None
    payment: PaymentRead
    reused: bool = False


class HoldConfirmRequest(BaseModel):
    payment_intent_id: str
    load_id: str
    bid_id: str


class HoldConfirmResponse(BaseModel):
    success: bool = True
    hold_status: str
    rejected_bids: int
    payment: PaymentRead


class ReleaseRequest(BaseModel):
    final_amount: Optional[Decimal] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class ReleaseResponse(BaseModel):
    success: bool = True
    captured_amount: Decimal
    payment: PaymentRead


class PayoutRead(BaseModel):
    id: str
    carrier_id: str
    payment_id: str
    amount: Decimal
    platform_fee: Decimal
    carrier_amount: Decimal
    status: PayoutStatus
    stripe_transfer_id: Optional[str] = None
    completed_at: Optional[datetime] = None


class TransferSummary(BaseModel):
    id: Optional[str] = None
    amount: Decimal
    platform_fee: Decimal


class PayoutResponse(BaseModel):
    success: bool = True
    already_settled: bool = False
    payout: PayoutRead
    transfer: TransferSummary


class DisputeOpenRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class DisputeOpenResponse(BaseModel):
    success: bool = True
    payment_id: str
    status: PaymentStatus
    dispute_reason: Optional[str] = None


class DisputeResolveRequest(BaseModel):
    release_to_carrier: bool


class DisputeResolveResponse(BaseModel):
    success: bool = True
    outcome: str
    payment: PaymentRead
