import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from freight_escrow.database import Base


def _uuid_str() -> str:
    return str(uuid.uuid4())


class RoleName(PyEnum):
    admin = "admin"
    shipper = "shipper"
    carrier = "carrier"


class LoadStatus(PyEnum):
    draft = "draft"
    posted = "posted"
    bidding = "bidding"
    booked = "booked"
    in_transit = "in_transit"
    delivered = "delivered"
    completed = "completed"
    cancelled = "cancelled"


class BidStatus(PyEnum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"


class PaymentStatus(PyEnum):
    pending = "pending"
    held_in_escrow = "held_in_escrow"
    released = "released"
    completed = "completed"
    failed = "failed"
    disputed = "disputed"


class PayoutStatus(PyEnum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class DocumentType(PyEnum):
    bol = "bol"
    pod = "pod"
    rate_confirmation = "rate_confirmation"
    invoice = "invoice"
    insurance = "insurance"
    other = "other"


class EquipmentType(PyEnum):
    dry_van = "dry_van"
    reefer = "reefer"
    flatbed = "flatbed"
    step_deck = "step_deck"
    lowboy = "lowboy"
    tanker = "tanker"
    box_truck = "box_truck"
    power_only = "power_only"


# Loads in these statuses must have an assigned carrier; all others must not.
CARRIER_ASSIGNED_STATUSES = frozenset(
    {LoadStatus.booked, LoadStatus.in_transit, LoadStatus.delivered, LoadStatus.completed}
)


class Carrier(Base):
    __tablename__ = "carriers"

    # Identity-provider user id of the carrier account owner.
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_connect_account_id: Mapped[str | None] = mapped_column(String(255))
    stripe_connect_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stripe_connect_charges_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    stripe_connect_payouts_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    stripe_connect_details_submitted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    @property
    def has_enabled_payout_account(self) -> bool:
        return bool(self.stripe_connect_account_id) and bool(self.stripe_connect_enabled)


class Load(Base):
    __tablename__ = "loads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    shipper_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    carrier_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    origin_city: Mapped[str] = mapped_column(String(128), nullable=False)
    origin_state: Mapped[str] = mapped_column(String(32), nullable=False)
    destination_city: Mapped[str] = mapped_column(String(128), nullable=False)
    destination_state: Mapped[str] = mapped_column(String(32), nullable=False)
    equipment_type: Mapped[EquipmentType] = mapped_column(
        Enum(EquipmentType, native_enum=False), default=EquipmentType.dry_van, nullable=False
    )
    posted_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    status: Mapped[LoadStatus] = mapped_column(
        Enum(LoadStatus, native_enum=False), default=LoadStatus.draft, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    bids = relationship("Bid", back_populates="load", order_by="Bid.created_at")


class Bid(Base):
    __tablename__ = "bids"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    load_id: Mapped[str] = mapped_column(ForeignKey("loads.id"), nullable=False, index=True)
    carrier_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[BidStatus] = mapped_column(
        Enum(BidStatus, native_enum=False), default=BidStatus.pending, nullable=False, index=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    load = relationship("Load", back_populates="bids")


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    load_id: Mapped[str | None] = mapped_column(ForeignKey("loads.id"), nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_type: Mapped[DocumentType] = mapped_column(
        Enum(DocumentType, native_enum=False), nullable=False
    )
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String(64))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "final_amount_cents IS NULL OR final_amount_cents <= amount_cents",
            name="ck_payments_final_amount_le_amount",
        ),
        Index("ix_payments_status_escrow_held_at", "status", "escrow_held_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    load_id: Mapped[str] = mapped_column(ForeignKey("loads.id"), nullable=False, index=True)
    bid_id: Mapped[str | None] = mapped_column(ForeignKey("bids.id"), nullable=True)
    shipper_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    carrier_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    final_amount_cents: Mapped[int | None] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False),
        default=PaymentStatus.pending,
        nullable=False,
        index=True,
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255))
    escrow_held_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispute_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    load = relationship("Load", foreign_keys=[load_id], viewonly=True)
    payout = relationship("CarrierPayout", back_populates="payment", uselist=False)

    @property
    def settled_amount_cents(self) -> int:
        if self.final_amount_cents is not None:
            return int(self.final_amount_cents)
        return int(self.amount_cents)


class CarrierPayout(Base):
    __tablename__ = "carrier_payouts"
    __table_args__ = (
        CheckConstraint(
            "amount_cents = platform_fee_cents + carrier_amount_cents",
            name="ck_carrier_payouts_fee_split",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    carrier_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(
        ForeignKey("payments.id"), nullable=False, unique=True, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    carrier_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, native_enum=False), default=PayoutStatus.pending, nullable=False
    )
    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    error_message: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("Payment", back_populates="payout")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    load_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text)

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
