"""Ledger store: Payment and Payout rows and their status-gated mutations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.models import LoadStatus, PaymentStatus, PayoutStatus
from freight_escrow.services.errors import InvalidState, PaymentNotFound
from freight_escrow.services.money import FeeSplit
from freight_escrow.services.transitions import (
    TransitionResult,
    coalesce_datetime,
    transition_payment,
)

logger = logging.getLogger("freight_escrow.ledger")

ACTIVE_PAYMENT_STATUSES = frozenset(set(PaymentStatus) - {PaymentStatus.failed})


def get_active_payment_for_load(db: Session, load_id: str) -> models.Payment | None:
    return (
        db.query(models.Payment)
        .filter(models.Payment.load_id == load_id)
        .filter(models.Payment.status.in_(ACTIVE_PAYMENT_STATUSES))
        .order_by(models.Payment.created_at.desc())
        .first()
    )


def require_active_payment_for_load(db: Session, load_id: str) -> models.Payment:
    payment = get_active_payment_for_load(db, load_id)
    if payment is None:
        raise PaymentNotFound(load_id=load_id)
    return payment


def create_pending_payment(
    db: Session,
    *,
    load_id: str,
    bid_id: str | None,
    shipper_id: str,
    carrier_id: str,
    amount_cents: int,
    currency: str,
    payment_intent_id: str,
) -> models.Payment:
    payment = models.Payment(
        load_id=load_id,
        bid_id=bid_id,
        shipper_id=shipper_id,
        carrier_id=carrier_id,
        amount_cents=int(amount_cents),
        currency=currency,
        status=PaymentStatus.pending,
        stripe_payment_intent_id=payment_intent_id,
    )
    db.add(payment)
    db.flush()
    return payment


def mark_held_in_escrow(
    db: Session, payment_id: str, *, now: datetime, bid_id: str | None = None
) -> TransitionResult:
    # Re-applying to an already held payment keeps the original escrow_held_at.
    updates: dict = {"escrow_held_at": coalesce_datetime(models.Payment.escrow_held_at, now)}
    if bid_id is not None:
        updates["bid_id"] = func.coalesce(models.Payment.bid_id, bid_id)
    return transition_payment(
        db,
        payment_id,
        PaymentStatus.held_in_escrow,
        allowed_from={PaymentStatus.pending, PaymentStatus.held_in_escrow},
        updates=updates,
    )


def mark_released(
    db: Session,
    payment_id: str,
    *,
    now: datetime,
    allowed_from: Iterable[PaymentStatus] = (PaymentStatus.held_in_escrow,),
    final_amount_cents: int | None = None,
    transfer_id: str | None = None,
    notes: str | None = None,
    clear_dispute: bool = False,
) -> TransitionResult:
    updates: dict = {"released_at": coalesce_datetime(models.Payment.released_at, now)}
    if final_amount_cents is not None:
        updates["final_amount_cents"] = int(final_amount_cents)
    if transfer_id is not None:
        updates["stripe_transfer_id"] = transfer_id
    if notes is not None:
        updates["notes"] = notes
    if clear_dispute:
        updates["dispute_reason"] = None
        updates["completed_at"] = now
    return transition_payment(
        db, payment_id, PaymentStatus.released, allowed_from=allowed_from, updates=updates
    )


def mark_disputed(db: Session, payment_id: str, *, reason: str) -> TransitionResult:
    return transition_payment(
        db,
        payment_id,
        PaymentStatus.disputed,
        allowed_from={PaymentStatus.held_in_escrow, PaymentStatus.released},
        updates={"dispute_reason": reason},
    )


def mark_refunded(db: Session, payment_id: str, *, now: datetime) -> TransitionResult:
    return transition_payment(
        db,
        payment_id,
        PaymentStatus.completed,
        allowed_from={PaymentStatus.disputed},
        updates={"completed_at": now, "dispute_reason": None},
    )


def mark_failed(db: Session, payment_id: str, *, error_message: str) -> TransitionResult:
    non_terminal = {
        PaymentStatus.pending,
        PaymentStatus.held_in_escrow,
        PaymentStatus.released,
        PaymentStatus.disputed,
    }
    return transition_payment(
        db,
        payment_id,
        PaymentStatus.failed,
        allowed_from=non_terminal,
        updates={"error_message": error_message[:2000]},
    )


def mark_hold_abandoned(db: Session, payment_id: str, *, reason: str) -> TransitionResult:
    # Only a hold that never reached escrow can be given up.
    return transition_payment(
        db,
        payment_id,
        PaymentStatus.failed,
        allowed_from={PaymentStatus.pending},
        updates={"error_message": reason[:2000]},
    )


def get_payout_for_payment(db: Session, payment_id: str) -> models.CarrierPayout | None:
    return (
        db.query(models.CarrierPayout)
        .filter(models.CarrierPayout.payment_id == payment_id)
        .first()
    )


def get_or_create_pending_payout(
    db: Session, payment: models.Payment, split: FeeSplit
) -> models.CarrierPayout:
    """Return the payout row for ``payment``, creating it with the fee split.

    An existing row is the idempotency guard for the transfer: its split is
    authoritative and is never recomputed.
    """

    payout = get_payout_for_payment(db, payment.id)
    if payout is not None:
        if payout.amount_cents != split.amount_cents:
            raise InvalidState(
                "existing payout amount differs from settlement amount",
                payout_id=payout.id,
                payout_amount_cents=payout.amount_cents,
                amount_cents=split.amount_cents,
            )
        return payout

    payout = models.CarrierPayout(
        carrier_id=payment.carrier_id,
        payment_id=payment.id,
        amount_cents=split.amount_cents,
        platform_fee_cents=split.platform_fee_cents,
        carrier_amount_cents=split.carrier_amount_cents,
        status=PayoutStatus.pending,
    )
    db.add(payout)
    db.flush()
    return payout


def complete_payout(
    db: Session, payout_id: str, *, transfer_id: str, now: datetime
) -> int:
    # Completed payouts are immutable; only a pending row may be completed.
    return (
        db.query(models.CarrierPayout)
        .filter(models.CarrierPayout.id == payout_id)
        .filter(models.CarrierPayout.status == PayoutStatus.pending)
        .update(
            {
                "status": PayoutStatus.completed,
                "stripe_transfer_id": transfer_id,
                "completed_at": now,
                "error_message": None,
            },
            synchronize_session=False,
        )
    )


def record_payout_error(db: Session, payout_id: str, *, error_message: str) -> int:
    return (
        db.query(models.CarrierPayout)
        .filter(models.CarrierPayout.id == payout_id)
        .filter(models.CarrierPayout.status == PayoutStatus.pending)
        .update({"error_message": error_message[:2000]}, synchronize_session=False)
    )


def payments_eligible_for_auto_release(
    db: Session, *, now: datetime, after_hours: int, limit: int | None = None
) -> list[str]:
    """Payment ids held in escrow longer than ``after_hours`` on delivered loads.

    Disputed payments are excluded by status; loads must be delivered so the
    completion transition is legal.
    """

    cutoff = now - timedelta(hours=int(after_hours))
    query = (
        db.query(models.Payment.id)
        .join(models.Load, models.Load.id == models.Payment.load_id)
        .filter(models.Payment.status == PaymentStatus.held_in_escrow)
        .filter(models.Payment.escrow_held_at.is_not(None))
        .filter(models.Payment.escrow_held_at <= cutoff)
        .filter(models.Load.status == LoadStatus.delivered)
        .order_by(models.Payment.escrow_held_at.asc())
    )
    if limit:
        query = query.limit(int(limit))
    return [row[0] for row in query.all()]
