"""Escrow orchestration: payment holds and atomic booking.

Authorization and input validation always happen before the processor is
called. Once a hold is confirmed the booking steps run in one DB transaction;
if they fail the hold is left in place and logged for manual reconciliation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.config import settings
from freight_escrow.core.security import Principal
from freight_escrow.models import BidStatus, LoadStatus, PaymentStatus
from freight_escrow.services import ledger, load_state
from freight_escrow.services.errors import (
    BidAcceptFailed,
    EscrowError,
    ExternalProcessorError,
    HoldNotConfirmable,
    InvalidState,
    PaymentNotFound,
    ReconciliationRequired,
    Unauthorized,
)
from freight_escrow.services.money import to_minor_units
from freight_escrow.services.payment_gateway import (
    CANCELED,
    REQUIRES_CAPTURE,
    REQUIRES_CONFIRMATION,
    HoldIntent,
    PaymentGateway,
)

logger = logging.getLogger("freight_escrow.escrow")


@dataclass(frozen=True)
class HoldCreated:
    payment: models.Payment
    payment_intent_id: str
    client_secret: Optional[str]
    reused: bool = False
    superseded_payment_id: Optional[str] = None


@dataclass(frozen=True)
class BookingResult:
    payment: models.Payment
    hold_status: str
    rejected_bids: int


def _hold_idempotency_key(
    db: Session, load_id: str, carrier_id: str, bid_id: str | None, cents: int
) -> str:
    # A failed payment frees the load for a new hold, which needs a fresh key.
    attempt = (
        db.query(models.Payment)
        .filter(models.Payment.load_id == load_id)
        .filter(models.Payment.status == PaymentStatus.failed)
        .count()
    )
    return f"hold-{load_id}-{carrier_id}-{bid_id or 'none'}-{cents}-{attempt}"


def _abandon_pending_hold(
    db: Session, gateway: PaymentGateway, payment: models.Payment, *, reason: str
) -> str:
    """Fail a pending payment, then void its intent.

    The row is failed first so a concurrent confirmation cannot book a hold
    that is about to be cancelled.
    """

    payment_id = payment.id
    load_id = payment.load_id
    intent_id = payment.stripe_payment_intent_id

    abandoned = ledger.mark_hold_abandoned(db, payment_id, reason=reason)
    if not abandoned.updated:
        db.rollback()
        raise InvalidState("load already has an active payment", payment_id=payment_id)
    db.commit()

    if intent_id:
        try:
            gateway.cancel_hold(intent_id, idempotency_key=f"cancel-hold-{payment_id}")
        except ExternalProcessorError as e:
            logger.error(
                "reconciliation_required",
                extra={
                    "operation": "cancel_hold",
                    "payment_id": payment_id,
                    "payment_intent_id": intent_id,
                    "error": str(e),
                },
            )
            raise

    logger.info(
        "hold_abandoned",
        extra={"load_id": load_id, "payment_id": payment_id, "reason": reason},
    )
    return payment_id


def create_hold(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    load_id: str,
    amount: Any,
    carrier_id: str,
    bid_id: Optional[str] = None,
) -> HoldCreated:
    """Authorize the shipper's money without capturing it.

    A pending payment for the same carrier, bid and amount is reused so a
    double-submitted form does not create a second hold. A pending payment on
    other terms, or whose intent was cancelled, is given up first so an
    abandoned checkout never locks the load.
    """

    load = load_state.get_load(db, load_id)
    if load.shipper_id != actor.user_id:
        raise Unauthorized("only the load's shipper may pay for it", load_id=load_id)

    cents = to_minor_units(amount, max_amount=settings.max_payment_amount)

    if load.status not in {LoadStatus.posted, LoadStatus.bidding}:
        raise InvalidState("load is not open for booking", load_id=load_id, status=load.status.value)

    if bid_id:
        bid = load_state.get_bid_for_load(db, load_id, bid_id)
        if bid.carrier_id != carrier_id or bid.status != BidStatus.pending:
            raise BidAcceptFailed(
                "bid does not match carrier or is no longer pending",
                load_id=load_id,
                bid_id=bid_id,
            )

    superseded_id = None
    existing = ledger.get_active_payment_for_load(db, load_id)
    if existing is not None:
        if existing.status != PaymentStatus.pending:
            raise InvalidState(
                "load already has an active payment",
                load_id=load_id,
                payment_id=existing.id,
                status=existing.status.value,
            )
        same_request = (
            existing.carrier_id == carrier_id
            and existing.amount_cents == cents
            and (existing.bid_id or None) == (bid_id or None)
        )
        if same_request and existing.stripe_payment_intent_id:
            hold = gateway.retrieve_hold(existing.stripe_payment_intent_id)
            if hold.status != CANCELED:
                return HoldCreated(
                    payment=existing,
                    payment_intent_id=hold.id,
                    client_secret=hold.client_secret,
                    reused=True,
                )
        superseded_id = _abandon_pending_hold(
            db,
            gateway,
            existing,
            reason="superseded by a new hold" if not same_request else "hold was cancelled",
        )

    hold = gateway.create_hold(
        amount_cents=cents,
        currency=settings.currency,
        idempotency_key=_hold_idempotency_key(db, load_id, carrier_id, bid_id, cents),
        metadata={
            "load_id": load_id,
            "carrier_id": carrier_id,
            "shipper_id": actor.user_id,
            "bid_id": bid_id or "",
        },
        description=f"Payment for load {load_id}",
    )

    try:
        payment = ledger.create_pending_payment(
            db,
            load_id=load_id,
            bid_id=bid_id,
            shipper_id=actor.user_id,
            carrier_id=carrier_id,
            amount_cents=cents,
            currency=settings.currency,
            payment_intent_id=hold.id,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "reconciliation_required",
            extra={
                "operation": "create_hold",
                "load_id": load_id,
                "payment_intent_id": hold.id,
                "error": str(e),
            },
        )
        raise ReconciliationRequired(load_id=load_id, payment_intent_id=hold.id) from e

    db.refresh(payment)
    logger.info(
        "hold_created",
        extra={"load_id": load_id, "payment_id": payment.id, "amount_cents": cents},
    )
    return HoldCreated(
        payment=payment,
        payment_intent_id=hold.id,
        client_secret=hold.client_secret,
        superseded_payment_id=superseded_id,
    )


def _ensure_hold_confirmed(gateway: PaymentGateway, payment: models.Payment) -> HoldIntent:
    """Bring the external hold to ``requires_capture`` without confirming twice."""

    intent_id = payment.stripe_payment_intent_id or ""
    hold = gateway.retrieve_hold(intent_id)
    if hold.status == REQUIRES_CAPTURE:
        return hold
    if hold.status == REQUIRES_CONFIRMATION:
        return gateway.confirm_hold(intent_id, idempotency_key=f"confirm-{payment.id}")
    raise HoldNotConfirmable(
        "payment intent cannot be confirmed",
        payment_intent_id=intent_id,
        status=hold.status,
    )


def apply_booking(
    db: Session,
    *,
    payment: models.Payment,
    bid: models.Bid,
    now: Optional[datetime] = None,
) -> int:
    """Run the booking steps in order; returns the number of bids rejected.

    Steps: payment held_in_escrow, bid accepted, other pending bids rejected,
    load booked to the bid's carrier. Each is a status-gated update that also
    accepts its own target, so a retry converges. The caller commits or rolls
    back.
    """

    now = now or datetime.utcnow()

    held = ledger.mark_held_in_escrow(db, payment.id, now=now, bid_id=bid.id)
    if not held.updated:
        raise InvalidState("payment can no longer be held", payment_id=payment.id)

    load_state.accept_bid(db, load_id=bid.load_id, bid_id=bid.id, carrier_id=bid.carrier_id)
    rejected = load_state.reject_other_pending_bids(db, load_id=bid.load_id, accepted_bid_id=bid.id)
    load_state.book_load(db, load_id=bid.load_id, carrier_id=bid.carrier_id)
    return rejected


def confirm_hold(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    payment_intent_id: str,
    load_id: str,
    bid_id: str,
) -> BookingResult:
    payment = (
        db.query(models.Payment)
        .filter(models.Payment.load_id == load_id)
        .filter(models.Payment.shipper_id == actor.user_id)
        .filter(models.Payment.stripe_payment_intent_id == payment_intent_id)
        .filter(models.Payment.status != PaymentStatus.failed)
        .first()
    )
    if payment is None:
        raise PaymentNotFound(load_id=load_id, payment_intent_id=payment_intent_id)
    if payment.status not in {PaymentStatus.pending, PaymentStatus.held_in_escrow}:
        raise InvalidState(
            "payment is past confirmation", payment_id=payment.id, status=payment.status.value
        )

    bid = load_state.get_bid_for_load(db, load_id, bid_id)
    if (payment.bid_id and payment.bid_id != bid.id) or bid.carrier_id != payment.carrier_id:
        raise BidAcceptFailed("bid does not match the payment", payment_id=payment.id, bid_id=bid.id)
    if bid.status not in {BidStatus.pending, BidStatus.accepted}:
        raise BidAcceptFailed(
            "bid is no longer pending", bid_id=bid.id, status=bid.status.value
        )

    hold = _ensure_hold_confirmed(gateway, payment)

    try:
        rejected = apply_booking(db, payment=payment, bid=bid)
        db.commit()
    except EscrowError as e:
        db.rollback()
        logger.error(
            "reconciliation_required",
            extra={
                "operation": "confirm_hold",
                "load_id": load_id,
                "payment_id": payment.id,
                "payment_intent_id": payment_intent_id,
                "error_code": e.code,
                "error": str(e),
            },
        )
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "reconciliation_required",
            extra={
                "operation": "confirm_hold",
                "load_id": load_id,
                "payment_id": payment.id,
                "payment_intent_id": payment_intent_id,
                "error": str(e),
            },
        )
        raise ReconciliationRequired(load_id=load_id, payment_intent_id=payment_intent_id) from e

    db.refresh(payment)
    logger.info(
        "load_booked",
        extra={
            "load_id": load_id,
            "payment_id": payment.id,
            "bid_id": bid.id,
            "carrier_id": bid.carrier_id,
            "rejected_bids": rejected,
        },
    )
    return BookingResult(payment=payment, hold_status=hold.status, rejected_bids=rejected)
