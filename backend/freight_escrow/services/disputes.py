"""Dispute resolver.

Opening a dispute freezes the payment (auto-release skips disputed rows).
Only an admin can move a payment out of ``disputed``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.core.security import Principal
from freight_escrow.models import LoadStatus, PaymentStatus
from freight_escrow.services import ledger, load_state
from freight_escrow.services.errors import (
    AlreadyDisputed,
    ExternalProcessorError,
    InvalidInput,
    InvalidState,
    ReconciliationRequired,
    Unauthorized,
)
from freight_escrow.services.payment_gateway import PaymentGateway
from freight_escrow.services.settlement import capture_if_uncaptured

logger = logging.getLogger("freight_escrow.disputes")

MAX_REASON_LENGTH = 2000


@dataclass(frozen=True)
class DisputeResolution:
    payment: models.Payment
    outcome: str
    processor_reference: Optional[str]


def open_dispute(
    db: Session,
    *,
    actor: Principal,
    load_id: str,
    reason: str,
) -> models.Payment:
    reason = (reason or "").strip()
    if not reason:
        raise InvalidInput("dispute reason is required", load_id=load_id)
    if len(reason) > MAX_REASON_LENGTH:
        raise InvalidInput("dispute reason is too long", load_id=load_id)

    payment = ledger.require_active_payment_for_load(db, load_id)
    if actor.user_id not in {payment.shipper_id, payment.carrier_id}:
        raise Unauthorized("only the shipper or carrier may dispute", load_id=load_id)

    if payment.status == PaymentStatus.disputed:
        if payment.dispute_reason == reason:
            return payment
        raise AlreadyDisputed(payment_id=payment.id)

    if payment.status not in {PaymentStatus.held_in_escrow, PaymentStatus.released}:
        raise InvalidState(
            "payment cannot be disputed", payment_id=payment.id, status=payment.status.value
        )

    result = ledger.mark_disputed(db, payment.id, reason=reason)
    if not result.updated:
        db.rollback()
        raise InvalidState("payment status changed concurrently", payment_id=payment.id)
    db.commit()
    db.refresh(payment)

    logger.info(
        "dispute_opened",
        extra={"payment_id": payment.id, "load_id": load_id, "opened_by": actor.user_id},
    )
    return payment


def resolve_dispute(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    load_id: str,
    release_to_carrier: bool,
) -> DisputeResolution:
    """Settle a disputed payment in the carrier's or the shipper's favour.

    Release captures the hold if it is still uncaptured and marks the payment
    ``released``; refund returns the money and marks it ``completed``. Both
    clear ``dispute_reason``.
    """

    if not actor.is_admin:
        raise Unauthorized("only admins may resolve disputes", load_id=load_id)

    payment = ledger.require_active_payment_for_load(db, load_id)
    if payment.status != PaymentStatus.disputed:
        raise InvalidState(
            "payment is not disputed", payment_id=payment.id, status=payment.status.value
        )

    now = datetime.utcnow()
    if release_to_carrier:
        try:
            hold, _ = capture_if_uncaptured(gateway, payment)
        except ExternalProcessorError:
            logger.warning("dispute_release_capture_failed", extra={"payment_id": payment.id})
            raise
        reference = hold.id
        outcome = "released"
    else:
        refund = gateway.refund(
            payment.stripe_payment_intent_id or "",
            idempotency_key=f"dispute-refund-{payment.id}",
        )
        reference = refund.id
        outcome = "refunded"

    try:
        if release_to_carrier:
            result = ledger.mark_released(
                db,
                payment.id,
                now=now,
                allowed_from={PaymentStatus.disputed},
                clear_dispute=True,
            )
        else:
            result = ledger.mark_refunded(db, payment.id, now=now)
        if not result.updated:
            raise InvalidState("payment left dispute during resolution", payment_id=payment.id)

        if release_to_carrier:
            load = load_state.get_load(db, load_id)
            if load.status == LoadStatus.delivered:
                load_state.complete_load(db, load_id)
        db.commit()
    except (SQLAlchemyError, InvalidState) as e:
        db.rollback()
        logger.error(
            "reconciliation_required",
            extra={
                "operation": "resolve_dispute",
                "load_id": load_id,
                "payment_id": payment.id,
                "payment_intent_id": payment.stripe_payment_intent_id,
                "processor_reference": reference,
                "outcome": outcome,
                "error": str(e),
            },
        )
        raise ReconciliationRequired(payment_id=payment.id, processor_reference=reference) from e

    db.refresh(payment)
    logger.info(
        "dispute_resolved",
        extra={
            "payment_id": payment.id,
            "load_id": load_id,
            "outcome": outcome,
            "resolved_by": actor.user_id,
        },
    )
    return DisputeResolution(payment=payment, outcome=outcome, processor_reference=reference)
