"""Payout/settlement engine.

Two ways to pay a carrier:

- ``DirectCaptureSettlement`` captures the held PaymentIntent (optionally for
  less than the authorized amount) and the platform's Stripe balance settles
  with the carrier off-platform.
- ``ConnectedTransferSettlement`` captures the hold, splits off the platform
  fee and transfers the carrier's share to their Stripe Connect account.

The strategy is picked once per payout from the carrier's connected-account
capability. Every money movement is followed by a status-gated ledger write;
a ledger failure after money moved is logged as ``reconciliation_required``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.config import settings
from freight_escrow.core.security import Principal
from freight_escrow.models import DocumentType, LoadStatus, PaymentStatus, PayoutStatus
from freight_escrow.services import ledger, load_state
from freight_escrow.services.errors import (
    DocumentApprovalRequired,
    ExternalProcessorError,
    InvalidInput,
    InvalidState,
    PayoutAccountRequired,
    ReconciliationRequired,
    Unauthorized,
)
from freight_escrow.services.money import FeeSplit, compute_fee_split, to_minor_units
from freight_escrow.services.payment_gateway import (
    REQUIRES_CAPTURE,
    SUCCEEDED,
    HoldIntent,
    PaymentGateway,
)

logger = logging.getLogger("freight_escrow.settlement")

_RELEASE_DOCUMENT_TYPES = (DocumentType.bol, DocumentType.pod)


@dataclass(frozen=True)
class ReleaseOutcome:
    payment: models.Payment
    captured_cents: int
    already_captured: bool = False


@dataclass(frozen=True)
class PayoutOutcome:
    payment: models.Payment
    payout: models.CarrierPayout
    transfer_id: Optional[str]
    already_settled: bool = False


def _reconciliation(operation: str, payment: models.Payment, exc: Exception, **refs: Any) -> None:
    logger.error(
        "reconciliation_required",
        extra={
            "operation": operation,
            "load_id": payment.load_id,
            "payment_id": payment.id,
            "payment_intent_id": payment.stripe_payment_intent_id,
            "error": str(exc),
            **refs,
        },
    )


def record_processor_failure(
    db: Session, payment: models.Payment, exc: ExternalProcessorError
) -> None:
    """Move a payment to ``failed`` after a permanent processor rejection.

    Transient errors leave the payment untouched so the operation can be retried.
    """

    if exc.transient:
        return
    try:
        ledger.mark_failed(db, payment.id, error_message=str(exc))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "payment_failure_not_recorded",
            extra={"payment_id": payment.id, "error": str(e)},
        )
        return
    logger.warning(
        "payment_failed",
        extra={"payment_id": payment.id, "load_id": payment.load_id, "error": str(exc)},
    )


def capture_if_uncaptured(
    gateway: PaymentGateway,
    payment: models.Payment,
    *,
    amount_to_capture: Optional[int] = None,
) -> tuple[HoldIntent, bool]:
    """Capture the hold unless a previous attempt already did.

    Returns the intent and whether it was already captured before this call.
    """

    intent_id = payment.stripe_payment_intent_id or ""
    hold = gateway.retrieve_hold(intent_id)
    if hold.status == SUCCEEDED:
        return hold, True
    if hold.status != REQUIRES_CAPTURE:
        raise ExternalProcessorError(
            "payment intent is not capturable",
            payment_intent_id=intent_id,
            status=hold.status,
        )
    partial = None
    if amount_to_capture is not None and amount_to_capture < payment.amount_cents:
        partial = amount_to_capture
    captured = gateway.capture(
        intent_id,
        idempotency_key=f"capture-{payment.id}",
        amount_to_capture=partial,
    )
    return captured, False


class SettlementStrategy:
    name = "settlement"

    def settle(
        self, db: Session, gateway: PaymentGateway, payment: models.Payment, **kwargs: Any
    ) -> Any:
        raise NotImplementedError


class DirectCaptureSettlement(SettlementStrategy):
    name = "direct_capture"

    def settle(
        self,
        db: Session,
        gateway: PaymentGateway,
        payment: models.Payment,
        *,
        final_amount_cents: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReleaseOutcome:
        now = now or datetime.utcnow()
        capture_cents = payment.amount_cents if final_amount_cents is None else final_amount_cents

        try:
            hold, already = capture_if_uncaptured(
                gateway, payment, amount_to_capture=capture_cents
            )
        except ExternalProcessorError as e:
            record_processor_failure(db, payment, e)
            raise

        captured_cents = hold.amount_received or capture_cents
        try:
            result = ledger.mark_released(
                db,
                payment.id,
                now=now,
                final_amount_cents=captured_cents,
                notes=notes,
            )
            if not result.updated:
                raise InvalidState("payment left escrow during capture", payment_id=payment.id)
            load_state.complete_load(db, payment.load_id)
            db.commit()
        except (SQLAlchemyError, InvalidState) as e:
            db.rollback()
            _reconciliation("direct_capture", payment, e, captured_cents=captured_cents)
            raise ReconciliationRequired(
                payment_id=payment.id, payment_intent_id=payment.stripe_payment_intent_id
            ) from e

        db.refresh(payment)
        logger.info(
            "payment_released",
            extra={
                "payment_id": payment.id,
                "load_id": payment.load_id,
                "captured_cents": captured_cents,
                "already_captured": already,
            },
        )
        return ReleaseOutcome(
            payment=payment, captured_cents=captured_cents, already_captured=already
        )


class ConnectedTransferSettlement(SettlementStrategy):
    name = "connected_transfer"

    def __init__(self, carrier: models.Carrier):
        self.carrier = carrier

    def settle(
        self,
        db: Session,
        gateway: PaymentGateway,
        payment: models.Payment,
        *,
        now: Optional[datetime] = None,
    ) -> PayoutOutcome:
        now = now or datetime.utcnow()

        payout = ledger.get_payout_for_payment(db, payment.id)
        if payout is not None and payout.status == PayoutStatus.completed:
            return PayoutOutcome(
                payment=payment,
                payout=payout,
                transfer_id=payout.stripe_transfer_id,
                already_settled=True,
            )

        try:
            capture_if_uncaptured(gateway, payment)
        except ExternalProcessorError as e:
            record_processor_failure(db, payment, e)
            raise

        split: FeeSplit = compute_fee_split(payment.settled_amount_cents, settings.platform_fee_rate)
        try:
            payout = ledger.get_or_create_pending_payout(db, payment, split)
            db.commit()
        except (SQLAlchemyError, InvalidState) as e:
            db.rollback()
            _reconciliation("carrier_payout", payment, e, stage="payout_row")
            raise ReconciliationRequired(payment_id=payment.id) from e

        transfer_id = payout.stripe_transfer_id
        if not transfer_id:
            try:
                transfer = gateway.create_transfer(
                    amount_cents=payout.carrier_amount_cents,
                    currency=payment.currency,
                    destination=self.carrier.stripe_connect_account_id or "",
                    idempotency_key=f"carrier-payout-{payout.id}",
                    description=f"Payout for Load #{payment.load_id[:8]}",
                    metadata={
                        "load_id": payment.load_id,
                        "payment_id": payment.id,
                        "payout_id": payout.id,
                        "carrier_id": payment.carrier_id,
                        "shipper_id": payment.shipper_id,
                        "platform_fee_cents": str(payout.platform_fee_cents),
                    },
                )
            except ExternalProcessorError as e:
                ledger.record_payout_error(db, payout.id, error_message=str(e))
                db.commit()
                raise
            transfer_id = transfer.id

        try:
            ledger.complete_payout(db, payout.id, transfer_id=transfer_id, now=now)
            result = ledger.mark_released(
                db,
                payment.id,
                now=now,
                allowed_from={PaymentStatus.held_in_escrow, PaymentStatus.released},
                transfer_id=transfer_id,
            )
            if not result.updated:
                raise InvalidState("payment left escrow during payout", payment_id=payment.id)
            load_state.complete_load(db, payment.load_id)
            db.commit()
        except (SQLAlchemyError, InvalidState) as e:
            db.rollback()
            _reconciliation(
                "carrier_payout", payment, e, transfer_id=transfer_id, payout_id=payout.id
            )
            raise ReconciliationRequired(payment_id=payment.id, transfer_id=transfer_id) from e

        db.refresh(payment)
        db.refresh(payout)
        logger.info(
            "carrier_payout_completed",
            extra={
                "payment_id": payment.id,
                "payout_id": payout.id,
                "transfer_id": transfer_id,
                "carrier_amount_cents": payout.carrier_amount_cents,
                "platform_fee_cents": payout.platform_fee_cents,
            },
        )
        return PayoutOutcome(payment=payment, payout=payout, transfer_id=transfer_id)


def select_settlement_strategy(carrier: Optional[models.Carrier]) -> SettlementStrategy:
    if carrier is not None and carrier.has_enabled_payout_account:
        return ConnectedTransferSettlement(carrier)
    return DirectCaptureSettlement()


def has_approved_release_document(db: Session, load_id: str) -> bool:
    return (
        db.query(models.Document.id)
        .filter(models.Document.load_id == load_id)
        .filter(models.Document.document_type.in_(_RELEASE_DOCUMENT_TYPES))
        .filter(models.Document.approved.is_(True))
        .first()
        is not None
    )


def release_payment(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    load_id: str,
    final_amount: Any = None,
    notes: Optional[str] = None,
) -> ReleaseOutcome:
    """Capture the held funds for a delivered load.

    Only the load's shipper may release. Non-admin shippers also need an
    approved BOL or POD on the load.
    """

    load = load_state.get_load(db, load_id)
    if load.shipper_id != actor.user_id:
        raise Unauthorized("only the load's shipper may release payment", load_id=load_id)
    if load.status != LoadStatus.delivered:
        raise InvalidState("load is not delivered", load_id=load_id, status=load.status.value)

    payment = ledger.require_active_payment_for_load(db, load_id)
    if payment.status != PaymentStatus.held_in_escrow:
        raise InvalidState(
            "payment is not held in escrow", payment_id=payment.id, status=payment.status.value
        )

    if not actor.is_admin and not has_approved_release_document(db, load_id):
        raise DocumentApprovalRequired(load_id=load_id)

    final_amount_cents = None
    if final_amount is not None:
        final_amount_cents = to_minor_units(final_amount)
        if final_amount_cents > payment.amount_cents:
            raise InvalidInput(
                "final amount exceeds authorized amount",
                payment_id=payment.id,
                final_amount_cents=final_amount_cents,
                amount_cents=payment.amount_cents,
            )

    return DirectCaptureSettlement().settle(
        db,
        gateway,
        payment,
        final_amount_cents=final_amount_cents,
        notes=notes,
    )


def create_carrier_payout(
    db: Session,
    gateway: PaymentGateway,
    *,
    actor: Principal,
    load_id: str,
) -> PayoutOutcome:
    """Pay the carrier through their connected account, minus the platform fee.

    Safe to retry: the payout row is created before the transfer and its id is
    the transfer's idempotency key; a completed payout is returned as is.
    """

    load = load_state.get_load(db, load_id)
    payment = ledger.require_active_payment_for_load(db, load_id)
    if not actor.is_admin and payment.shipper_id != actor.user_id:
        raise Unauthorized("only the shipper may pay out the carrier", load_id=load_id)

    existing = ledger.get_payout_for_payment(db, payment.id)
    retrying = existing is not None and payment.status == PaymentStatus.released
    if payment.status != PaymentStatus.held_in_escrow and not retrying:
        raise InvalidState(
            "payment is not held in escrow", payment_id=payment.id, status=payment.status.value
        )
    if load.status not in {LoadStatus.delivered, LoadStatus.completed} or (
        load.status == LoadStatus.completed and not retrying
    ):
        raise InvalidState("load is not delivered", load_id=load_id, status=load.status.value)

    carrier = db.get(models.Carrier, payment.carrier_id)
    strategy = select_settlement_strategy(carrier)
    if not isinstance(strategy, ConnectedTransferSettlement):
        raise PayoutAccountRequired(carrier_id=payment.carrier_id)

    return strategy.settle(db, gateway, payment)


@dataclass
class AutoReleaseResult:
    eligible: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[dict] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0


def auto_release_sweep(
    db: Session,
    gateway: PaymentGateway,
    *,
    now: Optional[datetime] = None,
    after_hours: Optional[int] = None,
    limit: Optional[int] = None,
) -> AutoReleaseResult:
    """Capture payments held longer than the auto-release window.

    Each payment settles in its own transaction; a failure is counted and the
    batch moves on.
    """

    now = now or datetime.utcnow()
    hours = settings.auto_release_after_hours if after_hours is None else int(after_hours)
    payment_ids = ledger.payments_eligible_for_auto_release(
        db, now=now, after_hours=hours, limit=limit
    )
    result = AutoReleaseResult(eligible=len(payment_ids))
    logger.info("auto_release_started", extra={"eligible": len(payment_ids), "after_hours": hours})

    strategy = DirectCaptureSettlement()
    for payment_id in payment_ids:
        payment = db.get(models.Payment, payment_id)
        if payment is None or payment.status != PaymentStatus.held_in_escrow:
            # Disputed or settled since the batch was selected.
            result.skipped += 1
            continue
        try:
            strategy.settle(db, gateway, payment, notes="auto-released", now=now)
            result.released += 1
        except Exception as e:
            db.rollback()
            result.failed += 1
            result.failures.append({"payment_id": payment_id, "error": type(e).__name__})
            logger.warning(
                "auto_release_failed",
                extra={"payment_id": payment_id, "error": str(e)},
            )

    logger.info(
        "auto_release_finished",
        extra={
            "released": result.released,
            "failed": result.failed,
            "skipped": result.skipped,
        },
    )
    return result
