from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.api.deps import rate_limit, require_roles
from freight_escrow.config import settings
from freight_escrow.core.security import Principal
from freight_escrow.database import get_db
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
from freight_escrow.services import disputes, escrow, settlement
from freight_escrow.services.audit import audit_event
from freight_escrow.services.money import from_minor_units
from freight_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/payments", tags=["payments"])
logger = logging.getLogger("freight_escrow.payments")

_DB_DEP = Depends(get_db)
_GATEWAY_DEP = Depends(get_payment_gateway)
_SHIPPER_DEP = Depends(require_roles(models.RoleName.shipper))
_PARTY_DEP = Depends(require_roles(models.RoleName.shipper, models.RoleName.carrier))
_ADMIN_DEP = Depends(require_roles(models.RoleName.admin))
_HOLD_RATE_DEP = Depends(rate_limit("create_hold", lambda: settings.rate_limit_per_minute))
_RESOLVE_RATE_DEP = Depends(
    rate_limit("resolve_dispute", lambda: settings.admin_rate_limit_per_minute)
)


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")


@router.post(
    "/holds",
    response_model=HoldCreateResponse,
    dependencies=[_HOLD_RATE_DEP],
)
def create_hold(
    payload: HoldCreateRequest,
    request: Request,
    db: Session = _DB_DEP,
    gateway: PaymentGateway = _GATEWAY_DEP,
    principal: Principal = _SHIPPER_DEP,
):
    created = escrow.create_hold(
        db,
        gateway,
        actor=principal,
        load_id=payload.load_id,
        amount=payload.amount,
        carrier_id=payload.carrier_id,
        bid_id=payload.bid_id,
    )
    if created.superseded_payment_id:
        audit_event(
            "payment.hold_cancelled",
            principal.user_id,
            {
                "payment_id": created.superseded_payment_id,
                "replaced_by": created.payment.id,
            },
            db=db,
            load_id=payload.load_id,
            idempotency_key=f"hold_cancelled:{created.superseded_payment_id}",
            request_id=_request_id(request),
        )
    if not created.reused:
        audit_event(
            "payment.hold_created",
            principal.user_id,
            {
                "payment_id": created.payment.id,
                "payment_intent_id": created.payment_intent_id,
                "amount_cents": created.payment.amount_cents,
                "carrier_id": payload.carrier_id,
                "bid_id": payload.bid_id,
            },
            db=db,
            load_id=payload.load_id,
            request_id=_request_id(request),
        )
    return HoldCreateResponse(
        payment_intent_id=created.payment_intent_id,
        client_secret=created.client_secret,
        payment=PaymentRead.from_payment(created.payment),
        reused=created.reused,
    )


@router.post("/holds/confirm", response_model=HoldConfirmResponse)
def confirm_hold(
    payload: HoldConfirmRequest,
    request: Request,
    db: Session = _DB_DEP,
    gateway: PaymentGateway = _GATEWAY_DEP,
    principal: Principal = _SHIPPER_DEP,
):
    result = escrow.confirm_hold(
        db,
        gateway,
        actor=principal,
        payment_intent_id=payload.payment_intent_id,
        load_id=payload.load_id,
        bid_id=payload.bid_id,
    )
    audit_event(
        "payment.hold_confirmed",
        principal.user_id,
        {
            "payment_id": result.payment.id,
            "bid_id": payload.bid_id,
            "carrier_id": result.payment.carrier_id,
            "rejected_bids": result.rejected_bids,
        },
        db=db,
        load_id=payload.load_id,
        idempotency_key=f"hold_confirmed:{result.payment.id}",
        request_id=_request_id(request),
    )
    return HoldConfirmResponse(
        hold_status=result.hold_status,
        rejected_bids=result.rejected_bids,
        payment=PaymentRead.from_payment(result.payment),
    )


@router.post("/{load_id}/release", response_model=ReleaseResponse)
def release_payment(
    load_id: str,
    payload: ReleaseRequest,
    request: Request,
    db: Session = _DB_DEP,
    gateway: PaymentGateway = _GATEWAY_DEP,
    principal: Principal = _SHIPPER_DEP,
):
    outcome = settlement.release_payment(
        db,
        gateway,
        actor=principal,
        load_id=load_id,
        final_amount=payload.final_amount,
        notes=payload.notes,
    )
    audit_event(
        "payment.released",
        principal.user_id,
        {
            "payment_id": outcome.payment.id,
            "captured_cents": outcome.captured_cents,
            "already_captured": outcome.already_captured,
        },
        db=db,
        load_id=load_id,
        idempotency_key=f"payment_released:{outcome.payment.id}",
        request_id=_request_id(request),
    )
    return ReleaseResponse(
        captured_amount=from_minor_units(outcome.captured_cents),
        payment=PaymentRead.from_payment(outcome.payment),
    )


@router.post("/{load_id}/payout", response_model=PayoutResponse)
def create_carrier_payout(
    load_id: str,
    request: Request,
    db: Session = _DB_DEP,
    gateway: PaymentGateway = _GATEWAY_DEP,
    principal: Principal = _SHIPPER_DEP,
):
    outcome = settlement.create_carrier_payout(db, gateway, actor=principal, load_id=load_id)
    payout = outcome.payout
    if not outcome.already_settled:
        audit_event(
            "payment.carrier_payout",
            principal.user_id,
            {
                "payment_id": outcome.payment.id,
                "payout_id": payout.id,
                "transfer_id": outcome.transfer_id,
                "carrier_amount_cents": payout.carrier_amount_cents,
                "platform_fee_cents": payout.platform_fee_cents,
            },
            db=db,
            load_id=load_id,
            idempotency_key=f"carrier_payout:{payout.id}",
            request_id=_request_id(request),
        )
    return PayoutResponse(
        already_settled=outcome.already_settled,
        payout=PayoutRead(
            id=payout.id,
            carrier_id=payout.carrier_id,
            payment_id=payout.payment_id,
            amount=from_minor_units(payout.amount_cents),
            platform_fee=from_minor_units(payout.platform_fee_cents),
            carrier_amount=from_minor_units(payout.carrier_amount_cents),
            status=payout.status,
            stripe_transfer_id=payout.stripe_transfer_id,
            completed_at=payout.completed_at,
        ),
        transfer=TransferSummary(
            id=outcome.transfer_id,
            amount=from_minor_units(payout.carrier_amount_cents),
            platform_fee=from_minor_units(payout.platform_fee_cents),
        ),
    )


@router.post("/{load_id}/dispute", response_model=DisputeOpenResponse)
def open_dispute(
    load_id: str,
    payload: DisputeOpenRequest,
    request: Request,
    db: Session = _DB_DEP,
    principal: Principal = _PARTY_DEP,
):
    payment = disputes.open_dispute(db, actor=principal, load_id=load_id, reason=payload.reason)
    audit_event(
        "payment.dispute_opened",
        principal.user_id,
        {"payment_id": payment.id, "reason": payment.dispute_reason},
        db=db,
        load_id=load_id,
        idempotency_key=f"dispute_opened:{payment.id}:{payment.updated_at}",
        request_id=_request_id(request),
    )
    return DisputeOpenResponse(
        payment_id=payment.id,
        status=payment.status,
        dispute_reason=payment.dispute_reason,
    )


@router.post(
    "/{load_id}/dispute/resolve",
    response_model=DisputeResolveResponse,
    dependencies=[_RESOLVE_RATE_DEP],
)
def resolve_dispute(
    load_id: str,
    payload: DisputeResolveRequest,
    request: Request,
    db: Session = _DB_DEP,
    gateway: PaymentGateway = _GATEWAY_DEP,
    principal: Principal = _ADMIN_DEP,
):
    resolution = disputes.resolve_dispute(
        db,
        gateway,
        actor=principal,
        load_id=load_id,
        release_to_carrier=payload.release_to_carrier,
    )
    audit_event(
        "payment.dispute_resolved",
        principal.user_id,
        {
            "payment_id": resolution.payment.id,
            "outcome": resolution.outcome,
            "processor_reference": resolution.processor_reference,
        },
        db=db,
        load_id=load_id,
        request_id=_request_id(request),
    )
    return DisputeResolveResponse(
        outcome=resolution.outcome,
        payment=PaymentRead.from_payment(resolution.payment),
    )
