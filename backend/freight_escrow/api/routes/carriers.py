from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.api.deps import require_roles
from freight_escrow.core.security import Principal
from freight_escrow.database import get_db
from freight_escrow.schemas.carriers import (
    CarrierConnectStatusRead,
    ConnectAccountCreate,
    ConnectAccountRead,
    ConnectOnboardingLinkRead,
)
from freight_escrow.services.audit import audit_event
from freight_escrow.services.carrier_connect import (
    create_connect_account,
    create_onboarding_link,
    refresh_connect_status,
)
from freight_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/carriers", tags=["carriers"])


@router.post("/me/connect/account", response_model=ConnectAccountRead)
def create_my_connect_account(
    request: Request,
    payload: Optional[ConnectAccountCreate] = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(require_roles(models.RoleName.carrier)),
):
    carrier, created = create_connect_account(
        db,
        gateway,
        carrier_id=principal.user_id,
        email=payload.email if payload else None,
    )
    if created:
        audit_event(
            "carrier.connect_account_created",
            principal.user_id,
            {"account_id": carrier.stripe_connect_account_id},
            db=db,
            idempotency_key=f"connect_account_created:{carrier.stripe_connect_account_id}",
            request_id=getattr(request.state, "request_id", None),
        )
    return ConnectAccountRead(account_id=carrier.stripe_connect_account_id, exists=not created)


@router.post("/me/connect/onboarding-link", response_model=ConnectOnboardingLinkRead)
def create_my_onboarding_link(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(require_roles(models.RoleName.carrier)),
):
    url = create_onboarding_link(db, gateway, carrier_id=principal.user_id)
    return ConnectOnboardingLinkRead(url=url)


@router.post("/me/connect/refresh", response_model=CarrierConnectStatusRead)
def refresh_my_connect_status(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    principal: Principal = Depends(require_roles(models.RoleName.carrier)),
):
    carrier = refresh_connect_status(db, gateway, carrier_id=principal.user_id)
    audit_event(
        "carrier.connect_status_refreshed",
        principal.user_id,
        {
            "account_id": carrier.stripe_connect_account_id,
            "enabled": carrier.stripe_connect_enabled,
        },
        db=db,
        request_id=getattr(request.state, "request_id", None),
    )
    return carrier
