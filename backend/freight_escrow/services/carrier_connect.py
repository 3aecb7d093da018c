"""Stripe Connect onboarding and capability sync for carriers."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from freight_escrow import models
from freight_escrow.config import settings
from freight_escrow.services.errors import CarrierNotFound, InvalidState
from freight_escrow.services.payment_gateway import PaymentGateway

logger = logging.getLogger("freight_escrow.carrier_connect")


def refresh_connect_status(
    db: Session, gateway: PaymentGateway, *, carrier_id: str
) -> models.Carrier:
    """Pull the connected account's flags from Stripe and persist them.

    Payouts are enabled only when the account can both accept charges and
    receive payouts.
    """

    carrier = _get_carrier(db, carrier_id)
    if not carrier.stripe_connect_account_id:
        raise InvalidState("carrier has no connected account", carrier_id=carrier_id)

    account = gateway.retrieve_account(carrier.stripe_connect_account_id)

    carrier.stripe_connect_charges_enabled = account.charges_enabled
    carrier.stripe_connect_payouts_enabled = account.payouts_enabled
    carrier.stripe_connect_details_submitted = account.details_submitted
    carrier.stripe_connect_enabled = account.charges_enabled and account.payouts_enabled
    db.commit()
    db.refresh(carrier)

    logger.info(
        "connect_status_refreshed",
        extra={
            "carrier_id": carrier_id,
            "account_id": account.id,
            "enabled": carrier.stripe_connect_enabled,
        },
    )
    return carrier


def _get_carrier(db: Session, carrier_id: str) -> models.Carrier:
    carrier = db.get(models.Carrier, carrier_id)
    if carrier is None:
        raise CarrierNotFound(carrier_id=carrier_id)
    return carrier


def create_connect_account(
    db: Session, gateway: PaymentGateway, *, carrier_id: str, email: Optional[str] = None
) -> tuple[models.Carrier, bool]:
    """Give the carrier an Express account; returns ``(carrier, created)``.

    A carrier that already has an account keeps it. The account id is only
    written while the column is still empty, and the idempotency key is per
    carrier, so concurrent requests converge on one account.
    """

    carrier = _get_carrier(db, carrier_id)
    if carrier.stripe_connect_account_id:
        return carrier, False

    account = gateway.create_connect_account(
        company_name=carrier.company_name,
        email=email,
        idempotency_key=f"connect-account-{carrier_id}",
        metadata={"user_id": carrier_id},
    )

    updated = (
        db.query(models.Carrier)
        .filter(models.Carrier.user_id == carrier_id)
        .filter(models.Carrier.stripe_connect_account_id.is_(None))
        .update(
            {
                "stripe_connect_account_id": account.id,
                "stripe_connect_enabled": False,
                "stripe_connect_charges_enabled": account.charges_enabled,
                "stripe_connect_payouts_enabled": account.payouts_enabled,
                "stripe_connect_details_submitted": account.details_submitted,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    db.refresh(carrier)

    if updated:
        logger.info(
            "connect_account_linked",
            extra={"carrier_id": carrier_id, "account_id": account.id},
        )
    return carrier, bool(updated)


def create_onboarding_link(db: Session, gateway: PaymentGateway, *, carrier_id: str) -> str:
    carrier = _get_carrier(db, carrier_id)
    if not carrier.stripe_connect_account_id:
        raise InvalidState("carrier has no connected account", carrier_id=carrier_id)
    url = gateway.create_onboarding_link(
        carrier.stripe_connect_account_id,
        refresh_url=settings.connect_refresh_url,
        return_url=settings.connect_return_url,
    )
    logger.info(
        "connect_onboarding_link_created",
        extra={"carrier_id": carrier_id, "account_id": carrier.stripe_connect_account_id},
    )
    return url
