"""Stripe wrapper for manual-capture holds, transfers, refunds and Connect accounts.

Money crosses this boundary as integer minor units only. Every mutating call
carries an idempotency key so tenacity retries of transient failures cannot
move money twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from freight_escrow.config import settings
from freight_escrow.services.errors import ExternalProcessorError, HoldNotConfirmable

logger = logging.getLogger("freight_escrow.payment_gateway")

REQUIRES_CAPTURE = "requires_capture"
REQUIRES_CONFIRMATION = "requires_confirmation"
SUCCEEDED = "succeeded"
CANCELED = "canceled"

_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.APIError,
    stripe.RateLimitError,
)


@dataclass(frozen=True)
class HoldIntent:
    id: str
    status: str
    amount: int
    amount_received: int = 0
    currency: str = "usd"
    client_secret: Optional[str] = None

    @property
    def is_uncaptured(self) -> bool:
        return self.status == REQUIRES_CAPTURE


@dataclass(frozen=True)
class TransferResult:
    id: str
    amount: int
    destination: str


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str
    # "cancel" voids an uncaptured hold; "refund" returns captured funds.
    kind: str


@dataclass(frozen=True)
class ConnectAccount:
    id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


def _to_account(account: Any) -> ConnectAccount:
    return ConnectAccount(
        id=str(account["id"]),
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
        details_submitted=bool(account.get("details_submitted")),
    )


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ExternalProcessorError) and exc.transient


def _to_hold(intent: Any) -> HoldIntent:
    return HoldIntent(
        id=str(intent["id"]),
        status=str(intent["status"]),
        amount=int(intent.get("amount") or 0),
        amount_received=int(intent.get("amount_received") or 0),
        currency=str(intent.get("currency") or settings.currency),
        client_secret=intent.get("client_secret"),
    )


class PaymentGateway:
    """Stripe-backed payment processor."""

    def __init__(self, api_key: Optional[str] = None, api_version: Optional[str] = None):
        self.api_key = api_key or settings.stripe_secret_key
        self.api_version = api_version or settings.stripe_api_version
        if not self.api_key:
            logger.warning("stripe_secret_key_missing")

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(max(1, settings.stripe_max_retries)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        try:
            return fn(api_key=self.api_key, stripe_version=self.api_version, **params)
        except stripe.StripeError as e:
            transient = isinstance(e, _TRANSIENT_ERRORS)
            logger.error(
                "stripe_api_error",
                extra={
                    "operation": operation,
                    "transient": transient,
                    "error_type": type(e).__name__,
                    "error_code": getattr(e, "code", None),
                    "request_id": getattr(e, "request_id", None),
                    "error": str(e),
                },
            )
            raise ExternalProcessorError(
                f"stripe {operation} failed: {e}",
                transient=transient,
                operation=operation,
            ) from e

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> HoldIntent:
        intent = self._call(
            "payment_intent.create",
            stripe.PaymentIntent.create,
            amount=int(amount_cents),
            currency=currency.lower(),
            capture_method="manual",
            metadata=metadata or {},
            description=description,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        hold = _to_hold(intent)
        logger.info(
            "payment_intent_created",
            extra={"payment_intent_id": hold.id, "status": hold.status, "amount_cents": hold.amount},
        )
        return hold

    def retrieve_hold(self, payment_intent_id: str) -> HoldIntent:
        intent = self._call(
            "payment_intent.retrieve", stripe.PaymentIntent.retrieve, id=payment_intent_id
        )
        return _to_hold(intent)

    def confirm_hold(self, payment_intent_id: str, *, idempotency_key: str) -> HoldIntent:
        """Confirm an intent and require that funds are now held uncaptured."""

        intent = self._call(
            "payment_intent.confirm",
            stripe.PaymentIntent.confirm,
            intent=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        hold = _to_hold(intent)
        if not hold.is_uncaptured:
            raise HoldNotConfirmable(
                "payment intent did not reach requires_capture",
                payment_intent_id=payment_intent_id,
                status=hold.status,
            )
        logger.info("payment_intent_confirmed", extra={"payment_intent_id": hold.id})
        return hold

    def capture(
        self,
        payment_intent_id: str,
        *,
        idempotency_key: str,
        amount_to_capture: Optional[int] = None,
    ) -> HoldIntent:
        params: Dict[str, Any] = {"intent": payment_intent_id, "idempotency_key": idempotency_key}
        if amount_to_capture is not None:
            params["amount_to_capture"] = int(amount_to_capture)
        intent = self._call("payment_intent.capture", stripe.PaymentIntent.capture, **params)
        hold = _to_hold(intent)
        if hold.status != SUCCEEDED:
            raise ExternalProcessorError(
                "payment capture did not succeed",
                payment_intent_id=payment_intent_id,
                status=hold.status,
            )
        logger.info(
            "payment_intent_captured",
            extra={"payment_intent_id": hold.id, "amount_received": hold.amount_received},
        )
        return hold

    def _cancel(self, payment_intent_id: str, *, idempotency_key: str) -> RefundResult:
        intent = self._call(
            "payment_intent.cancel",
            stripe.PaymentIntent.cancel,
            intent=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        logger.info("payment_intent_cancelled", extra={"payment_intent_id": payment_intent_id})
        return RefundResult(id=str(intent["id"]), status=str(intent["status"]), kind="cancel")

    def cancel_hold(self, payment_intent_id: str, *, idempotency_key: str) -> RefundResult:
        """Void a hold that was never captured. Already-cancelled holds are a no-op."""

        hold = self.retrieve_hold(payment_intent_id)
        if hold.status == CANCELED:
            return RefundResult(id=hold.id, status=CANCELED, kind="cancel")
        if hold.status == SUCCEEDED:
            raise ExternalProcessorError(
                "captured payment cannot be cancelled",
                payment_intent_id=payment_intent_id,
                status=hold.status,
            )
        return self._cancel(payment_intent_id, idempotency_key=idempotency_key)

    def refund(self, payment_intent_id: str, *, idempotency_key: str) -> RefundResult:
        """Return the shipper's money.

        An uncaptured hold is cancelled (voided); captured funds are refunded.
        """

        hold = self.retrieve_hold(payment_intent_id)
        if hold.status == CANCELED:
            return RefundResult(id=hold.id, status=CANCELED, kind="cancel")
        if hold.is_uncaptured:
            return self._cancel(payment_intent_id, idempotency_key=idempotency_key)

        refund = self._call(
            "refund.create",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        logger.info(
            "refund_created",
            extra={"payment_intent_id": payment_intent_id, "refund_id": refund["id"]},
        )
        return RefundResult(id=str(refund["id"]), status=str(refund["status"]), kind="refund")

    def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        transfer = self._call(
            "transfer.create",
            stripe.Transfer.create,
            amount=int(amount_cents),
            currency=currency.lower(),
            destination=destination,
            description=description,
            metadata=metadata or {},
            idempotency_key=idempotency_key,
        )
        logger.info(
            "transfer_created",
            extra={"transfer_id": transfer["id"], "destination": destination},
        )
        return TransferResult(
            id=str(transfer["id"]), amount=int(transfer["amount"]), destination=destination
        )

    def retrieve_account(self, account_id: str) -> ConnectAccount:
        account = self._call("account.retrieve", stripe.Account.retrieve, id=account_id)
        return _to_account(account)

    def create_connect_account(
        self,
        *,
        company_name: str,
        idempotency_key: str,
        email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ConnectAccount:
        """Create an Express account that can receive transfers."""

        params: Dict[str, Any] = {
            "type": "express",
            "country": settings.connect_country,
            "capabilities": {"transfers": {"requested": True}},
            "business_type": "company",
            "company": {"name": company_name},
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if email:
            params["email"] = email
        account = self._call("account.create", stripe.Account.create, **params)
        logger.info("connect_account_created", extra={"account_id": account["id"]})
        return _to_account(account)

    def create_onboarding_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        link = self._call(
            "account_link.create",
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return str(link["url"])


def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway()
