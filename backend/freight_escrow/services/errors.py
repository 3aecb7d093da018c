"""Domain error taxonomy for the escrow workflow.

Every error carries a stable ``code`` and a generic ``public_message`` that is
safe to show to end users. Full context lives in ``details`` and is only ever
logged server-side.
"""

from __future__ import annotations

from typing import Any


class EscrowError(Exception):
    category = "internal_error"
    status_code = 500
    code = "ESCROW_ERROR"
    public_message = "Unable to process this request. Please try again."

    def __init__(self, message: str | None = None, **details: Any):
        super().__init__(message or self.public_message)
        self.details: dict[str, Any] = details


# Unauthorized


class Unauthorized(EscrowError):
    category = "unauthorized"
    status_code = 403
    code = "UNAUTHORIZED"
    public_message = "You are not allowed to perform this action."


class AuthenticationRequired(Unauthorized):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"
    public_message = "Authentication required."


class RateLimited(Unauthorized):
    status_code = 429
    code = "RATE_LIMITED"
    public_message = "Rate limit exceeded. Please try again in a moment."


# NotFound


class NotFound(EscrowError):
    category = "not_found"
    status_code = 404
    code = "NOT_FOUND"
    public_message = "The requested resource was not found."


class LoadNotFound(NotFound):
    code = "LOAD_NOT_FOUND"
    public_message = "Load not found."


class BidNotFound(NotFound):
    code = "BID_NOT_FOUND"
    public_message = "Bid not found."


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    public_message = "Payment not found."


class CarrierNotFound(NotFound):
    code = "CARRIER_NOT_FOUND"
    public_message = "Carrier not found."


# InvalidState


class InvalidState(EscrowError):
    category = "invalid_state"
    status_code = 409
    code = "INVALID_STATE"
    public_message = "This action is not allowed in the current status."


class InvalidTransition(InvalidState):
    code = "INVALID_TRANSITION"
    public_message = "This status change is not allowed."


class BidAcceptFailed(InvalidState):
    code = "BID_ACCEPT_FAILED"
    public_message = "This bid can no longer be accepted."


class LoadUpdateFailed(InvalidState):
    code = "LOAD_UPDATE_FAILED"
    public_message = "This load can no longer be booked."


class AlreadyDisputed(InvalidState):
    code = "ALREADY_DISPUTED"
    public_message = "A dispute is already open for this payment."


class DocumentApprovalRequired(InvalidState):
    code = "DOCUMENT_APPROVAL_REQUIRED"
    public_message = "Please approve the BOL or POD document before releasing payment."


class PayoutAccountRequired(InvalidState):
    code = "PAYOUT_ACCOUNT_REQUIRED"
    public_message = "The carrier has not connected a payout account."


# InvalidInput


class InvalidInput(EscrowError):
    category = "invalid_input"
    status_code = 400
    code = "INVALID_INPUT"
    public_message = "Invalid request. Please check all required fields."


class InvalidAmount(InvalidInput):
    code = "INVALID_AMOUNT"
    public_message = "Invalid amount."


# ExternalProcessorError


class ExternalProcessorError(EscrowError):
    category = "external_processor_error"
    status_code = 502
    code = "PAYMENT_PROCESSOR_ERROR"
    public_message = "Unable to process payment for this load."

    def __init__(self, message: str | None = None, *, transient: bool = False, **details: Any):
        super().__init__(message, **details)
        self.transient = transient


class HoldNotConfirmable(ExternalProcessorError):
    code = "HOLD_NOT_CONFIRMABLE"
    public_message = "Payment confirmation failed."


# Batch and reconciliation


class PartialFailure(EscrowError):
    category = "partial_failure"
    status_code = 207
    code = "PARTIAL_FAILURE"
    public_message = "Some items could not be processed."


class ReconciliationRequired(EscrowError):
    """An external money movement succeeded but the ledger could not record it."""

    category = "reconciliation_required"
    status_code = 500
    code = "RECONCILIATION_REQUIRED"
    public_message = "Payment was processed but could not be recorded. Support has been notified."
