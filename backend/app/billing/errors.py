"""Billing exception hierarchy.

Each exception carries the HTTP status it maps to and a short ``reason``
string that is safe to show to the caller. Extra keyword context is kept for
logging only and never rendered into responses.
"""

from typing import Any


class BillingError(Exception):
    """Base class for all subscription and payment errors."""

    status_code: int = 500
    default_reason: str = "Subscription operation failed"

    def __init__(self, reason: str | None = None, **context: Any) -> None:
        self.reason = reason or self.default_reason
        self.context = context
        super().__init__(self.reason)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.__class__.__name__, "detail": self.reason}


# --- 400: user-correctable input -------------------------------------------


class ValidationError(BillingError):
    status_code = 400
    default_reason = "Invalid request"


class InvalidPlan(ValidationError):
    default_reason = "Invalid plan type"


class MissingFields(ValidationError):
    default_reason = "Missing required fields"


class MalformedPayload(ValidationError):
    default_reason = "Invalid payload"


# --- 401: authentication ----------------------------------------------------


class AuthError(BillingError):
    status_code = 401
    default_reason = "Could not validate credentials"


# --- 400: state conflicts ---------------------------------------------------


class ConflictError(BillingError):
    status_code = 400
    default_reason = "Operation not allowed in the current subscription state"


class AlreadyActive(ConflictError):
    default_reason = "User already has an active subscription"


class NotEligible(ConflictError):
    default_reason = "User is not eligible for trial"


class TrialAlreadyUsed(ConflictError):
    default_reason = "Trial already used"


class OrderNotAllowed(ConflictError):
    default_reason = "A new order cannot be created in the current subscription state"


class SubscriptionAlreadyLinked(ConflictError):
    default_reason = "This gateway subscription is already linked to another account"


# --- signatures -------------------------------------------------------------


class SignatureError(BillingError):
    """Signature problems. The reason never says which part failed."""

    status_code = 400
    default_reason = "Invalid signature"


class MissingSignature(SignatureError):
    default_reason = "No signature provided"


class InvalidSignature(SignatureError):
    default_reason = "Invalid signature"


# --- upstream / transient ---------------------------------------------------


class GatewayError(BillingError):
    """Payment gateway unreachable, timed out, or returned an error."""

    status_code = 502
    default_reason = "Payment gateway request failed"


class ConcurrentUpdateError(BillingError):
    """Optimistic-concurrency retries exhausted; safe to retry the request."""

    status_code = 409
    default_reason = "Subscription was modified concurrently, please retry"


# --- 404 --------------------------------------------------------------------


class NotFoundError(BillingError):
    status_code = 404
    default_reason = "Not found"


class UserNotFound(NotFoundError):
    default_reason = "User not found"


class RecordNotFound(NotFoundError):
    default_reason = "Subscription record not found"


# --- 403 --------------------------------------------------------------------


class FreeAccessDisabled(BillingError):
    status_code = 403
    default_reason = "Free access is not currently enabled"
