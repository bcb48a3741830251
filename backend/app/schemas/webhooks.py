"""Pydantic models for the Razorpay webhook envelope.

Only the fields the reconciler reads are declared; everything else the
gateway sends is accepted and ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SubscriptionEntity(_Lenient):
    id: str
    status: str | None = None
    current_end: int | None = None  # Unix seconds


class PaymentEntity(_Lenient):
    id: str
    created_at: int | None = None  # Unix seconds
    subscription_id: str | None = None


class SubscriptionWrapper(_Lenient):
    entity: SubscriptionEntity


class PaymentWrapper(_Lenient):
    entity: PaymentEntity


class WebhookPayload(_Lenient):
    subscription: SubscriptionWrapper | None = None
    payment: PaymentWrapper | None = None


class WebhookEnvelope(_Lenient):
    """Top-level webhook body: ``{"event": ..., "payload": {...}}``."""

    event: str
    payload: WebhookPayload = Field(default_factory=WebhookPayload)
    created_at: int | None = None
