"""Pydantic v2 request/response schemas for subscription endpoints.

Field names are camelCase on the wire; snake_case is accepted on input too.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Request schemas ---


class OrderRequest(CamelModel):
    """Request to start a purchase."""

    plan_type: str  # "monthly" or "yearly"


class VerifyRequest(CamelModel):
    """Checkout result posted back by the client after payment."""

    external_order_id: str | None = None
    external_payment_id: str | None = None
    signature: str | None = None
    external_subscription_id: str | None = None


class SweepRequest(CamelModel):
    """Sweep one user's record, or all stale records when omitted."""

    user_id: uuid.UUID | None = None


# --- Response schemas ---


class PlanResponse(CamelModel):
    name: str
    display_name: str
    amount: int
    currency: str
    period_months: int
    description: str


class PlansListResponse(CamelModel):
    plans: list[PlanResponse]


class TrialResponse(CamelModel):
    message: str = "Trial started successfully"
    trial_start_date: datetime
    trial_end_date: datetime
    days_left: int


class OrderResponse(CamelModel):
    order_id: str
    amount: int
    currency: str
    customer_id: str
    plan: str
    key_id: str
    status: str = "created"


class VerifyResponse(CamelModel):
    success: bool = True
    message: str = "Payment verified and subscription activated"
    payment_id: str


class TrialInfo(CamelModel):
    days_left: int
    end_date: datetime | None
    is_expired: bool


class SubscriptionInfo(CamelModel):
    plan: str | None
    start_date: datetime | None
    end_date: datetime | None
    days_left: int
    amount: int | None
    next_billing_date: datetime | None
    last_payment_date: datetime | None
    is_expired: bool


class StatusResponse(CamelModel):
    """Subscription state and the access decision for the current user."""

    status: str
    effective_status: str
    trial_info: TrialInfo | None = None
    subscription_info: SubscriptionInfo | None = None
    gateway_subscription: dict[str, Any] | None = None
    has_access: bool


class CancelResponse(CamelModel):
    message: str
    status: str


class SweepResponse(CamelModel):
    swept: int
    user_ids: list[uuid.UUID]


class ActivateFreeResponse(CamelModel):
    message: str = "Free subscription activated successfully!"
    plan_type: str
    subscription_start_date: datetime | None
    subscription_end_date: datetime | None
    status: str = "activated"


class FreeAccessStatusResponse(CamelModel):
    free_access: bool
    message: str


class AccessResponse(CamelModel):
    has_access: bool = True
    user_id: uuid.UUID
