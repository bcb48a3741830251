"""Subscription API endpoints — trial, checkout orders, verification, status."""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_current_active_user,
    get_db,
    get_gateway,
    get_order_service,
    get_payment_verifier,
    get_settings,
    get_stale_sweeper,
    get_trial_service,
    require_access,
)
from app.billing.access import effective_status, has_access
from app.billing.errors import GatewayError
from app.billing.periods import days_left, utcnow
from app.billing.plans import build_catalog
from app.billing.razorpay_client import RazorpayClient
from app.billing.sweeper import StaleSweeper
from app.config import Settings
from app.models.user import User
from app.schemas.subscription import (
    AccessResponse,
    ActivateFreeResponse,
    CancelResponse,
    FreeAccessStatusResponse,
    OrderRequest,
    OrderResponse,
    PlanResponse,
    PlansListResponse,
    StatusResponse,
    SubscriptionInfo,
    SweepRequest,
    SweepResponse,
    TrialInfo,
    TrialResponse,
    VerifyRequest,
    VerifyResponse,
)
from app.services.order_service import OrderService
from app.services.payment_verifier import PaymentVerifier
from app.services.subscription_store import get_or_create_record
from app.services.trial_service import TrialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])
public_router = APIRouter(prefix="/api/v1", tags=["subscription"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(config: Settings = Depends(get_settings)) -> PlansListResponse:
    """List purchasable plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                amount=p.amount,
                currency=p.currency,
                period_months=p.period_months,
                description=p.description,
            )
            for p in build_catalog(config).values()
        ]
    )


@router.post("/trial", response_model=TrialResponse)
async def start_trial(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    trials: TrialService = Depends(get_trial_service),
) -> TrialResponse:
    """Start the one-time free trial."""
    record = await trials.start_trial(db, current_user.id)
    return TrialResponse(
        trial_start_date=record.trial_start_date,
        trial_end_date=record.trial_end_date,
        days_left=days_left(record.trial_end_date, record.trial_start_date),
    )


@router.post("/order", response_model=OrderResponse)
async def create_order(
    body: OrderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Create a Razorpay order for the chosen plan and mark the record pending."""
    handle = await orders.create_order(db, current_user.id, body.plan_type)
    return OrderResponse(
        order_id=handle.order_id,
        amount=handle.amount,
        currency=handle.currency,
        customer_id=handle.customer_id,
        plan=handle.plan,
        key_id=orders.gateway.key_id,
        status="reused" if handle.reused else "created",
    )


@router.post("/verify", response_model=VerifyResponse)
async def verify_payment(
    body: VerifyRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
) -> VerifyResponse:
    """Confirm the checkout signature and activate the subscription."""
    await verifier.verify(
        db,
        current_user.id,
        external_order_id=body.external_order_id or "",
        external_payment_id=body.external_payment_id or "",
        signature=body.signature or "",
        external_subscription_id=body.external_subscription_id,
    )
    return VerifyResponse(payment_id=body.external_payment_id or "")


@router.get("/status", response_model=StatusResponse)
async def get_status(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    sweeper: StaleSweeper = Depends(get_stale_sweeper),
    gateway: RazorpayClient = Depends(get_gateway),
    config: Settings = Depends(get_settings),
) -> StatusResponse:
    """Current subscription state, trial/period details and the access decision."""
    await sweeper.sweep_one(db, current_user.id)
    record = await get_or_create_record(db, current_user)
    now = utcnow()

    trial_info = None
    if record.status == "trial":
        remaining = days_left(record.trial_end_date, now)
        trial_info = TrialInfo(
            days_left=remaining,
            end_date=record.trial_end_date,
            is_expired=remaining == 0,
        )

    subscription_info = None
    if record.status == "active":
        remaining = days_left(record.end_date, now)
        subscription_info = SubscriptionInfo(
            plan=record.plan,
            start_date=record.start_date,
            end_date=record.end_date,
            days_left=remaining,
            amount=record.amount,
            next_billing_date=record.next_billing_date,
            last_payment_date=record.last_payment_date,
            is_expired=remaining == 0,
        )

    gateway_subscription = None
    if record.external_subscription_id:
        try:
            gateway_subscription = await gateway.fetch_subscription(record.external_subscription_id)
        except GatewayError:
            logger.warning(
                "Could not fetch Razorpay subscription %s for status of user %s",
                record.external_subscription_id,
                current_user.id,
            )

    return StatusResponse(
        status=record.status,
        effective_status=effective_status(record, now),
        trial_info=trial_info,
        subscription_info=subscription_info,
        gateway_subscription=gateway_subscription,
        has_access=has_access(record, config.free_access, now),
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_pending(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    orders: OrderService = Depends(get_order_service),
) -> CancelResponse:
    """Abandon an interrupted checkout. Non-pending records are left alone."""
    if await orders.cancel_pending(db, current_user.id):
        return CancelResponse(message="Payment cancelled successfully", status="cancelled")

    record = await get_or_create_record(db, current_user)
    return CancelResponse(message="No pending payment to cancel", status=record.status)


@router.post("/sweep", response_model=SweepResponse)
async def sweep_pending(
    body: SweepRequest | None = None,
    x_cron_secret: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    sweeper: StaleSweeper = Depends(get_stale_sweeper),
    config: Settings = Depends(get_settings),
) -> SweepResponse:
    """Internal/cron: reset stale pending records for one user or everyone."""
    if not config.cron_secret or not x_cron_secret or not hmac.compare_digest(
        x_cron_secret.encode("utf-8"), config.cron_secret.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Sweep endpoint is not available",
        )

    if body is not None and body.user_id is not None:
        swept = [body.user_id] if await sweeper.sweep_one(db, body.user_id) else []
    else:
        swept = await sweeper.sweep_all(db)
    return SweepResponse(swept=len(swept), user_ids=swept)


@router.post("/activate-free", response_model=ActivateFreeResponse)
async def activate_free(
    body: OrderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    orders: OrderService = Depends(get_order_service),
) -> ActivateFreeResponse:
    """Activate a free subscription while the free-access promotion is on."""
    record = await orders.activate_free(db, current_user.id, body.plan_type)
    return ActivateFreeResponse(
        plan_type=record.plan or body.plan_type,
        subscription_start_date=record.start_date,
        subscription_end_date=record.end_date,
    )


@public_router.get("/free-access-status", response_model=FreeAccessStatusResponse)
async def free_access_status(config: Settings = Depends(get_settings)) -> FreeAccessStatusResponse:
    """Whether the global free-access override is on (public)."""
    return FreeAccessStatusResponse(
        free_access=config.free_access,
        message="Free access is enabled" if config.free_access else "Free access is disabled",
    )


@router.get("/access", response_model=AccessResponse)
async def check_access(user: User = Depends(require_access)) -> AccessResponse:
    """Cheap gate check for content clients; 402 when the user has no access."""
    return AccessResponse(user_id=user.id)
