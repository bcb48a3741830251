"""Billing dependencies — service wiring and the content access gate."""

import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user
from app.billing.access import has_access
from app.billing.razorpay_client import RazorpayClient
from app.billing.sweeper import StaleSweeper
from app.billing.webhooks import WebhookReconciler
from app.config import Settings, settings
from app.database import get_db
from app.models.user import User
from app.services.order_service import OrderService
from app.services.payment_verifier import PaymentVerifier
from app.services.subscription_store import get_or_create_record
from app.services.trial_service import TrialService

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    """The process-wide settings; overridable in tests."""
    return settings


def get_gateway(config: Settings = Depends(get_settings)) -> RazorpayClient:
    return RazorpayClient.from_settings(config)


def get_order_service(
    config: Settings = Depends(get_settings),
    gateway: RazorpayClient = Depends(get_gateway),
) -> OrderService:
    return OrderService(config, gateway)


def get_trial_service(config: Settings = Depends(get_settings)) -> TrialService:
    return TrialService(config)


def get_payment_verifier(
    config: Settings = Depends(get_settings),
    gateway: RazorpayClient = Depends(get_gateway),
) -> PaymentVerifier:
    return PaymentVerifier(config, gateway)


def get_webhook_reconciler(
    config: Settings = Depends(get_settings),
    gateway: RazorpayClient = Depends(get_gateway),
) -> WebhookReconciler:
    return WebhookReconciler(config, gateway)


def get_stale_sweeper(config: Settings = Depends(get_settings)) -> StaleSweeper:
    return StaleSweeper(config)


async def require_access(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
    sweeper: StaleSweeper = Depends(get_stale_sweeper),
    config: Settings = Depends(get_settings),
) -> User:
    """Raise 402 unless the user currently has access to paid content."""
    await sweeper.sweep_one(db, user.id)
    record = await get_or_create_record(db, user)

    if not has_access(record, config.free_access):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "An active subscription or trial is required to view this content.",
                "status": record.status,
                "upgrade_url": "/api/v1/subscription/plans",
            },
        )
    return user
