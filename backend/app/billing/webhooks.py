"""Razorpay webhook reconciler — apply subscription lifecycle events.

Events may arrive late, twice, or out of order. Each handler writes the
event's stated values (never an increment), so redelivery is harmless, and
the last event applied wins.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import InvalidSignature, MalformedPayload, MissingSignature, RecordNotFound
from app.billing.periods import ts_to_naive, utcnow
from app.billing.razorpay_client import RazorpayClient
from app.config import Settings
from app.models.subscription import SubscriptionRecord
from app.schemas.webhooks import WebhookEnvelope
from app.services.subscription_store import get_record_by_external_subscription, update_with_retry

logger = logging.getLogger(__name__)

# Handler results
PROCESSED = "processed"
IGNORED = "ignored"
NOT_FOUND = "not_found"
LOGGED = "logged"

Handler = Callable[[AsyncSession, WebhookEnvelope], Awaitable[str]]


class WebhookReconciler:
    """Verifies, parses and applies webhook events to subscription records."""

    def __init__(
        self,
        settings: Settings,
        gateway: RazorpayClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.clock = clock
        self.handlers: dict[str, Handler] = {
            "subscription.charged": self.handle_charged,
            "subscription.cancelled": self.handle_cancelled,
            "subscription.completed": self.handle_completed,
            "subscription.halted": self.handle_halted,
            "payment.failed": self.handle_payment_failed,
        }

    async def reconcile(self, db: AsyncSession, raw_body: bytes, signature: str | None) -> str:
        """Verify the signature over the raw body, then dispatch the event.

        Returns the handler result (``processed``, ``ignored``,
        ``not_found`` or ``logged``); all of them are acknowledged to the
        gateway, including subscription events that carry no subscription.

        Raises:
            MissingSignature, InvalidSignature, MalformedPayload
        """
        if not signature:
            logger.warning("Webhook rejected: no signature header")
            raise MissingSignature()

        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("Webhook signature verification failed")
            raise InvalidSignature()

        try:
            envelope = WebhookEnvelope.model_validate_json(raw_body)
        except pydantic.ValidationError as e:
            logger.warning("Invalid webhook payload: %d validation error(s)", e.error_count())
            raise MalformedPayload() from e

        handler = self.handlers.get(envelope.event)
        if handler is None:
            logger.info("Unhandled webhook event type: %s", envelope.event)
            return IGNORED

        # Nothing to apply; acknowledged like an unknown event
        if envelope.event.startswith("subscription.") and envelope.payload.subscription is None:
            logger.warning("%s event without a subscription entity, ignoring", envelope.event)
            return IGNORED

        logger.info("Processing webhook event: %s", envelope.event)
        return await handler(db, envelope)

    async def _apply(
        self,
        db: AsyncSession,
        event: str,
        subscription_id: str,
        changes: dict[str, object],
    ) -> str:
        try:
            record = await update_with_retry(
                db,
                load=lambda: get_record_by_external_subscription(db, subscription_id),
                mutate=lambda current: changes,
                max_retries=self.settings.cas_max_retries,
                clock=self.clock,
            )
        except RecordNotFound:
            logger.warning(
                "No local subscription found for Razorpay subscription %s (%s)",
                subscription_id,
                event,
            )
            return NOT_FOUND

        logger.info(
            "%s: subscription %s (user %s) is now %s",
            event,
            subscription_id,
            record.user_id,
            record.status,
        )
        return PROCESSED

    async def handle_charged(self, db: AsyncSession, envelope: WebhookEnvelope) -> str:
        """subscription.charged — activate and move the period end to the event's."""
        subscription = envelope.payload.subscription.entity
        changes: dict[str, object] = {"status": "active"}

        payment = envelope.payload.payment.entity if envelope.payload.payment else None
        if payment is not None and payment.created_at is not None:
            changes["last_payment_date"] = ts_to_naive(payment.created_at)

        if subscription.current_end is not None:
            period_end = ts_to_naive(subscription.current_end)
            changes["end_date"] = period_end
            changes["next_billing_date"] = period_end

        return await self._apply(db, envelope.event, subscription.id, changes)

    async def handle_cancelled(self, db: AsyncSession, envelope: WebhookEnvelope) -> str:
        """subscription.cancelled — mark cancelled."""
        subscription = envelope.payload.subscription.entity
        return await self._apply(db, envelope.event, subscription.id, {"status": "cancelled"})

    async def handle_completed(self, db: AsyncSession, envelope: WebhookEnvelope) -> str:
        """subscription.completed — all billing cycles done, mark expired."""
        subscription = envelope.payload.subscription.entity
        return await self._apply(db, envelope.event, subscription.id, {"status": "expired"})

    async def handle_halted(self, db: AsyncSession, envelope: WebhookEnvelope) -> str:
        """subscription.halted — retries exhausted at the gateway, mark expired."""
        subscription = envelope.payload.subscription.entity
        return await self._apply(db, envelope.event, subscription.id, {"status": "expired"})

    async def handle_payment_failed(self, db: AsyncSession, envelope: WebhookEnvelope) -> str:
        """payment.failed — logged only; the status is left alone."""
        payment = envelope.payload.payment.entity if envelope.payload.payment else None
        if payment is None:
            logger.info("payment.failed event without a payment entity, skipping")
            return LOGGED

        record: SubscriptionRecord | None = None
        if payment.subscription_id:
            record = await get_record_by_external_subscription(db, payment.subscription_id)

        if record is None:
            logger.info("Payment %s failed (no matching subscription)", payment.id)
        else:
            logger.info(
                "Payment %s failed for user %s (subscription %s, status %s)",
                payment.id,
                record.user_id,
                payment.subscription_id,
                record.status,
            )
        return LOGGED
