"""Payment verification — synchronous confirmation after checkout."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import (
    GatewayError,
    InvalidSignature,
    MissingFields,
    SubscriptionAlreadyLinked,
    UserNotFound,
)
from app.billing.periods import ts_to_naive, utcnow
from app.billing.plans import get_plan
from app.billing.razorpay_client import GatewayOrder, RazorpayClient
from app.config import Settings
from app.models.subscription import SubscriptionRecord
from app.models.user import User
from app.services.subscription_store import (
    get_or_create_record,
    get_record,
    get_record_by_external_subscription,
    update_with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "monthly"


def _already_applied(
    record: SubscriptionRecord,
    order_id: str,
    window_end: datetime,
    now: datetime,
) -> bool:
    """Whether activating this order's window would grant nothing new."""
    if record.external_order_id == order_id and record.status != "pending":
        return True
    if window_end <= now:
        return True
    return record.status == "active" and record.end_date is not None and record.end_date >= window_end


class PaymentVerifier:
    def __init__(
        self,
        settings: Settings,
        gateway: RazorpayClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.clock = clock

    async def _load_order(self, user_id: uuid.UUID, order_id: str) -> GatewayOrder:
        """Fetch the paid order and make sure it was issued to this user."""
        try:
            order = await self.gateway.fetch_order(order_id)
        except GatewayError as e:
            if e.context.get("upstream_status") == 404:
                raise InvalidSignature("Invalid payment signature") from e
            raise
        if order.notes.get("user_id") != str(user_id):
            logger.warning(
                "User %s tried to verify order %s issued to %s",
                user_id,
                order_id,
                order.notes.get("user_id"),
            )
            raise InvalidSignature("Invalid payment signature")
        return order

    async def _check_subscription_link(
        self,
        db: AsyncSession,
        record: SubscriptionRecord,
        subscription_id: str,
    ) -> None:
        """Only a subscription owned by this record's customer may be linked."""
        if record.external_subscription_id:
            raise SubscriptionAlreadyLinked(
                "A different gateway subscription is already linked",
                user_id=str(record.user_id),
            )

        owner = await get_record_by_external_subscription(db, subscription_id)
        if owner is not None and owner.user_id != record.user_id:
            raise SubscriptionAlreadyLinked(user_id=str(record.user_id), subscription_id=subscription_id)

        try:
            subscription = await self.gateway.fetch_subscription(subscription_id)
        except GatewayError as e:
            if e.context.get("upstream_status") == 404:
                raise InvalidSignature("Invalid payment signature") from e
            raise
        customer_id = subscription.get("customer_id")
        if not record.external_customer_id or customer_id != record.external_customer_id:
            logger.warning(
                "Subscription %s (customer %s) does not belong to user %s",
                subscription_id,
                customer_id,
                record.user_id,
            )
            raise InvalidSignature("Invalid payment signature")

    async def verify(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        external_order_id: str,
        external_payment_id: str,
        signature: str,
        external_subscription_id: str | None = None,
    ) -> SubscriptionRecord:
        """Confirm a checkout payment and activate the subscription.

        Does not look at the pending state: a valid signature on an order
        issued to this user is proof of payment. The plan comes from the
        order's notes and the paid window starts when the order was created,
        so verifying the same payment again re-asserts the same window and
        never extends it.

        Raises:
            MissingFields, InvalidSignature, UserNotFound, GatewayError,
            SubscriptionAlreadyLinked, ConcurrentUpdateError
        """
        if not external_order_id or not external_payment_id or not signature:
            raise MissingFields("Missing payment verification data")

        if not self.gateway.verify_payment_signature(external_order_id, external_payment_id, signature):
            logger.warning(
                "Payment signature rejected for user %s (order %s)",
                user_id,
                external_order_id,
            )
            raise InvalidSignature("Invalid payment signature")

        user = await db.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id=str(user_id))

        # Gateway lookups first; nothing is written until they succeed.
        order = await self._load_order(user_id, external_order_id)
        now = self.clock()
        record = await get_or_create_record(db, user, now)

        link_subscription = bool(
            external_subscription_id and external_subscription_id != record.external_subscription_id
        )
        if link_subscription:
            await self._check_subscription_link(db, record, external_subscription_id)

        paid_from = min(ts_to_naive(order.created_at) or now, now)

        def mutate(current: SubscriptionRecord) -> dict[str, object] | None:
            plan = get_plan(self.settings, order.notes.get("plan") or current.plan or DEFAULT_PLAN)
            window_end = plan.period_end(paid_from)
            changes: dict[str, object] = {}
            if link_subscription:
                changes["external_subscription_id"] = external_subscription_id
            if _already_applied(current, external_order_id, window_end, now):
                logger.info(
                    "Order %s adds nothing to user %s's window, not re-activating",
                    external_order_id,
                    user_id,
                )
                return changes or None

            changes.update(
                {
                    "status": "active",
                    "plan": plan.name,
                    "amount": order.amount or plan.amount,
                    "start_date": paid_from,
                    "end_date": window_end,
                    "next_billing_date": window_end,
                    "last_payment_date": now,
                    "external_order_id": external_order_id,
                }
            )
            return changes

        try:
            record = await update_with_retry(
                db,
                load=lambda: get_record(db, user_id),
                mutate=mutate,
                max_retries=self.settings.cas_max_retries,
                clock=self.clock,
            )
        except IntegrityError as e:
            # Another account linked the same subscription between our check and write
            raise SubscriptionAlreadyLinked(
                user_id=str(user_id), subscription_id=external_subscription_id
            ) from e

        logger.info(
            "Payment %s verified: user %s active until %s",
            external_payment_id,
            user_id,
            record.end_date,
        )
        return record
