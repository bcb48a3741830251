"""Order service — start a purchase and move the record to ``pending``."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.access import effective_status
from app.billing.errors import AlreadyActive, FreeAccessDisabled, OrderNotAllowed, UserNotFound
from app.billing.periods import utcnow
from app.billing.plans import Plan, get_plan
from app.billing.razorpay_client import RazorpayClient, make_receipt
from app.billing.sweeper import PENDING_RESET, is_stale_pending
from app.config import Settings
from app.models.subscription import SubscriptionRecord
from app.models.user import User
from app.services.subscription_store import get_or_create_record, get_record, update_with_retry

logger = logging.getLogger(__name__)

# States a fresh order may start from. ``pending`` is handled separately by
# the reuse policy in ``create_order``.
ORDERABLE_STATUSES = frozenset({"none", "expired", "cancelled"})


@dataclass(frozen=True)
class OrderHandle:
    """What the client needs to open the checkout."""

    order_id: str
    amount: int
    currency: str
    customer_id: str
    plan: str
    reused: bool = False


class OrderService:
    def __init__(
        self,
        settings: Settings,
        gateway: RazorpayClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.clock = clock
        self.pending_timeout = timedelta(minutes=settings.pending_timeout_minutes)

    def _reusable(self, record: SubscriptionRecord, plan: Plan, now: datetime) -> OrderHandle | None:
        """The existing order handle if a fresh pending order for the same plan exists."""
        if (
            record.status == "pending"
            and record.plan == plan.name
            and record.external_order_id
            and record.external_customer_id
            and not is_stale_pending(record, now, self.pending_timeout)
        ):
            return OrderHandle(
                order_id=record.external_order_id,
                amount=record.amount or plan.amount,
                currency=plan.currency,
                customer_id=record.external_customer_id,
                plan=plan.name,
                reused=True,
            )
        return None

    @staticmethod
    def _ensure_can_order(record: SubscriptionRecord, now: datetime) -> None:
        status = effective_status(record, now)
        if status == "active":
            raise AlreadyActive(user_id=str(record.user_id))
        if status != "pending" and status not in ORDERABLE_STATUSES:
            raise OrderNotAllowed(
                f"Cannot create an order while the subscription is '{status}'",
                user_id=str(record.user_id),
            )

    async def create_order(self, db: AsyncSession, user_id: uuid.UUID, plan_type: str) -> OrderHandle:
        """Create a payment order for ``plan_type`` and mark the record pending.

        Raises:
            InvalidPlan, UserNotFound, AlreadyActive, OrderNotAllowed,
            GatewayError, ConcurrentUpdateError
        """
        plan = get_plan(self.settings, plan_type)
        user = await db.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id=str(user_id))

        now = self.clock()
        record = await get_or_create_record(db, user, now)

        reused = self._reusable(record, plan, now)
        if reused is not None:
            logger.info("Reusing pending order %s for user %s", reused.order_id, user.id)
            return reused

        self._ensure_can_order(record, now)

        # Gateway calls first; nothing is written locally until they succeed.
        customer_id = record.external_customer_id
        if not customer_id:
            customer = await self.gateway.create_customer(
                name=user.name or user.email,
                email=user.email,
                user_id=str(user.id),
                contact=user.contact,
            )
            customer_id = customer.id

        order = await self.gateway.create_order(
            amount=plan.amount,
            currency=plan.currency,
            receipt=make_receipt(user.id, now, self.settings.receipt_bucket_seconds),
            notes={"user_id": str(user.id), "plan": plan.name},
        )

        end_date = plan.period_end(now)

        def mutate(current: SubscriptionRecord) -> dict[str, object]:
            self._ensure_can_order(current, now)
            return {
                "status": "pending",
                "plan": plan.name,
                "amount": plan.amount,
                "start_date": now,
                "end_date": end_date,
                "next_billing_date": end_date,
                "external_order_id": order.id,
                "external_customer_id": current.external_customer_id or customer_id,
            }

        record = await update_with_retry(
            db,
            load=lambda: get_record(db, user.id),
            mutate=mutate,
            max_retries=self.settings.cas_max_retries,
            clock=self.clock,
        )
        logger.info(
            "Order %s created for user %s: plan=%s amount=%s",
            order.id,
            user.id,
            plan.name,
            plan.amount,
        )
        return OrderHandle(
            order_id=order.id,
            amount=plan.amount,
            currency=order.currency,
            customer_id=record.external_customer_id or customer_id,
            plan=plan.name,
        )

    async def activate_free(self, db: AsyncSession, user_id: uuid.UUID, plan_type: str) -> SubscriptionRecord:
        """Activate a zero-amount subscription while free access is switched on.

        Raises:
            FreeAccessDisabled, InvalidPlan, UserNotFound, AlreadyActive,
            OrderNotAllowed, ConcurrentUpdateError
        """
        if not self.settings.free_access:
            raise FreeAccessDisabled()
        plan = get_plan(self.settings, plan_type)
        user = await db.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id=str(user_id))

        now = self.clock()
        await get_or_create_record(db, user, now)
        end_date = plan.period_end(now)

        def mutate(current: SubscriptionRecord) -> dict[str, object]:
            self._ensure_can_order(current, now)
            return {
                "status": "active",
                "plan": plan.name,
                "amount": 0,
                "start_date": now,
                "end_date": end_date,
                "next_billing_date": end_date,
                "external_order_id": None,
            }

        record = await update_with_retry(
            db,
            load=lambda: get_record(db, user.id),
            mutate=mutate,
            max_retries=self.settings.cas_max_retries,
            clock=self.clock,
        )
        logger.info("Free %s subscription activated for user %s", plan.name, user.id)
        return record

    async def cancel_pending(self, db: AsyncSession, user_id: uuid.UUID) -> bool:
        """Abandon an interrupted checkout. Only ``pending`` records are reset.

        Returns True if a pending order was cancelled.
        """
        user = await db.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id=str(user_id))

        await get_or_create_record(db, user, self.clock())
        cancelled = False

        def mutate(current: SubscriptionRecord) -> dict[str, object] | None:
            nonlocal cancelled
            cancelled = current.status == "pending"
            return dict(PENDING_RESET) if cancelled else None

        await update_with_retry(
            db,
            load=lambda: get_record(db, user.id),
            mutate=mutate,
            max_retries=self.settings.cas_max_retries,
            clock=self.clock,
        )
        if cancelled:
            logger.info("Pending order cancelled by user %s", user.id)
        return cancelled
