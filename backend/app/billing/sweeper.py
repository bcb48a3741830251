"""Stale pending sweep — reclaim orders abandoned at checkout."""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.errors import ConcurrentUpdateError, RecordNotFound
from app.billing.periods import utcnow
from app.config import Settings
from app.database import session_scope
from app.models.subscription import SubscriptionRecord
from app.services.subscription_store import get_record, list_stale_pending, update_with_retry

logger = logging.getLogger(__name__)

# What a reclaimed pending record is reset to. Trial history and the
# customer ID are kept.
PENDING_RESET: dict[str, object] = {
    "status": "none",
    "plan": None,
    "amount": None,
    "start_date": None,
    "end_date": None,
    "next_billing_date": None,
    "external_subscription_id": None,
    "external_order_id": None,
}


def is_stale_pending(record: SubscriptionRecord, now: datetime, timeout: timedelta) -> bool:
    return record.status == "pending" and now - record.updated_at > timeout


class StaleSweeper:
    """Resets ``pending`` records that have not been touched for too long."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.clock = clock
        self.timeout = timedelta(minutes=settings.pending_timeout_minutes)

    async def sweep_one(self, db: AsyncSession, user_id: uuid.UUID) -> bool:
        """Reclaim one user's record if it is a stale pending order.

        Cheap no-op for every other state, so it can run before any read of
        the user's own record. Returns True if the record was reset.
        """
        now = self.clock()
        swept = False

        def mutate(current: SubscriptionRecord) -> dict[str, object] | None:
            nonlocal swept
            swept = is_stale_pending(current, now, self.timeout)
            return dict(PENDING_RESET) if swept else None

        try:
            await update_with_retry(
                db,
                load=lambda: get_record(db, user_id),
                mutate=mutate,
                max_retries=self.settings.cas_max_retries,
                clock=self.clock,
            )
        except RecordNotFound:
            return False

        if swept:
            logger.info("Reset stale pending subscription for user %s", user_id)
        return swept

    async def sweep_all(self, db: AsyncSession) -> list[uuid.UUID]:
        """Scan for stale pending records and reset each of them."""
        cutoff = self.clock() - self.timeout
        candidates = await list_stale_pending(db, cutoff)
        swept: list[uuid.UUID] = []
        for record in candidates:
            try:
                if await self.sweep_one(db, record.user_id):
                    swept.append(record.user_id)
            except ConcurrentUpdateError:
                # The user is actively changing their record; the next sweep
                # will look at it again.
                logger.warning("Skipped busy record for user %s during sweep", record.user_id)
        if swept:
            logger.info("Stale pending sweep reset %d record(s)", len(swept))
        return swept

    async def run_periodic(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
    ) -> None:
        """Sweep forever, one transaction per pass, until cancelled."""
        logger.info("Stale pending sweeper started (every %ss)", interval_seconds)
        while True:
            try:
                async with session_scope(session_factory) as db:
                    await self.sweep_all(db)
            except Exception:
                logger.exception("Stale pending sweep failed")
            await asyncio.sleep(interval_seconds)
