"""Trial service — one free trial window per user, for life."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import NotEligible, TrialAlreadyUsed, UserNotFound
from app.billing.periods import utcnow
from app.config import Settings
from app.models.subscription import SubscriptionRecord
from app.models.user import User
from app.services.subscription_store import get_or_create_record, get_record, update_with_retry

logger = logging.getLogger(__name__)


class TrialService:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self.settings = settings
        self.clock = clock
        self.trial_length = timedelta(days=settings.trial_days)

    async def start_trial(self, db: AsyncSession, user_id: uuid.UUID) -> SubscriptionRecord:
        """Start the user's trial.

        Raises:
            TrialAlreadyUsed: the user has had a trial before.
            NotEligible: the record is not in ``none``.
            UserNotFound: no such user.
        """
        user = await db.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id=str(user_id))

        now = self.clock()
        await get_or_create_record(db, user, now)

        def mutate(current: SubscriptionRecord) -> dict[str, object]:
            if current.trial_start_date is not None:
                raise TrialAlreadyUsed(user_id=str(user_id))
            if current.status != "none":
                raise NotEligible(user_id=str(user_id), status=current.status)
            return {
                "status": "trial",
                "trial_start_date": now,
                "trial_end_date": now + self.trial_length,
            }

        record = await update_with_retry(
            db,
            load=lambda: get_record(db, user_id),
            mutate=mutate,
            max_retries=self.settings.cas_max_retries,
            clock=self.clock,
        )
        logger.info("Trial started for user %s until %s", user_id, record.trial_end_date)
        return record
