"""Subscription store — reads and optimistic-concurrency writes of records.

Every mutation is a compare-and-swap on ``updated_at``: the UPDATE only
matches if the row still carries the timestamp the caller read. Callers go
through ``update_with_retry`` which re-reads and re-evaluates the mutation
when another writer got there first.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ConcurrentUpdateError, RecordNotFound
from app.billing.periods import utcnow
from app.models.subscription import SubscriptionRecord
from app.models.user import User

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[SubscriptionRecord | None]]
Mutation = Callable[[SubscriptionRecord], dict[str, Any] | None]

# Fields that are written once and never replaced by a different value.
_WRITE_ONCE_FIELDS = ("external_customer_id", "external_subscription_id", "trial_start_date")


async def get_record(db: AsyncSession, user_id: uuid.UUID) -> SubscriptionRecord | None:
    """Load a user's record, bypassing any stale copy in the identity map."""
    result = await db.execute(
        select(SubscriptionRecord)
        .where(SubscriptionRecord.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_record_by_external_subscription(
    db: AsyncSession, external_subscription_id: str
) -> SubscriptionRecord | None:
    """Look up a record by Razorpay subscription ID (used by webhooks)."""
    result = await db.execute(
        select(SubscriptionRecord)
        .where(SubscriptionRecord.external_subscription_id == external_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_record(
    db: AsyncSession, user: User, now: datetime | None = None
) -> SubscriptionRecord:
    """Get the user's record, creating a ``none`` record on first access.

    Uses INSERT .. ON CONFLICT DO NOTHING so two first requests racing for
    the same user both end up reading the single row.
    """
    record = await get_record(db, user.id)
    if record is not None:
        return record

    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = (
        insert(SubscriptionRecord)
        .values(
            id=uuid.uuid4(),
            user_id=user.id,
            status="none",
            updated_at=now or utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[SubscriptionRecord.user_id])
    )
    await db.execute(stmt)
    logger.info("Created subscription record for user %s", user.id)

    record = await get_record(db, user.id)
    if record is None:
        raise RecordNotFound(user_id=str(user.id))
    return record


async def list_stale_pending(db: AsyncSession, cutoff: datetime) -> list[SubscriptionRecord]:
    """Pending records whose last write is older than ``cutoff``."""
    result = await db.execute(
        select(SubscriptionRecord).where(
            SubscriptionRecord.status == "pending",
            SubscriptionRecord.updated_at < cutoff,
        )
    )
    return list(result.scalars().all())


def _guard_changes(record: SubscriptionRecord, changes: dict[str, Any]) -> dict[str, Any]:
    """Drop no-op assignments and refuse to replace write-once identifiers."""
    effective: dict[str, Any] = {}
    for field, value in changes.items():
        current = getattr(record, field)
        if current == value:
            continue
        if field in _WRITE_ONCE_FIELDS and current is not None and value is not None:
            logger.warning(
                "Refusing to overwrite %s on record %s (%s -> %s)",
                field,
                record.id,
                current,
                value,
            )
            continue
        if field == "trial_start_date" and current is not None:
            continue
        effective[field] = value
    return effective


def _check_pending_invariant(record: SubscriptionRecord, changes: dict[str, Any]) -> None:
    def after(field: str) -> Any:
        return changes[field] if field in changes else getattr(record, field)

    if after("status") == "pending":
        missing = [f for f in ("plan", "amount", "external_customer_id") if after(f) is None]
        if missing:
            raise ValueError(f"pending record {record.id} would lack {', '.join(missing)}")


async def compare_and_swap(
    db: AsyncSession,
    record: SubscriptionRecord,
    changes: dict[str, Any],
    now: datetime | None = None,
) -> bool:
    """Apply ``changes`` if the row still has the ``updated_at`` we read.

    Returns True when the write landed (or there was nothing to write) and
    False when another writer changed the row first. On success ``record`` is
    refreshed from the database.
    """
    changes = _guard_changes(record, changes)
    if not changes:
        return True
    _check_pending_invariant(record, changes)

    seen = record.updated_at
    now = now or utcnow()
    stamp = max(now, seen + timedelta(microseconds=1))

    result = await db.execute(
        update(SubscriptionRecord)
        .where(
            SubscriptionRecord.id == record.id,
            SubscriptionRecord.updated_at == seen,
        )
        .values(**changes, updated_at=stamp)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    await db.refresh(record)
    return True


async def update_with_retry(
    db: AsyncSession,
    load: Loader,
    mutate: Mutation,
    max_retries: int = 3,
    clock: Callable[[], datetime] = utcnow,
) -> SubscriptionRecord:
    """Read-modify-write a record under optimistic concurrency.

    ``mutate`` receives a freshly loaded record and returns the field changes
    to apply, or None for no change. It may raise a domain error after
    inspecting the current state; that error propagates unchanged.

    Raises:
        RecordNotFound: ``load`` returned no record.
        ConcurrentUpdateError: every attempt lost the race.
    """
    for attempt in range(max_retries + 1):
        record = await load()
        if record is None:
            raise RecordNotFound()

        changes = mutate(record)
        if not changes:
            return record

        if await compare_and_swap(db, record, changes, clock()):
            return record

        logger.info(
            "Concurrent update on subscription record %s (attempt %d/%d)",
            record.id,
            attempt + 1,
            max_retries + 1,
        )

    raise ConcurrentUpdateError()
