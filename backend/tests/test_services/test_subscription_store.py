"""Tests for the subscription store: get-or-create and compare-and-swap writes."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ConcurrentUpdateError, RecordNotFound
from app.models.subscription import SubscriptionRecord
from app.services.subscription_store import (
    compare_and_swap,
    get_or_create_record,
    get_record,
    get_record_by_external_subscription,
    list_stale_pending,
    update_with_retry,
)

T0 = datetime(2026, 3, 1, 12, 0, 0)


async def _bump(db: AsyncSession, record: SubscriptionRecord, **values) -> None:
    """Simulate another writer changing the row behind our back."""
    await db.execute(
        update(SubscriptionRecord)
        .where(SubscriptionRecord.id == record.id)
        .values(updated_at=record.updated_at + timedelta(seconds=5), **values)
        .execution_options(synchronize_session=False)
    )


class TestGetOrCreate:
    async def test_creates_none_record(self, db_session, test_user):
        record = await get_or_create_record(db_session, test_user, T0)
        assert record.user_id == test_user.id
        assert record.status == "none"
        assert record.updated_at == T0

    async def test_second_call_returns_same_row(self, db_session, test_user):
        first = await get_or_create_record(db_session, test_user, T0)
        second = await get_or_create_record(db_session, test_user, T0 + timedelta(hours=1))
        assert first.id == second.id

        count = await db_session.scalar(
            select(func.count()).select_from(SubscriptionRecord).where(SubscriptionRecord.user_id == test_user.id)
        )
        assert count == 1

    async def test_lookup_by_external_subscription(self, db_session, test_user, make_record):
        await make_record(test_user, status="active", external_subscription_id="sub_lookup")
        found = await get_record_by_external_subscription(db_session, "sub_lookup")
        assert found is not None and found.user_id == test_user.id
        assert await get_record_by_external_subscription(db_session, "sub_missing") is None


class TestCompareAndSwap:
    async def test_successful_write_bumps_token(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none", updated_at=T0)

        ok = await compare_and_swap(db_session, record, {"status": "cancelled"}, T0 + timedelta(minutes=1))

        assert ok is True
        assert record.status == "cancelled"
        assert record.updated_at == T0 + timedelta(minutes=1)

    async def test_token_strictly_increases_when_clock_lags(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none", updated_at=T0)

        await compare_and_swap(db_session, record, {"status": "cancelled"}, T0 - timedelta(hours=1))

        assert record.updated_at > T0

    async def test_stale_token_is_rejected(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none", updated_at=T0)
        await _bump(db_session, record, status="expired")

        ok = await compare_and_swap(db_session, record, {"status": "cancelled"}, T0 + timedelta(minutes=1))

        assert ok is False
        fresh = await get_record(db_session, test_user.id)
        assert fresh.status == "expired"

    async def test_noop_change_leaves_token(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="active", end_date=T0 + timedelta(days=30), updated_at=T0)

        ok = await compare_and_swap(
            db_session, record, {"status": "active", "end_date": T0 + timedelta(days=30)}, T0 + timedelta(hours=1)
        )

        assert ok is True
        assert record.updated_at == T0

    async def test_write_once_identifier_not_replaced(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none", external_customer_id="cust_original")

        await compare_and_swap(
            db_session, record, {"external_customer_id": "cust_other", "status": "cancelled"}, T0 + timedelta(minutes=1)
        )

        assert record.external_customer_id == "cust_original"
        assert record.status == "cancelled"

    async def test_trial_start_date_never_cleared(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="expired", trial_start_date=T0 - timedelta(days=20))

        await compare_and_swap(db_session, record, {"trial_start_date": None}, T0)

        assert record.trial_start_date == T0 - timedelta(days=20)

    async def test_pending_requires_plan_amount_and_customer(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none")

        with pytest.raises(ValueError):
            await compare_and_swap(db_session, record, {"status": "pending", "plan": "monthly"}, T0)


class TestUpdateWithRetry:
    async def test_retries_after_conflict(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="none", updated_at=T0)
        calls = []

        def mutate(current):
            calls.append(current.status)
            return {"amount": 100}

        async def load():
            loaded = await get_record(db_session, test_user.id)
            if len(calls) == 0:
                # Another writer sneaks in between our read and our write.
                await _bump(db_session, loaded, status="cancelled")
            return loaded

        result = await update_with_retry(db_session, load, mutate, max_retries=3, clock=lambda: T0 + timedelta(hours=1))

        assert len(calls) == 2
        assert calls[1] == "cancelled"
        assert result.amount == 100
        assert result.status == "cancelled"
        assert record.id == result.id

    async def test_exhausted_retries_raise(self, db_session, test_user, make_record):
        await make_record(test_user, status="none", updated_at=T0)

        async def load():
            loaded = await get_record(db_session, test_user.id)
            await _bump(db_session, loaded)
            return loaded

        with pytest.raises(ConcurrentUpdateError):
            await update_with_retry(db_session, load, lambda r: {"amount": 1}, max_retries=2, clock=lambda: T0)

    async def test_missing_record(self, db_session):
        async def load():
            return None

        with pytest.raises(RecordNotFound):
            await update_with_retry(db_session, load, lambda r: {"status": "active"})

    async def test_mutate_none_is_noop(self, db_session, test_user, make_record):
        record = await make_record(test_user, status="trial", updated_at=T0)

        result = await update_with_retry(
            db_session, lambda: get_record(db_session, test_user.id), lambda r: None, clock=lambda: T0 + timedelta(days=1)
        )

        assert result.updated_at == T0
        assert record.status == "trial"


class TestStalePendingListing:
    async def test_lists_only_old_pending(self, db_session, make_user, make_record):
        old = await make_user()
        fresh = await make_user()
        active = await make_user()
        cust = {"plan": "monthly", "amount": 49900}
        await make_record(old, status="pending", external_customer_id="cust_old", updated_at=T0 - timedelta(hours=2), **cust)
        await make_record(fresh, status="pending", external_customer_id="cust_fresh", updated_at=T0, **cust)
        await make_record(active, status="active", updated_at=T0 - timedelta(hours=2))

        stale = await list_stale_pending(db_session, T0 - timedelta(minutes=30))

        assert [r.user_id for r in stale] == [old.id]
