"""Date helpers for billing periods. All timestamps are naive UTC."""

import calendar
import math
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current time as naive UTC (matches the DB columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert a gateway Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def days_left(end: datetime | None, now: datetime) -> int:
    """Whole days remaining until ``end`` (rounded up, never negative)."""
    if end is None:
        return 0
    remaining = (end - now) / timedelta(days=1)
    return max(0, math.ceil(remaining))
