"""Access evaluation — the entitlement decision derived from a record.

Pure functions, no I/O: safe to call on every content request.
"""

from datetime import datetime

from app.billing.periods import utcnow
from app.models.subscription import SubscriptionRecord

ENTITLED_STATUSES = frozenset({"trial", "active"})


def effective_status(record: SubscriptionRecord | None, now: datetime | None = None) -> str:
    """Status as readers should see it, with lazy expiry applied.

    An ``active`` record past its ``end_date`` or a ``trial`` past its
    ``trial_end_date`` reads as ``expired`` even though the stored status
    has not been corrected yet.
    """
    if record is None:
        return "none"
    now = now or utcnow()
    if record.status == "active" and (record.end_date is None or record.end_date <= now):
        return "expired"
    if record.status == "trial" and (record.trial_end_date is None or record.trial_end_date <= now):
        return "expired"
    return record.status


def has_access(
    record: SubscriptionRecord | None,
    free_access_override: bool,
    now: datetime | None = None,
) -> bool:
    """Whether the user may view paid content right now."""
    if free_access_override:
        return True
    return effective_status(record, now) in ENTITLED_STATUSES
