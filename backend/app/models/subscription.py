"""Subscription record model — per-user entitlement state."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, UUIDPrimaryKeyMixin

SUBSCRIPTION_STATUSES = ("none", "trial", "pending", "active", "cancelled", "expired")


class SubscriptionRecord(UUIDPrimaryKeyMixin, Base):
    """Tracks a user's subscription lifecycle and gateway identifiers.

    ``updated_at`` is stamped by the store on every write and doubles as the
    optimistic-concurrency token, so it has no ``onupdate`` hook.
    """

    __tablename__ = "subscription_records"

    # One record per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="none", index=True)
    plan: Mapped[str | None] = mapped_column(String(20), nullable=True)
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Current paid (or free) period
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Trial history (trial_start_date is never cleared)
    trial_start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Razorpay identifiers
    external_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    external_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription_record", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, plan={self.plan})>"
        )
