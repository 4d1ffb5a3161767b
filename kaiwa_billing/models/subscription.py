"""Subscription model holding a user's tier and credit balance."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, String
from sqlalchemy.orm import Mapped, mapped_column

from kaiwa_billing.models.base import Base, TimestampMixin, UTCDateTime


class Subscription(Base, TimestampMixin):
    """Per-user billing ledger.

    ``credits_remaining`` is only changed through the atomic queries in
    ``kaiwa_billing.db.credits``; every change is paired with a
    ``CreditTransaction`` row.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_subscriptions_credits_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Owner (users live in the platform's own tables)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    # free, basic, pro
    tier: Mapped[str] = mapped_column(String(20), index=True)

    # active, expired, cancelled
    status: Mapped[str] = mapped_column(String(20), default="active")

    # Credit balance
    credits_remaining: Mapped[int] = mapped_column(default=0)
    credits_total: Mapped[int] = mapped_column(default=0)

    # Text messages sent on daily_usage_date (UTC), for free tier caps
    daily_text_count: Mapped[int] = mapped_column(default=0)
    daily_usage_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Trial window (free tier)
    trial_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def credits_used(self) -> int:
        return max(0, self.credits_total - self.credits_remaining)

    def __repr__(self) -> str:
        return (
            f"<Subscription(user_id={self.user_id!r}, tier={self.tier!r}, "
            f"credits_remaining={self.credits_remaining})>"
        )
