"""Voucher and voucher redemption models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from kaiwa_billing.models.base import Base, JSONType, TimestampMixin, UTCDateTime, utcnow


class Voucher(Base, TimestampMixin):
    """Promotional code.

    Created and edited by admin tooling. ``current_uses`` is only changed
    together with a redemption row, through ``kaiwa_billing.db.vouchers``.
    """

    __tablename__ = "vouchers"
    __table_args__ = (
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_vouchers_uses_within_cap",
        ),
        CheckConstraint("current_uses >= 0", name="ck_vouchers_uses_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Upper case, trimmed
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # percentage, fixed_amount, bonus_credits, trial_extension, tier_upgrade
    type: Mapped[str] = mapped_column(String(20))

    # Percent, currency amount, credits or days depending on type
    value: Mapped[int] = mapped_column()

    # Usage caps
    max_uses: Mapped[int | None] = mapped_column(nullable=True)
    uses_per_user: Mapped[int] = mapped_column(default=1)
    current_uses: Mapped[int] = mapped_column(default=0)

    # Validity window; end_date is valid through the end of that day (UTC)
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Eligibility: empty tier list means every tier
    applicable_tiers: Mapped[list] = mapped_column(JSONType, default=list)
    allowed_durations_months: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    new_users_only: Mapped[bool] = mapped_column(Boolean, default=False)

    # Combination rules
    is_stackable: Mapped[bool] = mapped_column(Boolean, default=False)
    is_exclusive: Mapped[bool] = mapped_column(Boolean, default=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    redemptions: Mapped[list[VoucherRedemption]] = relationship(back_populates="voucher")

    def __repr__(self) -> str:
        return (
            f"<Voucher(code={self.code!r}, type={self.type!r}, value={self.value}, "
            f"uses={self.current_uses}/{self.max_uses})>"
        )


class VoucherRedemption(Base):
    """One user's application of one voucher.

    Immutable apart from the APPLIED -> REVOKED status transition.
    """

    __tablename__ = "voucher_redemptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    voucher_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("vouchers.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Snapshot of the voucher terms at redemption time
    discount_type: Mapped[str] = mapped_column(String(20))
    discount_value: Mapped[int] = mapped_column()
    original_amount: Mapped[int] = mapped_column()
    final_amount: Mapped[int] = mapped_column()

    # applied, revoked
    status: Mapped[str] = mapped_column(String(20), default="applied", index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    voucher: Mapped[Voucher] = relationship(back_populates="redemptions")

    def __repr__(self) -> str:
        return (
            f"<VoucherRedemption(voucher_id={self.voucher_id}, user_id={self.user_id!r}, "
            f"status={self.status!r})>"
        )
