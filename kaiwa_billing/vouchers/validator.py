"""Voucher validation.

Checks run in a fixed order and the first failure wins, so a user always
sees the same reason for the same voucher state:

1. Code exists
2. Voucher is active
3. Start date has passed
4. End date has not passed (valid through the whole end day, UTC)
5. Checkout duration is allowed
6. Global use cap
7. Per-user use cap
8. Eligibility (new users only, then exclusivity)
9. Subscription tier

Validation never writes.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, time
from typing import TYPE_CHECKING

import logfire

from kaiwa_billing.config import settings
from kaiwa_billing.credits.tiers import SubscriptionTier
from kaiwa_billing.db.credits import get_subscription
from kaiwa_billing.db.vouchers import (
    count_all_user_redemptions,
    count_user_redemptions,
    get_voucher_by_code,
    has_other_exclusive_redemption,
)
from kaiwa_billing.models.base import utcnow
from kaiwa_billing.vouchers.discount import describe_discount
from kaiwa_billing.vouchers.types import VoucherError, VoucherValidation

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from kaiwa_billing.models import Voucher


def end_of_day(moment: datetime) -> datetime:
    """Last microsecond of ``moment``'s UTC day."""
    moment = moment.astimezone(UTC)
    return datetime.combine(moment.date(), time.max, tzinfo=UTC)


def duration_label(months: int) -> str:
    return "1 tahun" if months == 12 else f"{months} bulan"


class VoucherValidator:
    """Decides whether a user may use a voucher right now."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] = utcnow,
        currency_label: str | None = None,
    ) -> None:
        self.session = session
        self.clock = clock
        self.currency_label = currency_label or settings.currency_label

    async def validate(
        self,
        code: str,
        user_id: str,
        tier: SubscriptionTier | str,
        original_amount: int | None = None,
        duration_months: int | None = None,
    ) -> VoucherValidation:
        """Validate a voucher code for a user without applying it.

        Args:
            code: Code as typed by the user.
            user_id: Platform user id.
            tier: Tier the user is buying or holds.
            original_amount: Checkout amount, used for the savings preview.
            duration_months: Checkout duration, checked against the
                voucher's allowed durations.

        Returns:
            VoucherValidation with the voucher and a preview, or the first
            failed check.
        """
        voucher = await get_voucher_by_code(self.session, code)
        if voucher is None:
            return self._invalid(code, VoucherError.NOT_FOUND, "Voucher code not found")

        error = await self._first_failure(voucher, user_id, str(tier), duration_months)
        if error is not None:
            reason, message = error
            return self._invalid(code, reason, message, voucher=voucher)

        return VoucherValidation(
            valid=True,
            voucher=voucher,
            preview=describe_discount(voucher, original_amount, self.currency_label),
        )

    async def _first_failure(
        self,
        voucher: Voucher,
        user_id: str,
        tier: str,
        duration_months: int | None,
    ) -> tuple[VoucherError, str] | None:
        now = self.clock()

        if not voucher.is_active:
            return VoucherError.INACTIVE, "Voucher is no longer active"

        if voucher.start_date > now:
            return VoucherError.NOT_YET_VALID, "Voucher is not yet valid"

        if voucher.end_date is not None and end_of_day(voucher.end_date) < now:
            return VoucherError.EXPIRED, "Voucher has expired"

        allowed = voucher.allowed_durations_months
        if allowed and duration_months is not None and duration_months not in allowed:
            labels = ", ".join(duration_label(months) for months in allowed)
            return (
                VoucherError.DURATION_NOT_ALLOWED,
                f"Voucher ini hanya berlaku untuk durasi: {labels}",
            )

        if voucher.max_uses is not None and voucher.current_uses >= voucher.max_uses:
            return VoucherError.MAX_USES_REACHED, "Voucher has reached maximum redemptions"

        used = await count_user_redemptions(self.session, voucher.id, user_id)
        if used >= voucher.uses_per_user:
            return VoucherError.ALREADY_USED_BY_USER, "You have already used this voucher"

        if voucher.new_users_only and not await self._is_new_user(user_id):
            return VoucherError.NOT_ELIGIBLE, "This voucher is only for new users"

        if voucher.is_exclusive and await has_other_exclusive_redemption(
            self.session, user_id, voucher.id
        ):
            return (
                VoucherError.NOT_ELIGIBLE,
                "Cannot use this voucher with other exclusive offers",
            )

        if voucher.applicable_tiers and tier not in voucher.applicable_tiers:
            return (
                VoucherError.TIER_NOT_APPLICABLE,
                f"This voucher is not available for {tier} tier",
            )

        return None

    async def _is_new_user(self, user_id: str) -> bool:
        # New means never redeemed anything and never left the free tier
        if await count_all_user_redemptions(self.session, user_id) > 0:
            return False
        subscription = await get_subscription(self.session, user_id)
        return subscription is None or subscription.tier == SubscriptionTier.FREE

    def _invalid(
        self,
        code: str,
        reason: VoucherError,
        message: str,
        *,
        voucher: Voucher | None = None,
    ) -> VoucherValidation:
        logfire.info("voucher_rejected", code=code, reason=reason.value)
        return VoucherValidation(valid=False, voucher=voucher, error=reason, message=message)
