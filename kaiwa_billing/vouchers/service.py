"""Voucher service for validating, applying and revoking vouchers.

Applying a voucher is one unit of work in the caller's session:
1. Claim a use (conditional increment, fails when the cap is taken)
2. Insert the APPLIED redemption
3. Apply the effect (bonus credits or trial extension) on the credit ledger

If any step raises, the session rolls back all of them.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import logfire

from kaiwa_billing.credits.service import CreditService
from kaiwa_billing.credits.tiers import SubscriptionTier
from kaiwa_billing.db.vouchers import (
    claim_voucher_use,
    create_redemption,
    get_redemption,
    get_user_redemptions,
    get_vouchers_by_codes,
    mark_redemption_revoked,
    release_voucher_use,
)
from kaiwa_billing.errors import VoucherEffectFailed
from kaiwa_billing.models.base import utcnow
from kaiwa_billing.vouchers.discount import calculate_discount, format_amount
from kaiwa_billing.vouchers.types import (
    DiscountResult,
    RedemptionResult,
    RevocationResult,
    StackCheck,
    VoucherError,
    VoucherType,
    VoucherValidation,
)
from kaiwa_billing.vouchers.validator import VoucherValidator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from kaiwa_billing.models import Voucher, VoucherRedemption


# Types that can be redeemed outside checkout
DIRECT_REDEEM_TYPES = frozenset({VoucherType.BONUS_CREDITS, VoucherType.TRIAL_EXTENSION})


class VoucherService:
    """Service for voucher checkout and redemption.

    Usage:
        service = VoucherService(session)

        # Checkout page: show what the code gives
        validation = await service.validate_voucher("HEMAT20", user_id, "pro", 149000)

        # Payment confirmed: record it
        result = await service.apply_voucher("HEMAT20", user_id, "pro", 149000)
        if result.success:
            charge(result.discount.final_amount)
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        credit_service: CreditService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.clock = clock
        self.credits = credit_service or CreditService(session, clock=clock)
        self.validator = VoucherValidator(session, clock=clock)

    async def validate_voucher(
        self,
        code: str,
        user_id: str,
        tier: SubscriptionTier | str,
        original_amount: int | None = None,
        duration_months: int | None = None,
    ) -> VoucherValidation:
        """Validate a voucher code without applying it."""
        return await self.validator.validate(
            code, user_id, tier, original_amount, duration_months
        )

    async def apply_voucher(
        self,
        code: str,
        user_id: str,
        tier: SubscriptionTier | str,
        original_amount: int,
        subscription_id: str | None = None,
        duration_months: int | None = None,
    ) -> RedemptionResult:
        """Apply a voucher to a checkout (or a direct redemption).

        Args:
            code: Code as typed by the user.
            user_id: Platform user id.
            tier: Tier being bought, checked against the voucher's tiers.
            original_amount: Checkout amount before the discount.
            subscription_id: Checkout's subscription, stored on the redemption.
            duration_months: Checkout duration.

        Returns:
            RedemptionResult with the redemption and discount, or the reason
            it was refused.

        Raises:
            ValueError: If the amount is negative.
        """
        if original_amount < 0:
            msg = f"Original amount must be non-negative, got {original_amount}"
            raise ValueError(msg)

        validation = await self.validator.validate(
            code, user_id, tier, original_amount, duration_months
        )
        if not validation.valid or validation.voucher is None:
            return RedemptionResult(
                success=False, error=validation.error, message=validation.message
            )

        voucher = validation.voucher
        discount = calculate_discount(voucher, original_amount)

        if discount.trial_extension_days and not await self._can_extend_trial(user_id):
            logfire.info("voucher_effect_not_applicable", code=voucher.code, user_id=user_id)
            return RedemptionResult(
                success=False,
                error=VoucherError.EFFECT_NOT_APPLICABLE,
                message="Trial extension is only available during a free trial",
            )

        if await claim_voucher_use(self.session, voucher.id) is None:
            # Another redemption took the last use after validation
            logfire.info("voucher_claim_lost", code=voucher.code, user_id=user_id)
            return RedemptionResult(
                success=False,
                error=VoucherError.MAX_USES_REACHED,
                message="Voucher has reached maximum redemptions",
            )

        redemption = await create_redemption(
            self.session,
            voucher,
            user_id,
            original_amount=original_amount,
            final_amount=discount.final_amount,
            subscription_id=subscription_id,
        )
        new_trial_end = await self._apply_effects(voucher, user_id, redemption, discount)

        logfire.info(
            "voucher_applied",
            code=voucher.code,
            user_id=user_id,
            type=voucher.type,
            discount=discount.discount_amount,
            final_amount=discount.final_amount,
            redemption_id=str(redemption.id),
        )
        return RedemptionResult(
            success=True,
            redemption=redemption,
            discount=discount,
            new_trial_end=new_trial_end,
        )

    async def redeem_voucher(self, code: str, user_id: str) -> RedemptionResult:
        """Redeem a bonus-credit or trial-extension code outside checkout."""
        subscription = await self.credits.get_or_create_subscription(user_id)

        validation = await self.validator.validate(code, user_id, subscription.tier, 0)
        if not validation.valid or validation.voucher is None:
            return RedemptionResult(
                success=False, error=validation.error, message=validation.message
            )

        voucher = validation.voucher
        if voucher.type not in DIRECT_REDEEM_TYPES:
            return RedemptionResult(
                success=False,
                error=VoucherError.DIRECT_REDEEM_NOT_ALLOWED,
                message="This code can only be used at checkout",
            )

        result = await self.apply_voucher(code, user_id, subscription.tier, 0)
        if not result.success:
            return result

        if voucher.type == VoucherType.BONUS_CREDITS:
            message = f"You received {format_amount(voucher.value)} bonus credits"
        else:
            message = f"Your trial was extended by {voucher.value} days"
        return RedemptionResult(
            success=True,
            redemption=result.redemption,
            discount=result.discount,
            message=message,
            new_trial_end=result.new_trial_end,
        )

    async def revoke_redemption(self, redemption_id: uuid.UUID) -> RevocationResult:
        """Revoke a redemption and give its use back to the voucher.

        Safe to call repeatedly: only the first call changes anything.
        Bonus credits and trial days already granted are kept.
        """
        voucher_id = await mark_redemption_revoked(self.session, redemption_id)
        if voucher_id is None:
            redemption = await get_redemption(self.session, redemption_id)
            if redemption is None:
                return RevocationResult(
                    success=False,
                    redemption_id=redemption_id,
                    error=VoucherError.REDEMPTION_NOT_FOUND,
                    message="Redemption not found",
                )
            return RevocationResult(
                success=False,
                redemption_id=redemption_id,
                error=VoucherError.ALREADY_REVOKED,
                message="Redemption was already revoked",
            )

        await release_voucher_use(self.session, voucher_id)

        redemption = await get_redemption(self.session, redemption_id)
        if redemption is not None and redemption.discount_type in DIRECT_REDEEM_TYPES:
            logfire.warn(
                "voucher_revoked_effects_retained",
                redemption_id=str(redemption_id),
                user_id=redemption.user_id,
                type=redemption.discount_type,
                value=redemption.discount_value,
            )
        logfire.info("voucher_revoked", redemption_id=str(redemption_id))
        return RevocationResult(success=True, redemption_id=redemption_id)

    async def can_stack_vouchers(self, codes: Sequence[str]) -> StackCheck:
        """Check if vouchers can be combined in one checkout.

        Unknown codes are ignored here; they fail validation on their own.
        """
        if len(codes) <= 1:
            return StackCheck(can_stack=True)

        vouchers = await get_vouchers_by_codes(self.session, codes)

        non_stackable = next((v for v in vouchers if not v.is_stackable), None)
        if non_stackable is not None:
            return StackCheck(
                can_stack=False,
                conflicting_code=non_stackable.code,
                error=VoucherError.STACK_CONFLICT,
                reason=f"Voucher {non_stackable.code} cannot be combined with other vouchers",
            )

        exclusive = next((v for v in vouchers if v.is_exclusive), None)
        if exclusive is not None:
            return StackCheck(
                can_stack=False,
                conflicting_code=exclusive.code,
                error=VoucherError.STACK_CONFLICT,
                reason=f"Voucher {exclusive.code} is an exclusive offer and cannot be combined",
            )

        return StackCheck(can_stack=True)

    async def get_user_redemptions(self, user_id: str) -> list[VoucherRedemption]:
        return await get_user_redemptions(self.session, user_id)

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    async def _can_extend_trial(self, user_id: str) -> bool:
        subscription = await self.credits.get_or_create_subscription(user_id)
        return (
            subscription.tier == SubscriptionTier.FREE
            and subscription.trial_end_date is not None
        )

    async def _apply_effects(
        self,
        voucher: Voucher,
        user_id: str,
        redemption: VoucherRedemption,
        discount: DiscountResult,
    ) -> datetime | None:
        description = f"Voucher bonus: {voucher.code}"
        metadata = {
            "voucher_id": str(voucher.id),
            "redemption_id": str(redemption.id),
        }

        if discount.bonus_credits:
            subscription = await self.credits.get_or_create_subscription(user_id)
            if subscription.tier == SubscriptionTier.FREE:
                await self.credits.add_bonus_trial_credits(
                    user_id,
                    discount.bonus_credits,
                    description,
                    reference_id=voucher.code,
                    metadata=metadata,
                )
            else:
                await self.credits.add_bonus_credits(
                    user_id,
                    discount.bonus_credits,
                    description,
                    reference_id=voucher.code,
                    source="voucher",
                    metadata=metadata,
                )

        if discount.trial_extension_days:
            new_end = await self.credits.extend_trial(user_id, discount.trial_extension_days)
            if new_end is None:
                msg = f"Could not extend trial of {user_id} for voucher {voucher.code}"
                raise VoucherEffectFailed(msg)
            return new_end

        return None

