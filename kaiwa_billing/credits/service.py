"""Credit service for checking and deducting credits.

This is the main entry point for credit operations. It handles:
- Trial subscriptions for new users
- Pre-flight checks against tier policies, daily caps and balance
- Billing measured usage after a request completes
- Grants, bonuses, refunds and manual adjustments

Every balance change goes through one atomic query in
``kaiwa_billing.db.credits`` and is paired with a transaction row, inside
the caller's session.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import logfire

from kaiwa_billing.config import settings
from kaiwa_billing.credits.calculator import UsageCalculator
from kaiwa_billing.credits.pricing import PricingRegistry
from kaiwa_billing.credits.tiers import (
    DEFAULT_ESTIMATE_RATES,
    DEFAULT_TIER_POLICIES,
    EstimateRates,
    SubscriptionTier,
    TierPolicyTable,
    UsageKind,
    get_policy,
    parse_usage_kind,
)
from kaiwa_billing.credits.types import (
    CreditBalance,
    CreditCheckResult,
    CreditDenial,
    CreditResult,
    DeductionResult,
    DiagnosticKind,
    PricingDiagnostic,
    TransactionType,
)
from kaiwa_billing.credits.usage import UsageEvent
from kaiwa_billing.db.credits import (
    add_credits,
    create_subscription,
    deduct_credits,
    deduct_credits_clamped,
    extend_trial_end,
    get_credit_balance,
    get_daily_text_count,
    get_subscription,
    get_transaction,
    get_transaction_by_idempotency_key,
    get_user_transactions,
    increment_daily_text_count,
    lock_credit_balance,
    record_transaction,
    restore_credits,
    start_billing_period,
)
from kaiwa_billing.errors import SubscriptionNotFound
from kaiwa_billing.models.base import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from kaiwa_billing.models import CreditTransaction, Subscription


BILLING_PERIOD = timedelta(days=30)


def infer_usage_kind(registry: PricingRegistry, events: Sequence[UsageEvent]) -> UsageKind:
    """Billing category of a batch of usage events.

    Any realtime model makes the batch realtime, otherwise any voice model
    makes it standard voice. Unknown models count as text.
    """
    kinds = {registry.usage_kind(event.model_id) for event in events}
    if UsageKind.REALTIME in kinds:
        return UsageKind.REALTIME
    if UsageKind.VOICE_STANDARD in kinds:
        return UsageKind.VOICE_STANDARD
    return UsageKind.TEXT_CHAT


def _unknown_kind_diagnostic(usage_kind: str) -> PricingDiagnostic:
    return PricingDiagnostic(
        kind=DiagnosticKind.UNKNOWN_USAGE_KIND,
        model_id=None,
        message=f"Unknown usage kind {usage_kind!r} billed at zero",
    )


def _breakdown_metadata(result: CreditResult) -> dict:
    # JSON columns cannot hold Decimal
    return {
        "usd_cost": str(result.usd_cost),
        "breakdown": {key: str(value) for key, value in result.breakdown.items()},
    }


class CreditService:
    """Service for checking, charging and granting credits.

    Usage:
        service = CreditService(session)

        # Before the request
        check = await service.check_credits(user_id, UsageKind.VOICE_STANDARD, 90)
        if not check.allowed:
            ...  # show check.message / paywall

        # After the request, with measured usage
        result = await service.deduct_credits_from_usage(
            user_id,
            [TextTokenUsage("gpt-4o-mini", 800, 200), DurationUsage("whisper-1", 42)],
            reference_id=message_id,
            idempotency_key=f"usage:{message_id}",
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        calculator: UsageCalculator | None = None,
        policies: TierPolicyTable = DEFAULT_TIER_POLICIES,
        estimates: EstimateRates = DEFAULT_ESTIMATE_RATES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.calculator = calculator or UsageCalculator(
            credit_usd_value=settings.credit_usd_value
        )
        self.policies = policies
        self.estimates = estimates
        self.clock = clock

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def get_or_create_subscription(self, user_id: str) -> Subscription:
        """Get a user's subscription, starting a free trial for new users."""
        subscription = await get_subscription(self.session, user_id)
        if subscription is not None:
            return subscription

        policy = get_policy(self.policies, SubscriptionTier.FREE)
        now = self.clock()
        trial_end = now + timedelta(days=policy.trial_days)

        subscription = await create_subscription(
            self.session,
            user_id,
            SubscriptionTier.FREE,
            credits=policy.trial_credits,
            trial_start_date=now,
            trial_end_date=trial_end,
            period_start=now,
            period_end=trial_end,
        )
        await record_transaction(
            self.session,
            user_id,
            TransactionType.GRANT,
            policy.trial_credits,
            policy.trial_credits,
            source="trial",
            description=f"Free trial: {policy.trial_credits} credits for {policy.trial_days} days",
        )

        logfire.info(
            "trial_started",
            user_id=user_id,
            credits=policy.trial_credits,
            trial_end=trial_end.isoformat(),
        )
        return subscription

    def _trial_days_remaining(self, subscription: Subscription, now: datetime) -> int | None:
        if subscription.tier != SubscriptionTier.FREE or subscription.trial_end_date is None:
            return None
        seconds = (subscription.trial_end_date - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def _trial_expired(self, subscription: Subscription, now: datetime) -> bool:
        return (
            subscription.tier == SubscriptionTier.FREE
            and subscription.trial_end_date is not None
            and subscription.trial_end_date <= now
        )

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def check_credits(
        self,
        user_id: str,
        usage_kind: UsageKind | str,
        estimated_units: int | float = 1,
    ) -> CreditCheckResult:
        """Check if a request of ``usage_kind`` may run.

        The check order:
        1. Kind disabled on the tier
        2. Daily message cap
        3. Unlimited kind (balance is not consulted)
        4. Expired free trial
        5. Estimated cost against the balance

        Unknown usage kinds cost nothing and are allowed with a diagnostic.

        Args:
            user_id: Platform user id.
            usage_kind: Billing category of the request.
            estimated_units: Messages for text, seconds for voice and realtime.

        Returns:
            CreditCheckResult with the decision and a user-facing message.
        """
        kind = parse_usage_kind(usage_kind)
        subscription = await self.get_or_create_subscription(user_id)
        policy = get_policy(self.policies, subscription.tier)
        now = self.clock()

        available = subscription.credits_remaining
        is_trial_user = subscription.tier == SubscriptionTier.FREE
        trial_days_remaining = self._trial_days_remaining(subscription, now)

        if kind is None:
            diagnostic = _unknown_kind_diagnostic(usage_kind)
            logfire.warn("unknown_usage_kind", user_id=user_id, usage_kind=str(usage_kind))
            return CreditCheckResult(
                allowed=True,
                usage_kind=str(usage_kind),
                credits_required=0,
                credits_available=available,
                is_trial_user=is_trial_user,
                trial_days_remaining=trial_days_remaining,
                diagnostic=diagnostic,
            )

        required = self.estimates.estimate(kind, estimated_units)

        def deny(reason: CreditDenial, message: str, **extra) -> CreditCheckResult:
            logfire.info(
                "credit_check_denied",
                user_id=user_id,
                usage_kind=kind.value,
                reason=reason.value,
            )
            return CreditCheckResult(
                allowed=False,
                usage_kind=kind,
                credits_required=required,
                credits_available=available,
                is_trial_user=is_trial_user,
                trial_days_remaining=trial_days_remaining,
                reason=reason,
                message=message,
                **extra,
            )

        if not policy.allows(kind):
            return deny(
                CreditDenial.FEATURE_NOT_AVAILABLE,
                f"{kind.value} is not available on the {subscription.tier} plan",
            )

        daily_remaining = None
        daily_limit = policy.daily_limit(kind)
        if daily_limit is not None:
            used_today = await get_daily_text_count(self.session, user_id, now.date())
            daily_remaining = max(0, daily_limit - used_today)
            if used_today >= daily_limit:
                return deny(
                    CreditDenial.DAILY_LIMIT_EXCEEDED,
                    f"Daily limit of {daily_limit} messages reached",
                    daily_remaining=0,
                )

        if policy.is_unlimited(kind):
            return CreditCheckResult(
                allowed=True,
                usage_kind=kind,
                credits_required=0,
                credits_available=available,
                is_trial_user=is_trial_user,
                trial_days_remaining=trial_days_remaining,
                daily_remaining=daily_remaining,
            )

        if self._trial_expired(subscription, now):
            return deny(
                CreditDenial.TRIAL_EXPIRED,
                "Your free trial has ended",
                daily_remaining=daily_remaining,
            )

        if required > available:
            return deny(
                CreditDenial.INSUFFICIENT_CREDITS,
                f"Need {required} credits, {available} available",
                daily_remaining=daily_remaining,
            )

        return CreditCheckResult(
            allowed=True,
            usage_kind=kind,
            credits_required=required,
            credits_available=available,
            is_trial_user=is_trial_user,
            trial_days_remaining=trial_days_remaining,
            daily_remaining=daily_remaining,
        )

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    async def deduct_credits_from_usage(
        self,
        user_id: str,
        usage: UsageEvent | Sequence[UsageEvent],
        *,
        reference_id: str | None = None,
        source: str = "usage",
        description: str | None = None,
        force_deduct: bool = False,
        usage_kind: UsageKind | str | None = None,
        idempotency_key: str | None = None,
    ) -> DeductionResult:
        """Bill measured usage against a user's balance.

        Call this ONLY after the request has completed. Uses
        idempotency_key to prevent double-charging on retries.

        Args:
            user_id: Platform user id.
            usage: One usage event, or all events of an interaction.
            reference_id: What caused the charge (message id, session id).
            source: Feature that produced the usage.
            description: Human readable line for the history view.
            force_deduct: Charge even when the tier treats the kind as
                unlimited (text cost of an interaction that also synthesized
                speech).
            usage_kind: Billing category; inferred from the models when None.
                Unknown kinds are billed at zero with a diagnostic.
            idempotency_key: Optional key to prevent duplicate charges.

        Returns:
            DeductionResult with the computed cost and what was charged.
        """
        events = [usage] if not isinstance(usage, Sequence) else list(usage)
        result = self.calculator.aggregate(events)
        if usage_kind is None:
            kind = infer_usage_kind(self.calculator.registry, events)
        else:
            kind = parse_usage_kind(usage_kind)
        kind_label = kind.value if kind is not None else str(usage_kind)

        for diagnostic in result.diagnostics:
            logfire.warn(
                "unknown_pricing_model",
                user_id=user_id,
                model_id=diagnostic.model_id,
                kind=diagnostic.kind.value,
                detail=diagnostic.message,
            )
        if kind is None:
            logfire.warn("unknown_usage_kind", user_id=user_id, usage_kind=kind_label)
            result = replace(
                result,
                diagnostics=(*result.diagnostics, _unknown_kind_diagnostic(kind_label)),
            )

        # Check idempotency
        if idempotency_key:
            existing = await get_transaction_by_idempotency_key(
                self.session, idempotency_key
            )
            if existing:
                logfire.info(
                    "deduction_skipped_idempotent",
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                )
                return DeductionResult(
                    usage=result,
                    usage_kind=kind or kind_label,
                    credits_charged=-existing.amount,
                    balance_after=existing.balance_after,
                    transaction_id=existing.id,
                    unlimited=bool(existing.metadata_.get("unlimited")),
                    duplicate=True,
                )

        subscription = await self.get_or_create_subscription(user_id)
        policy = get_policy(self.policies, subscription.tier)

        if kind == UsageKind.TEXT_CHAT:
            await increment_daily_text_count(self.session, user_id, self.clock().date())

        metadata = _breakdown_metadata(result)
        record = {
            "reference_id": reference_id,
            "source": source,
            "description": description or f"{kind_label} usage",
            "usage_kind": kind_label,
            "usd_cost": result.usd_cost,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        }

        unlimited = kind is not None and policy.is_unlimited(kind) and not force_deduct
        if kind is None or unlimited:
            # Audit row only, balance untouched
            if unlimited:
                metadata["unlimited"] = True
            else:
                metadata["unknown_usage_kind"] = True
            balance = await lock_credit_balance(self.session, user_id)
            transaction = await record_transaction(
                self.session,
                user_id,
                TransactionType.CHARGE,
                0,
                balance,
                **record,
            )
            logfire.info(
                "zero_charge_recorded",
                user_id=user_id,
                usage_kind=kind_label,
                credits=result.credits,
                unlimited=unlimited,
            )
            return DeductionResult(
                usage=result,
                usage_kind=kind or kind_label,
                balance_after=balance,
                transaction_id=transaction.id,
                unlimited=unlimited,
            )

        if force_deduct:
            # Clamped deductions charge what was actually there
            charged, new_balance = await deduct_credits_clamped(
                self.session, user_id, result.credits
            )
        else:
            charged = result.credits
            new_balance = await deduct_credits(self.session, user_id, charged)

        if new_balance is None:
            available = await get_credit_balance(self.session, user_id)
            logfire.info(
                "deduction_rejected_insufficient",
                user_id=user_id,
                required=result.credits,
                available=available,
            )
            return DeductionResult(
                usage=result,
                usage_kind=kind,
                balance_after=available,
                denial=CreditDenial.INSUFFICIENT_CREDITS,
                message=f"Need {result.credits} credits, {available} available",
            )

        transaction = await record_transaction(
            self.session,
            user_id,
            TransactionType.CHARGE,
            -charged,
            new_balance,
            **record,
        )

        logfire.info(
            "credits_deducted",
            user_id=user_id,
            usage_kind=kind_label,
            amount=charged,
            usd_cost=str(result.usd_cost),
            balance_after=new_balance,
            forced=force_deduct,
        )
        return DeductionResult(
            usage=result,
            usage_kind=kind,
            credits_charged=charged,
            balance_after=new_balance,
            transaction_id=transaction.id,
        )

    # -------------------------------------------------------------------------
    # Grants and corrections
    # -------------------------------------------------------------------------

    async def add_bonus_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        reference_id: str | None = None,
        source: str = "bonus",
        metadata: dict | None = None,
    ) -> CreditTransaction:
        """Add promotional credits to a paid subscription's balance."""
        await self.get_or_create_subscription(user_id)
        new_balance = await add_credits(self.session, user_id, amount)
        transaction = await record_transaction(
            self.session,
            user_id,
            TransactionType.BONUS,
            amount,
            new_balance,
            reference_id=reference_id,
            source=source,
            description=description,
            metadata=metadata,
        )
        logfire.info(
            "bonus_credits_added",
            user_id=user_id,
            amount=amount,
            new_balance=new_balance,
        )
        return transaction

    async def add_bonus_trial_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
        *,
        reference_id: str | None = None,
        metadata: dict | None = None,
    ) -> CreditTransaction:
        """Add promotional credits to a free-tier trial allowance.

        Raises:
            ValueError: If the user is not on the free tier.
        """
        subscription = await self.get_or_create_subscription(user_id)
        if subscription.tier != SubscriptionTier.FREE:
            msg = f"User {user_id} is not on the free tier"
            raise ValueError(msg)

        return await self.add_bonus_credits(
            user_id,
            amount,
            description,
            reference_id=reference_id,
            source="trial",
            metadata=metadata,
        )

    async def grant_monthly_credits(self, user_id: str) -> int:
        """Grant a paid tier's monthly allowance and start a new billing period.

        Returns:
            New balance after the grant.

        Raises:
            SubscriptionNotFound: If the user has no subscription.
            ValueError: If the tier has no monthly allowance.
        """
        subscription = await get_subscription(self.session, user_id)
        if subscription is None:
            raise SubscriptionNotFound(user_id)

        policy = get_policy(self.policies, subscription.tier)
        if policy.monthly_credits <= 0:
            msg = f"Tier {subscription.tier} has no monthly credits"
            raise ValueError(msg)

        now = self.clock()
        new_balance = await start_billing_period(
            self.session, user_id, policy.monthly_credits, now, now + BILLING_PERIOD
        )
        await record_transaction(
            self.session,
            user_id,
            TransactionType.GRANT,
            policy.monthly_credits,
            new_balance,
            source="monthly",
            description=f"Monthly {subscription.tier} credits",
        )
        logfire.info(
            "monthly_credits_granted",
            user_id=user_id,
            tier=subscription.tier,
            amount=policy.monthly_credits,
            new_balance=new_balance,
        )
        return new_balance

    async def adjust_credits(
        self,
        user_id: str,
        amount: int,
        description: str,
    ) -> CreditTransaction:
        """Manual correction by support.

        Credits added also raise the lifetime total. The balance never drops
        below 0, and the row records what was actually taken.
        """
        await self.get_or_create_subscription(user_id)
        if amount >= 0:
            applied = amount
            new_balance = await add_credits(self.session, user_id, amount)
        else:
            taken, new_balance = await deduct_credits_clamped(self.session, user_id, -amount)
            applied = -taken

        transaction = await record_transaction(
            self.session,
            user_id,
            TransactionType.ADJUSTMENT,
            applied,
            new_balance,
            source="admin",
            description=description,
            metadata={"requested": amount} if applied != amount else None,
        )
        logfire.info(
            "credits_adjusted",
            user_id=user_id,
            amount=applied,
            requested=amount,
            new_balance=new_balance,
        )
        return transaction

    async def refund_transaction(
        self,
        transaction_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> CreditTransaction | None:
        """Return the credits of an earlier charge.

        Refunding the same charge twice returns the first refund.

        Returns:
            The REFUND transaction, or None if the charge was not found or
            charged nothing.
        """
        original = await get_transaction(self.session, transaction_id)
        if original is None or original.type != TransactionType.CHARGE:
            logfire.warn("refund_failed_not_found", transaction_id=str(transaction_id))
            return None
        if original.amount == 0:
            logfire.info("refund_skipped_zero_charge", transaction_id=str(transaction_id))
            return None

        refund_key = f"refund:{transaction_id}"
        existing_refund = await get_transaction_by_idempotency_key(self.session, refund_key)
        if existing_refund:
            logfire.info("refund_already_processed", transaction_id=str(transaction_id))
            return existing_refund

        amount = -original.amount
        new_balance = await restore_credits(self.session, original.user_id, amount)
        refund = await record_transaction(
            self.session,
            original.user_id,
            TransactionType.REFUND,
            amount,
            new_balance,
            reference_id=str(transaction_id),
            source=original.source,
            description=reason or f"Refund of {original.description or 'charge'}",
            usage_kind=original.usage_kind,
            idempotency_key=refund_key,
            metadata={"original_transaction_id": str(transaction_id)},
        )
        logfire.info(
            "refund_processed",
            transaction_id=str(transaction_id),
            amount=amount,
            new_balance=new_balance,
        )
        return refund

    async def extend_trial(self, user_id: str, days: int) -> datetime | None:
        """Extend a free-tier trial by ``days``.

        An already ended trial is extended from now, so the user always gets
        the full number of days.

        Returns:
            New trial end date, or None if the user has no free-tier trial.
        """
        if days <= 0:
            msg = f"Trial extension must be positive, got {days} days"
            raise ValueError(msg)

        subscription = await self.get_or_create_subscription(user_id)
        if (
            subscription.tier != SubscriptionTier.FREE
            or subscription.trial_end_date is None
        ):
            logfire.warn("trial_extension_not_applicable", user_id=user_id, tier=subscription.tier)
            return None

        base = max(self.clock(), subscription.trial_end_date)
        new_end = base + timedelta(days=days)
        if not await extend_trial_end(self.session, user_id, new_end):
            return None

        await record_transaction(
            self.session,
            user_id,
            TransactionType.BONUS,
            0,
            subscription.credits_remaining,
            source="trial",
            description=f"Trial extended by {days} days",
            metadata={"trial_end_date": new_end.isoformat()},
        )
        logfire.info(
            "trial_extended",
            user_id=user_id,
            days=days,
            new_end=new_end.isoformat(),
        )
        return new_end

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> CreditBalance:
        """Current credit state of a user (creates the trial for new users)."""
        subscription = await self.get_or_create_subscription(user_id)
        policy = get_policy(self.policies, subscription.tier)
        now = self.clock()

        daily_used = await get_daily_text_count(self.session, user_id, now.date())
        trial_days_remaining = self._trial_days_remaining(subscription, now)

        return CreditBalance(
            user_id=user_id,
            tier=subscription.tier,
            total=subscription.credits_total,
            remaining=subscription.credits_remaining,
            used=subscription.credits_used,
            is_trial_active=bool(trial_days_remaining),
            trial_days_remaining=trial_days_remaining,
            trial_end_date=subscription.trial_end_date,
            period_end=subscription.current_period_end,
            daily_text_used=daily_used,
            daily_text_limit=policy.daily_limit(UsageKind.TEXT_CHAT),
        )

    async def get_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        """A user's credit transactions, newest first."""
        return await get_user_transactions(
            self.session,
            user_id,
            limit=limit,
            offset=offset,
            transaction_type=transaction_type,
        )
