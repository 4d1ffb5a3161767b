"""Tests for CreditService: trials, checks, charges, grants and refunds.

These tests run the service against a real database session so the atomic
balance queries are exercised end to end.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from kaiwa_billing.credits.tiers import SubscriptionTier, UsageKind
from kaiwa_billing.credits.types import CreditDenial, DiagnosticKind, TransactionType
from kaiwa_billing.credits.usage import DurationUsage, RealtimeUsage, TextTokenUsage
from kaiwa_billing.db import credits as credits_queries
from kaiwa_billing.db.credits import (
    deduct_credits,
    get_credit_balance,
    get_daily_text_count,
    get_subscription,
)
from kaiwa_billing.errors import SubscriptionNotFound
from tests.conftest import NOW

# 800 in / 200 out on gpt-4o-mini costs 3 credits
CHAT_TURN = TextTokenUsage("gpt-4o-mini", 800, 200)


class TestTrialSubscription:
    """Tests for first access of a new user."""

    @pytest.mark.asyncio
    async def test_new_user_gets_free_trial(self, credit_service, db_session):
        """Should create a free subscription with trial credits and a 14 day window."""
        subscription = await credit_service.get_or_create_subscription("new-user")

        assert subscription.tier == SubscriptionTier.FREE
        assert subscription.credits_remaining == 5000
        assert subscription.credits_total == 5000
        assert subscription.trial_start_date == NOW
        assert subscription.trial_end_date == NOW + timedelta(days=14)
        assert subscription.current_period_end == subscription.trial_end_date

    @pytest.mark.asyncio
    async def test_trial_grant_is_recorded(self, credit_service):
        """Should write one GRANT row for the trial credits."""
        await credit_service.get_or_create_subscription("new-user")

        history = await credit_service.get_history("new-user")

        assert len(history) == 1
        assert history[0].type == TransactionType.GRANT
        assert history[0].amount == 5000
        assert history[0].balance_after == 5000
        assert history[0].source == "trial"

    @pytest.mark.asyncio
    async def test_existing_subscription_is_returned(self, credit_service, subscription_factory):
        """Should not create a second subscription or grant."""
        existing = await subscription_factory("user-1", tier="pro", credits=16500)

        subscription = await credit_service.get_or_create_subscription("user-1")

        assert subscription.id == existing.id
        assert await credit_service.get_history("user-1") == []


class TestCheckCredits:
    """Tests for pre-flight checks."""

    @pytest.mark.asyncio
    async def test_free_text_allowed(self, credit_service):
        """Should allow a text message on a fresh trial."""
        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert check.allowed
        assert check.credits_required == 4
        assert check.credits_available == 5000
        assert check.is_trial_user
        assert check.trial_days_remaining == 14
        assert check.daily_remaining == 20
        assert check.reason is None

    @pytest.mark.asyncio
    async def test_string_usage_kind_accepted(self, credit_service):
        check = await credit_service.check_credits("user-1", "voice_standard", 90)
        assert check.usage_kind == UsageKind.VOICE_STANDARD
        assert check.credits_required == 200

    @pytest.mark.asyncio
    async def test_unknown_usage_kind_is_free(self, credit_service, db_session):
        """Should allow an unknown kind at zero cost and say why."""
        check = await credit_service.check_credits("user-1", "image_generation", 1)

        assert check.allowed
        assert check.usage_kind == "image_generation"
        assert check.credits_required == 0
        assert check.credits_available == 5000
        assert check.diagnostic.kind == DiagnosticKind.UNKNOWN_USAGE_KIND
        assert await get_credit_balance(db_session, "user-1") == 5000

    @pytest.mark.asyncio
    async def test_realtime_not_available_on_free(self, credit_service):
        """Should deny realtime on the free tier regardless of balance."""
        check = await credit_service.check_credits("user-1", UsageKind.REALTIME, 30)

        assert not check.allowed
        assert check.reason == CreditDenial.FEATURE_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_realtime_not_available_on_basic(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="basic", credits=6000)

        check = await credit_service.check_credits("user-1", UsageKind.REALTIME, 30)

        assert check.reason == CreditDenial.FEATURE_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_daily_limit_reached(self, credit_service, subscription_factory):
        """Should deny the 21st text message of the day on free."""
        await subscription_factory(
            "user-1", daily_text_count=20, daily_usage_date=NOW.date()
        )

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert not check.allowed
        assert check.reason == CreditDenial.DAILY_LIMIT_EXCEEDED
        assert check.daily_remaining == 0

    @pytest.mark.asyncio
    async def test_daily_limit_checked_before_balance(self, credit_service, subscription_factory):
        """Should report the daily cap even when credits are also gone."""
        await subscription_factory(
            "user-1", credits=0, daily_text_count=20, daily_usage_date=NOW.date()
        )

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert check.reason == CreditDenial.DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_daily_counter_from_yesterday_is_ignored(
        self, credit_service, subscription_factory
    ):
        await subscription_factory(
            "user-1",
            daily_text_count=20,
            daily_usage_date=(NOW - timedelta(days=1)).date(),
        )

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert check.allowed
        assert check.daily_remaining == 20

    @pytest.mark.asyncio
    async def test_unlimited_text_ignores_balance(self, credit_service, subscription_factory):
        """Should allow text on basic with an empty balance and require nothing."""
        await subscription_factory("user-1", tier="basic", credits=0)

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT, 50)

        assert check.allowed
        assert check.credits_required == 0
        assert not check.is_trial_user
        assert check.trial_days_remaining is None
        assert check.daily_remaining is None

    @pytest.mark.asyncio
    async def test_expired_trial(self, credit_service, subscription_factory):
        """Should deny voice after the trial ended, even with credits left."""
        await subscription_factory("user-1", trial_end_date=NOW - timedelta(days=1))

        check = await credit_service.check_credits("user-1", UsageKind.VOICE_STANDARD, 30)

        assert not check.allowed
        assert check.reason == CreditDenial.TRIAL_EXPIRED
        assert check.trial_days_remaining == 0

    @pytest.mark.asyncio
    async def test_trial_ending_exactly_now_is_expired(self, credit_service, subscription_factory):
        await subscription_factory("user-1", trial_end_date=NOW)

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert check.reason == CreditDenial.TRIAL_EXPIRED

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, credit_service, subscription_factory):
        """Should deny when the estimate is above the balance."""
        await subscription_factory("user-1", tier="pro", credits=50)

        check = await credit_service.check_credits("user-1", UsageKind.VOICE_STANDARD, 60)

        assert not check.allowed
        assert check.reason == CreditDenial.INSUFFICIENT_CREDITS
        assert check.credits_required == 100
        assert check.credits_available == 50
        assert "100" in check.message

    @pytest.mark.asyncio
    async def test_exact_balance_is_enough(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="pro", credits=700)

        check = await credit_service.check_credits("user-1", UsageKind.REALTIME, 90)

        assert check.allowed
        assert check.credits_required == 700

    @pytest.mark.asyncio
    async def test_check_never_changes_balance(self, credit_service, db_session):
        await credit_service.check_credits("user-1", UsageKind.VOICE_STANDARD, 600)
        assert await get_credit_balance(db_session, "user-1") == 5000


class TestDeductCreditsFromUsage:
    """Tests for billing measured usage."""

    @pytest.mark.asyncio
    async def test_deducts_computed_credits(self, credit_service, db_session):
        """Should charge the calculated cost and record a CHARGE row."""
        result = await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, reference_id="msg-1"
        )

        assert result.ok
        assert result.usage_kind == UsageKind.TEXT_CHAT
        assert result.credits_charged == 3
        assert result.balance_after == 4997
        assert await get_credit_balance(db_session, "user-1") == 4997

        charges = await credit_service.get_history(
            "user-1", transaction_type=TransactionType.CHARGE
        )
        assert len(charges) == 1
        charge = charges[0]
        assert charge.id == result.transaction_id
        assert charge.amount == -3
        assert charge.balance_after == 4997
        assert charge.reference_id == "msg-1"
        assert charge.usage_kind == "text_chat"
        assert charge.usd_cost == Decimal("0.00024")
        assert Decimal(charge.metadata_["usd_cost"]) == Decimal("0.00024")
        assert {k: Decimal(v) for k, v in charge.metadata_["breakdown"].items()} == {
            "input_tokens": Decimal("0.00012"),
            "output_tokens": Decimal("0.00012"),
        }

    @pytest.mark.asyncio
    async def test_text_usage_counts_toward_daily_cap(self, credit_service, db_session):
        await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)
        await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        assert await get_daily_text_count(db_session, "user-1", NOW.date()) == 2

    @pytest.mark.asyncio
    async def test_voice_usage_does_not_count_toward_daily_cap(self, credit_service, db_session):
        await credit_service.deduct_credits_from_usage("user-1", DurationUsage("whisper-1", 10))
        assert await get_daily_text_count(db_session, "user-1", NOW.date()) == 0

    @pytest.mark.asyncio
    async def test_daily_cap_after_twenty_messages(self, credit_service):
        """Should deny the next check once 20 messages were billed today."""
        for _ in range(20):
            await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        check = await credit_service.check_credits("user-1", UsageKind.TEXT_CHAT)

        assert check.reason == CreditDenial.DAILY_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_daily_counter_resets_next_day(self, credit_service, clock, db_session):
        await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)
        clock.advance(days=1)
        await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        assert await get_daily_text_count(db_session, "user-1", clock().date()) == 1

    @pytest.mark.asyncio
    async def test_usage_kind_inferred_from_models(self, credit_service):
        """Should bill a text + transcription interaction as voice."""
        result = await credit_service.deduct_credits_from_usage(
            "user-1", [CHAT_TURN, DurationUsage("whisper-1", 42)]
        )

        assert result.usage_kind == UsageKind.VOICE_STANDARD
        assert result.credits_charged == 3 + 42

    @pytest.mark.asyncio
    async def test_insufficient_balance_charges_nothing(
        self, credit_service, subscription_factory, db_session
    ):
        """Should refuse the charge and leave no CHARGE row."""
        await subscription_factory("user-1", credits=2)

        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 60)
        )

        assert not result.ok
        assert result.denial == CreditDenial.INSUFFICIENT_CREDITS
        assert result.credits_charged == 0
        assert result.usage.credits == 60
        assert result.balance_after == 2
        assert await get_credit_balance(db_session, "user-1") == 2
        assert await credit_service.get_history("user-1") == []

    @pytest.mark.asyncio
    async def test_force_deduct_clamps_at_zero(
        self, credit_service, subscription_factory, db_session
    ):
        """Should take what is left and record only that amount."""
        await subscription_factory("user-1", credits=2)

        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 60), force_deduct=True
        )

        assert result.ok
        assert result.credits_charged == 2
        assert result.balance_after == 0
        assert await get_credit_balance(db_session, "user-1") == 0

        (charge,) = await credit_service.get_history("user-1")
        assert charge.amount == -2
        assert charge.balance_after == 0

    @pytest.mark.asyncio
    async def test_force_deduct_records_what_was_taken_under_contention(
        self, credit_service, subscription_factory, db_session, monkeypatch
    ):
        """Should record only the credits left when another charge lands first."""
        await subscription_factory("user-1", credits=100)
        real_lock = credits_queries.lock_credit_balance
        charged_elsewhere = []

        async def lock_then_concurrent_charge(session, user_id):
            balance = await real_lock(session, user_id)
            if not charged_elsewhere:
                charged_elsewhere.append(await deduct_credits(session, user_id, 80))
            return balance

        monkeypatch.setattr(credits_queries, "lock_credit_balance", lock_then_concurrent_charge)

        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 50), force_deduct=True
        )

        assert charged_elsewhere == [20]
        assert result.credits_charged == 20
        assert result.balance_after == 0
        (charge,) = await credit_service.get_history("user-1")
        assert charge.amount == -20
        assert charge.balance_after == 0

    @pytest.mark.asyncio
    async def test_unknown_usage_kind_bills_zero(self, credit_service, db_session):
        """Should record a zero charge with a diagnostic instead of raising."""
        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 60), usage_kind="image_generation"
        )

        assert result.ok
        assert not result.unlimited
        assert result.usage_kind == "image_generation"
        assert result.credits_charged == 0
        assert result.balance_after == 5000
        assert [d.kind for d in result.usage.diagnostics] == [
            DiagnosticKind.UNKNOWN_USAGE_KIND
        ]
        assert await get_credit_balance(db_session, "user-1") == 5000
        assert await get_daily_text_count(db_session, "user-1", NOW.date()) == 0

        (charge,) = await credit_service.get_history(
            "user-1", transaction_type=TransactionType.CHARGE
        )
        assert charge.amount == 0
        assert charge.usage_kind == "image_generation"
        assert charge.metadata_["unknown_usage_kind"] is True

    @pytest.mark.asyncio
    async def test_unlimited_text_records_audit_row(
        self, credit_service, subscription_factory, db_session
    ):
        """Should keep the balance and log a zero-amount charge with the real cost."""
        await subscription_factory("user-1", tier="pro", credits=16500)

        result = await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        assert result.ok
        assert result.unlimited
        assert result.credits_charged == 0
        assert result.usage.credits == 3
        assert result.balance_after == 16500
        assert await get_credit_balance(db_session, "user-1") == 16500

        (charge,) = await credit_service.get_history("user-1")
        assert charge.amount == 0
        assert charge.usd_cost == Decimal("0.00024")
        assert charge.metadata_["unlimited"] is True

    @pytest.mark.asyncio
    async def test_force_deduct_bills_unlimited_kind(
        self, credit_service, subscription_factory, db_session
    ):
        await subscription_factory("user-1", tier="basic", credits=6000)

        result = await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, force_deduct=True
        )

        assert not result.unlimited
        assert result.credits_charged == 3
        assert await get_credit_balance(db_session, "user-1") == 5997

    @pytest.mark.asyncio
    async def test_realtime_usage(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="pro", credits=16500)

        result = await credit_service.deduct_credits_from_usage(
            "user-1",
            RealtimeUsage(
                "gpt-4o-realtime-preview",
                audio_input_tokens=27000,
                audio_output_tokens=27000,
            ),
        )

        assert result.usage_kind == UsageKind.REALTIME
        assert result.credits_charged == 1270
        assert result.balance_after == 16500 - 1270

    @pytest.mark.asyncio
    async def test_unknown_model_is_free(self, credit_service, db_session):
        """Should not charge for models without pricing."""
        result = await credit_service.deduct_credits_from_usage(
            "user-1", TextTokenUsage("gpt-99", 1000, 1000)
        )

        assert result.ok
        assert result.credits_charged == 0
        assert len(result.usage.diagnostics) == 1
        assert await get_credit_balance(db_session, "user-1") == 5000

    @pytest.mark.asyncio
    async def test_idempotency_key_prevents_double_charge(self, credit_service, db_session):
        """Should charge once and report the retry as a duplicate."""
        first = await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, idempotency_key="usage:msg-1"
        )
        second = await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, idempotency_key="usage:msg-1"
        )

        assert not first.duplicate
        assert second.duplicate
        assert second.transaction_id == first.transaction_id
        assert second.credits_charged == 3
        assert second.balance_after == 4997
        assert await get_credit_balance(db_session, "user-1") == 4997

    @pytest.mark.asyncio
    async def test_duplicate_of_unlimited_usage_is_reported_unlimited(
        self, credit_service, subscription_factory
    ):
        await subscription_factory("user-1", tier="pro", credits=16500)

        await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, idempotency_key="usage:msg-1"
        )
        retry = await credit_service.deduct_credits_from_usage(
            "user-1", CHAT_TURN, idempotency_key="usage:msg-1"
        )

        assert retry.duplicate
        assert retry.unlimited
        assert retry.credits_charged == 0

    @pytest.mark.asyncio
    async def test_new_user_is_billed_from_trial(self, credit_service, db_session):
        """Should create the trial on first charge."""
        await credit_service.deduct_credits_from_usage("brand-new", CHAT_TURN)

        subscription = await get_subscription(db_session, "brand-new")
        assert subscription.tier == SubscriptionTier.FREE
        assert subscription.credits_remaining == 4997


class TestGrants:
    """Tests for bonus credits and monthly grants."""

    @pytest.mark.asyncio
    async def test_add_bonus_credits(self, credit_service, subscription_factory):
        """Should raise both the balance and the lifetime total."""
        await subscription_factory("user-1", tier="pro", credits=100, credits_total=16500)

        transaction = await credit_service.add_bonus_credits(
            "user-1", 1000, "Promo", reference_id="PROMO", metadata={"campaign": "launch"}
        )

        assert transaction.type == TransactionType.BONUS
        assert transaction.amount == 1000
        assert transaction.balance_after == 1100
        assert transaction.reference_id == "PROMO"
        assert transaction.metadata_ == {"campaign": "launch"}

        balance = await credit_service.get_balance("user-1")
        assert balance.remaining == 1100
        assert balance.total == 17500

    @pytest.mark.asyncio
    async def test_negative_bonus_rejected(self, credit_service):
        with pytest.raises(ValueError):
            await credit_service.add_bonus_credits("user-1", -5, "Nope")

    @pytest.mark.asyncio
    async def test_add_bonus_trial_credits(self, credit_service):
        transaction = await credit_service.add_bonus_trial_credits("user-1", 500, "Welcome")

        assert transaction.source == "trial"
        assert transaction.balance_after == 5500

    @pytest.mark.asyncio
    async def test_trial_bonus_requires_free_tier(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="basic", credits=6000)

        with pytest.raises(ValueError):
            await credit_service.add_bonus_trial_credits("user-1", 500, "Welcome")

    @pytest.mark.asyncio
    async def test_grant_monthly_credits(self, credit_service, subscription_factory):
        """Should add the tier allowance and start a 30 day period."""
        await subscription_factory("user-1", tier="basic", credits=100)

        new_balance = await credit_service.grant_monthly_credits("user-1")

        assert new_balance == 6100
        balance = await credit_service.get_balance("user-1")
        assert balance.period_end == NOW + timedelta(days=30)

        (grant,) = await credit_service.get_history(
            "user-1", transaction_type=TransactionType.GRANT
        )
        assert grant.amount == 6000
        assert grant.source == "monthly"

    @pytest.mark.asyncio
    async def test_grant_monthly_credits_free_tier(self, credit_service, subscription_factory):
        await subscription_factory("user-1")

        with pytest.raises(ValueError):
            await credit_service.grant_monthly_credits("user-1")

    @pytest.mark.asyncio
    async def test_grant_monthly_credits_unknown_user(self, credit_service):
        with pytest.raises(SubscriptionNotFound):
            await credit_service.grant_monthly_credits("ghost")


class TestAdjustAndRefund:
    """Tests for manual corrections and refunds."""

    @pytest.mark.asyncio
    async def test_adjust_credits_up(self, credit_service, db_session):
        """Should raise the lifetime total along with the balance."""
        transaction = await credit_service.adjust_credits("user-1", 250, "Support goodwill")

        assert transaction.type == TransactionType.ADJUSTMENT
        assert transaction.source == "admin"
        assert transaction.amount == 250
        assert transaction.balance_after == 5250
        subscription = await get_subscription(db_session, "user-1")
        assert subscription.credits_total == 5250
        assert subscription.credits_remaining <= subscription.credits_total

    @pytest.mark.asyncio
    async def test_adjust_credits_down(self, credit_service, db_session):
        transaction = await credit_service.adjust_credits("user-1", -300, "Duplicate grant")

        assert transaction.amount == -300
        assert transaction.balance_after == 4700
        assert transaction.metadata_ == {}
        subscription = await get_subscription(db_session, "user-1")
        assert subscription.credits_total == 5000

    @pytest.mark.asyncio
    async def test_adjust_credits_floors_at_zero(self, credit_service, db_session):
        """Should never take the balance below 0 and record what was taken."""
        transaction = await credit_service.adjust_credits("user-1", -10_000, "Abuse")

        assert transaction.amount == -5000
        assert transaction.balance_after == 0
        assert transaction.metadata_ == {"requested": -10_000}
        assert await get_credit_balance(db_session, "user-1") == 0

    @pytest.mark.asyncio
    async def test_refund_restores_charge(self, credit_service, db_session):
        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 60)
        )

        refund = await credit_service.refund_transaction(
            result.transaction_id, reason="Transcription failed"
        )

        assert refund is not None
        assert refund.type == TransactionType.REFUND
        assert refund.amount == 60
        assert refund.balance_after == 5000
        assert refund.reference_id == str(result.transaction_id)
        assert refund.description == "Transcription failed"
        assert await get_credit_balance(db_session, "user-1") == 5000

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, credit_service, db_session):
        """Should return the first refund when called twice."""
        result = await credit_service.deduct_credits_from_usage(
            "user-1", DurationUsage("whisper-1", 60)
        )

        first = await credit_service.refund_transaction(result.transaction_id)
        second = await credit_service.refund_transaction(result.transaction_id)

        assert second.id == first.id
        assert await get_credit_balance(db_session, "user-1") == 5000
        refunds = await credit_service.get_history(
            "user-1", transaction_type=TransactionType.REFUND
        )
        assert len(refunds) == 1

    @pytest.mark.asyncio
    async def test_refund_unknown_transaction(self, credit_service):
        assert await credit_service.refund_transaction(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_refund_of_grant_is_rejected(self, credit_service):
        await credit_service.get_or_create_subscription("user-1")
        (grant,) = await credit_service.get_history("user-1")

        assert await credit_service.refund_transaction(grant.id) is None

    @pytest.mark.asyncio
    async def test_refund_of_zero_charge_is_skipped(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="pro", credits=16500)
        result = await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        assert await credit_service.refund_transaction(result.transaction_id) is None


class TestExtendTrial:
    """Tests for trial extensions."""

    @pytest.mark.asyncio
    async def test_extends_from_current_end(self, credit_service, subscription_factory):
        await subscription_factory("user-1", trial_end_date=NOW + timedelta(days=3))

        new_end = await credit_service.extend_trial("user-1", 7)

        assert new_end == NOW + timedelta(days=10)
        balance = await credit_service.get_balance("user-1")
        assert balance.trial_end_date == new_end
        assert balance.period_end == new_end

    @pytest.mark.asyncio
    async def test_expired_trial_extends_from_now(self, credit_service, subscription_factory):
        """Should give the full extension after the trial already ended."""
        await subscription_factory("user-1", trial_end_date=NOW - timedelta(days=5))

        new_end = await credit_service.extend_trial("user-1", 7)

        assert new_end == NOW + timedelta(days=7)
        check = await credit_service.check_credits("user-1", UsageKind.VOICE_STANDARD, 30)
        assert check.allowed

    @pytest.mark.asyncio
    async def test_extension_is_recorded(self, credit_service, subscription_factory):
        await subscription_factory("user-1")

        new_end = await credit_service.extend_trial("user-1", 7)

        (row,) = await credit_service.get_history("user-1")
        assert row.type == TransactionType.BONUS
        assert row.amount == 0
        assert row.metadata_ == {"trial_end_date": new_end.isoformat()}

    @pytest.mark.asyncio
    async def test_paid_tier_cannot_extend(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="pro", credits=16500)

        assert await credit_service.extend_trial("user-1", 7) is None

    @pytest.mark.asyncio
    async def test_non_positive_days_rejected(self, credit_service):
        with pytest.raises(ValueError):
            await credit_service.extend_trial("user-1", 0)


class TestQueries:
    """Tests for balance and history views."""

    @pytest.mark.asyncio
    async def test_balance_of_trial_user(self, credit_service):
        await credit_service.deduct_credits_from_usage("user-1", CHAT_TURN)

        balance = await credit_service.get_balance("user-1")

        assert balance.tier == SubscriptionTier.FREE
        assert balance.total == 5000
        assert balance.remaining == 4997
        assert balance.used == 3
        assert balance.is_trial_active
        assert balance.trial_days_remaining == 14
        assert balance.daily_text_used == 1
        assert balance.daily_text_limit == 20

    @pytest.mark.asyncio
    async def test_trial_days_round_up(self, credit_service, subscription_factory):
        await subscription_factory("user-1", trial_end_date=NOW + timedelta(hours=1))

        balance = await credit_service.get_balance("user-1")

        assert balance.trial_days_remaining == 1
        assert balance.is_trial_active

    @pytest.mark.asyncio
    async def test_balance_of_expired_trial(self, credit_service, subscription_factory):
        await subscription_factory("user-1", trial_end_date=NOW - timedelta(days=2))

        balance = await credit_service.get_balance("user-1")

        assert balance.trial_days_remaining == 0
        assert not balance.is_trial_active

    @pytest.mark.asyncio
    async def test_balance_of_paid_user(self, credit_service, subscription_factory):
        await subscription_factory("user-1", tier="pro", credits=16500)

        balance = await credit_service.get_balance("user-1")

        assert not balance.is_trial_active
        assert balance.trial_days_remaining is None
        assert balance.daily_text_limit is None

    @pytest.mark.asyncio
    async def test_history_paging_and_filter(self, credit_service):
        for _ in range(3):
            await credit_service.deduct_credits_from_usage(
                "user-1", DurationUsage("whisper-1", 6)
            )

        everything = await credit_service.get_history("user-1")
        charges = await credit_service.get_history(
            "user-1", transaction_type=TransactionType.CHARGE
        )
        page = await credit_service.get_history("user-1", limit=2)

        assert len(everything) == 4
        assert len(charges) == 3
        assert all(row.type == TransactionType.CHARGE for row in charges)
        assert len(page) == 2

    @pytest.mark.asyncio
    async def test_history_is_per_user(self, credit_service):
        await credit_service.get_or_create_subscription("user-1")
        await credit_service.get_or_create_subscription("user-2")

        history = await credit_service.get_history("user-1")

        assert {row.user_id for row in history} == {"user-1"}
