"""Public entry point of the billing engine.

``BillingEngine`` runs every operation in its own database transaction:
commit when the operation returns, rollback when it raises. Business
refusals (insufficient credits, invalid vouchers, ...) are returned as typed
results and still commit whatever the operation recorded, such as a daily
message count. Store failures roll back and surface as ``TransactionAborted``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING

import logfire
from sqlalchemy.exc import DBAPIError

from kaiwa_billing.config import Settings, settings
from kaiwa_billing.credits.calculator import UsageCalculator
from kaiwa_billing.credits.pricing import DEFAULT_PRICING, PricingRegistry
from kaiwa_billing.credits.service import CreditService
from kaiwa_billing.credits.tiers import (
    DEFAULT_ESTIMATE_RATES,
    DEFAULT_TIER_POLICIES,
    EstimateRates,
    SubscriptionTier,
    TierPolicyTable,
    UsageKind,
)
from kaiwa_billing.credits.types import (
    CreditBalance,
    CreditCheckResult,
    DeductionResult,
    TransactionType,
)
from kaiwa_billing.credits.usage import UsageEvent
from kaiwa_billing.db.session import DatabaseManager
from kaiwa_billing.errors import TransactionAborted
from kaiwa_billing.models import Base
from kaiwa_billing.models.base import utcnow
from kaiwa_billing.vouchers.service import VoucherService
from kaiwa_billing.vouchers.types import (
    RedemptionResult,
    RevocationResult,
    StackCheck,
    VoucherValidation,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from kaiwa_billing.models import CreditTransaction, VoucherRedemption


class BillingEngine:
    """Ledger and voucher API over one database.

    Usage:
        engine = BillingEngine(init_db_manager(settings.database_url))

        check = await engine.check_credits(user_id, UsageKind.TEXT_CHAT)
        if check.allowed:
            ...  # run the request, then
            await engine.deduct_credits_from_usage(
                user_id, usage_events, reference_id=message_id
            )
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        calculator: UsageCalculator | None = None,
        policies: TierPolicyTable = DEFAULT_TIER_POLICIES,
        estimates: EstimateRates = DEFAULT_ESTIMATE_RATES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.calculator = calculator or UsageCalculator(
            credit_usd_value=settings.credit_usd_value
        )
        self.policies = policies
        self.estimates = estimates
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: PricingRegistry = DEFAULT_PRICING,
        policies: TierPolicyTable = DEFAULT_TIER_POLICIES,
    ) -> BillingEngine:
        """Engine wired to the configured database and credit value."""
        db = DatabaseManager(settings.database_url, echo=settings.database_echo)
        calculator = UsageCalculator(registry, settings.credit_usd_value)
        return cls(db, calculator=calculator, policies=policies)

    async def create_schema(self) -> None:
        """Create missing tables (tests and local development; production uses migrations)."""
        await self.db.connect()
        async with self.db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # -------------------------------------------------------------------------
    # Units of work
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.session() as session:
                yield session
        except DBAPIError as exc:
            logfire.warn(
                "billing_transaction_aborted",
                operation=operation,
                error=str(exc.orig),
            )
            msg = f"{operation} was aborted by the database"
            raise TransactionAborted(msg) from exc

    def _credit_service(self, session: AsyncSession) -> CreditService:
        return CreditService(
            session,
            calculator=self.calculator,
            policies=self.policies,
            estimates=self.estimates,
            clock=self.clock,
        )

    def _voucher_service(self, session: AsyncSession) -> VoucherService:
        return VoucherService(
            session,
            credit_service=self._credit_service(session),
            clock=self.clock,
        )

    # -------------------------------------------------------------------------
    # Ledger API
    # -------------------------------------------------------------------------

    async def check_credits(
        self,
        user_id: str,
        usage_kind: UsageKind | str,
        estimated_units: int | float = 1,
    ) -> CreditCheckResult:
        async with self._transaction("check_credits") as session:
            return await self._credit_service(session).check_credits(
                user_id, usage_kind, estimated_units
            )

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
        async with self._transaction("deduct_credits_from_usage") as session:
            return await self._credit_service(session).deduct_credits_from_usage(
                user_id,
                usage,
                reference_id=reference_id,
                source=source,
                description=description,
                force_deduct=force_deduct,
                usage_kind=usage_kind,
                idempotency_key=idempotency_key,
            )

    async def get_balance(self, user_id: str) -> CreditBalance:
        async with self._transaction("get_balance") as session:
            return await self._credit_service(session).get_balance(user_id)

    async def get_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        transaction_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        async with self._transaction("get_history") as session:
            return await self._credit_service(session).get_history(
                user_id, limit=limit, offset=offset, transaction_type=transaction_type
            )

    async def grant_monthly_credits(self, user_id: str) -> int:
        async with self._transaction("grant_monthly_credits") as session:
            return await self._credit_service(session).grant_monthly_credits(user_id)

    async def refund_transaction(
        self,
        transaction_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> CreditTransaction | None:
        async with self._transaction("refund_transaction") as session:
            return await self._credit_service(session).refund_transaction(
                transaction_id, reason=reason
            )

    # -------------------------------------------------------------------------
    # Voucher API
    # -------------------------------------------------------------------------

    async def validate_voucher(
        self,
        code: str,
        user_id: str,
        tier: SubscriptionTier | str,
        original_amount: int | None = None,
        duration_months: int | None = None,
    ) -> VoucherValidation:
        async with self._transaction("validate_voucher") as session:
            return await self._voucher_service(session).validate_voucher(
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
        async with self._transaction("apply_voucher") as session:
            return await self._voucher_service(session).apply_voucher(
                code, user_id, tier, original_amount, subscription_id, duration_months
            )

    async def redeem_voucher(self, code: str, user_id: str) -> RedemptionResult:
        async with self._transaction("redeem_voucher") as session:
            return await self._voucher_service(session).redeem_voucher(code, user_id)

    async def revoke_redemption(self, redemption_id: uuid.UUID) -> RevocationResult:
        async with self._transaction("revoke_redemption") as session:
            return await self._voucher_service(session).revoke_redemption(redemption_id)

    async def can_stack_vouchers(self, codes: Sequence[str]) -> StackCheck:
        async with self._transaction("can_stack_vouchers") as session:
            return await self._voucher_service(session).can_stack_vouchers(codes)

    async def get_user_redemptions(self, user_id: str) -> list[VoucherRedemption]:
        async with self._transaction("get_user_redemptions") as session:
            return await self._voucher_service(session).get_user_redemptions(user_id)
