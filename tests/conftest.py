"""Test configuration and reusable fixtures for the billing engine test suite.

Database tests run against ``TEST_DATABASE_URL`` when it is set (use a
throwaway PostgreSQL database) and against a temporary SQLite file through
aiosqlite otherwise. Every test gets a freshly created schema.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set up test environment variables before any imports
os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")
os.environ.setdefault("ENVIRONMENT", "dev")

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from kaiwa_billing.db.session import DatabaseManager
    from kaiwa_billing.models import Subscription, Voucher


# Fixed "now" for every time-dependent test
NOW = datetime(2025, 11, 20, 9, 30, tzinfo=UTC)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL (SQLite file when no server is configured)."""
    return os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest_asyncio.fixture
async def db_engine(database_url: str):
    """Create a database engine with a fresh schema for each test."""
    from kaiwa_billing.models import Base

    engine = create_async_engine(database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession]:
    """Provide a database session that is rolled back after the test."""
    async_session = async_sessionmaker(
        db_engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def db_manager(database_url: str, db_engine) -> AsyncGenerator[DatabaseManager]:
    """DatabaseManager over the test schema, for tests that commit."""
    from kaiwa_billing.db.session import DatabaseManager

    manager = DatabaseManager(database_url)
    await manager.connect()
    yield manager
    await manager.disconnect()


# =============================================================================
# SERVICES
# =============================================================================


@pytest.fixture
def credit_service(db_session: AsyncSession, clock: FrozenClock):
    from kaiwa_billing.credits.service import CreditService

    return CreditService(db_session, clock=clock)


@pytest.fixture
def voucher_service(db_session: AsyncSession, credit_service, clock: FrozenClock):
    from kaiwa_billing.vouchers.service import VoucherService

    return VoucherService(db_session, credit_service=credit_service, clock=clock)


# =============================================================================
# MODEL FACTORIES - Create real database objects
# =============================================================================


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating Subscription rows directly.

    Usage:
        async def test_pro(subscription_factory):
            sub = await subscription_factory("user-1", tier="pro", credits=16500)
    """
    from kaiwa_billing.models import Subscription as SubscriptionModel

    async def _create(
        user_id: str = "user-1",
        *,
        tier: str = "free",
        credits: int = 5000,
        trial_end_date: datetime | None = None,
        **kwargs: Any,
    ) -> Subscription:
        credits_total = kwargs.pop("credits_total", credits)
        if tier == "free" and trial_end_date is None:
            trial_end_date = NOW + timedelta(days=14)
        subscription = SubscriptionModel(
            user_id=user_id,
            tier=tier,
            credits_remaining=credits,
            credits_total=credits_total,
            trial_start_date=NOW - timedelta(days=1) if tier == "free" else None,
            trial_end_date=trial_end_date,
            current_period_start=NOW - timedelta(days=1),
            current_period_end=trial_end_date or NOW + timedelta(days=29),
            **kwargs,
        )
        db_session.add(subscription)
        await db_session.flush()
        return subscription

    return _create


@pytest.fixture
def voucher_factory(db_session: AsyncSession):
    """Factory for creating Voucher rows.

    Usage:
        async def test_voucher(voucher_factory):
            voucher = await voucher_factory("HEMAT20", type="percentage", value=20)
    """
    from kaiwa_billing.models import Voucher as VoucherModel

    async def _create(
        code: str = "WELCOME",
        *,
        type: str = "percentage",
        value: int = 20,
        **kwargs: Any,
    ) -> Voucher:
        fields: dict[str, Any] = {
            "start_date": NOW - timedelta(days=30),
            "end_date": None,
            "max_uses": None,
            "uses_per_user": 1,
            "current_uses": 0,
            "applicable_tiers": [],
            "allowed_durations_months": None,
            "new_users_only": False,
            "is_stackable": False,
            "is_exclusive": False,
            "is_active": True,
        }
        fields.update(kwargs)
        voucher = VoucherModel(code=code, type=type, value=value, **fields)
        db_session.add(voucher)
        await db_session.flush()
        return voucher

    return _create
