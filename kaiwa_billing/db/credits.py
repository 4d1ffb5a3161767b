"""Credit-specific database queries.

Balance and counter changes are single conditional ``UPDATE ... RETURNING``
statements, so concurrent requests can never both spend the same credits:
the database evaluates the condition and applies the change in one step.
Clamped deductions need the balance they take from, so they lock the row
first.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

import logfire
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kaiwa_billing.errors import SubscriptionNotFound
from kaiwa_billing.models import CreditTransaction, Subscription

# Statements below return the new values; loaded objects are refreshed explicitly
_NO_SYNC = {"synchronize_session": False}


# -----------------------------------------------------------------------------
# Subscription Queries
# -----------------------------------------------------------------------------


async def get_subscription(session: AsyncSession, user_id: str) -> Subscription | None:
    """Get a user's subscription with fresh column values."""
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_subscription(
    session: AsyncSession,
    user_id: str,
    tier: str,
    *,
    credits: int = 0,
    trial_start_date: datetime | None = None,
    trial_end_date: datetime | None = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> Subscription:
    """Insert a new subscription row."""
    with logfire.span("db.create_subscription", user_id=user_id, tier=tier):
        subscription = Subscription(
            user_id=user_id,
            tier=tier,
            status="active",
            credits_remaining=credits,
            credits_total=credits,
            daily_text_count=0,
            trial_start_date=trial_start_date,
            trial_end_date=trial_end_date,
            current_period_start=period_start,
            current_period_end=period_end,
        )
        session.add(subscription)
        await session.flush()
        return subscription


async def get_credit_balance(session: AsyncSession, user_id: str) -> int | None:
    """Get a user's remaining credits, None if there is no subscription."""
    result = await session.execute(
        select(Subscription.credits_remaining).where(Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


# -----------------------------------------------------------------------------
# Balance Mutations (atomic)
# -----------------------------------------------------------------------------


async def lock_credit_balance(session: AsyncSession, user_id: str) -> int | None:
    """Get a user's remaining credits and lock the row until the transaction ends."""
    result = await session.execute(
        select(Subscription.credits_remaining)
        .where(Subscription.user_id == user_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def deduct_credits(session: AsyncSession, user_id: str, amount: int) -> int | None:
    """Subtract credits only when the balance covers ``amount``.

    Returns:
        New balance, or None if the balance was insufficient (or the user
        has no subscription).
    """
    if amount < 0:
        msg = f"Deduction must be non-negative, got {amount}"
        raise ValueError(msg)

    with logfire.span("db.deduct_credits", user_id=user_id, amount=amount):
        result = await session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.credits_remaining >= amount,
            )
            .values(credits_remaining=Subscription.credits_remaining - amount)
            .returning(Subscription.credits_remaining)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()


async def deduct_credits_clamped(
    session: AsyncSession,
    user_id: str,
    amount: int,
) -> tuple[int, int]:
    """Subtract up to ``amount`` credits, flooring the balance at 0.

    Uses FOR UPDATE to lock the row while the charge is computed. The update
    also requires the balance it was computed from, and is retried when the
    balance moved in between (SQLite does not lock on SELECT).

    Returns:
        Credits actually taken and the new balance.

    Raises:
        SubscriptionNotFound: If the user has no subscription.
    """
    if amount < 0:
        msg = f"Deduction must be non-negative, got {amount}"
        raise ValueError(msg)

    with logfire.span("db.deduct_credits_clamped", user_id=user_id, amount=amount):
        while True:
            current = await lock_credit_balance(session, user_id)
            if current is None:
                raise SubscriptionNotFound(user_id)
            taken = min(amount, current)

            result = await session.execute(
                update(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.credits_remaining == current,
                )
                .values(credits_remaining=current - taken)
                .returning(Subscription.credits_remaining)
                .execution_options(**_NO_SYNC)
            )
            new_balance = result.scalar_one_or_none()
            if new_balance is not None:
                return taken, new_balance


async def add_credits(session: AsyncSession, user_id: str, amount: int) -> int:
    """Add credits to both the remaining balance and the lifetime total.

    Returns:
        New balance after the operation.

    Raises:
        SubscriptionNotFound: If the user has no subscription.
    """
    if amount < 0:
        msg = f"Use deduct_credits_clamped for negative amounts, got {amount}"
        raise ValueError(msg)

    with logfire.span("db.add_credits", user_id=user_id, amount=amount):
        result = await session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(
                credits_remaining=Subscription.credits_remaining + amount,
                credits_total=Subscription.credits_total + amount,
            )
            .returning(Subscription.credits_remaining)
            .execution_options(**_NO_SYNC)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise SubscriptionNotFound(user_id)
        return new_balance


async def restore_credits(session: AsyncSession, user_id: str, amount: int) -> int:
    """Give spent credits back to the balance, leaving the lifetime total as is.

    Raises:
        SubscriptionNotFound: If the user has no subscription.
    """
    if amount < 0:
        msg = f"Restored amount must be non-negative, got {amount}"
        raise ValueError(msg)

    with logfire.span("db.restore_credits", user_id=user_id, amount=amount):
        result = await session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(credits_remaining=Subscription.credits_remaining + amount)
            .returning(Subscription.credits_remaining)
            .execution_options(**_NO_SYNC)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise SubscriptionNotFound(user_id)
        return new_balance


async def start_billing_period(
    session: AsyncSession,
    user_id: str,
    amount: int,
    period_start: datetime,
    period_end: datetime,
) -> int:
    """Grant a period's allowance and move the billing period forward.

    Returns:
        New balance after the grant.
    """
    with logfire.span("db.start_billing_period", user_id=user_id, amount=amount):
        result = await session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(
                credits_remaining=Subscription.credits_remaining + amount,
                credits_total=Subscription.credits_total + amount,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            .returning(Subscription.credits_remaining)
            .execution_options(**_NO_SYNC)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise SubscriptionNotFound(user_id)
        return new_balance


async def extend_trial_end(
    session: AsyncSession,
    user_id: str,
    new_end: datetime,
) -> bool:
    """Move a free-tier trial end date and reactivate the subscription.

    Returns:
        False if the user is not on the free tier anymore.
    """
    with logfire.span("db.extend_trial_end", user_id=user_id, new_end=str(new_end)):
        result = await session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id, Subscription.tier == "free")
            .values(
                trial_end_date=new_end,
                current_period_end=new_end,
                status="active",
            )
            .returning(Subscription.id)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none() is not None


# -----------------------------------------------------------------------------
# Daily Usage Tracking
# -----------------------------------------------------------------------------


async def get_daily_text_count(session: AsyncSession, user_id: str, today: date) -> int:
    """Text messages counted for ``today`` (0 when the counter is from another day)."""
    result = await session.execute(
        select(Subscription.daily_text_count, Subscription.daily_usage_date).where(
            Subscription.user_id == user_id
        )
    )
    row = result.one_or_none()
    if row is None or row.daily_usage_date != today:
        return 0
    return row.daily_text_count


async def increment_daily_text_count(session: AsyncSession, user_id: str, today: date) -> int:
    """Count one text message for ``today`` atomically.

    The counter restarts at 1 on the first message of a new day.

    Returns:
        Messages counted today, including this one.
    """
    with logfire.span("db.increment_daily_text_count", user_id=user_id, date=str(today)):
        result = await session.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id)
            .values(
                daily_text_count=case(
                    (
                        Subscription.daily_usage_date == today,
                        Subscription.daily_text_count + 1,
                    ),
                    else_=1,
                ),
                daily_usage_date=today,
            )
            .returning(Subscription.daily_text_count)
            .execution_options(**_NO_SYNC)
        )
        count = result.scalar_one_or_none()
        if count is None:
            raise SubscriptionNotFound(user_id)
        return count


# -----------------------------------------------------------------------------
# Transaction Log
# -----------------------------------------------------------------------------


async def record_transaction(
    session: AsyncSession,
    user_id: str,
    transaction_type: str,
    amount: int,
    balance_after: int,
    *,
    reference_id: str | None = None,
    source: str | None = None,
    description: str | None = None,
    usage_kind: str | None = None,
    usd_cost: Decimal | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> CreditTransaction:
    """Append a row to the credit transaction log."""
    transaction = CreditTransaction(
        user_id=user_id,
        type=transaction_type,
        amount=amount,
        balance_after=balance_after,
        reference_id=reference_id,
        source=source,
        description=description,
        usage_kind=usage_kind,
        usd_cost=usd_cost,
        idempotency_key=idempotency_key,
        metadata_=metadata or {},
    )
    session.add(transaction)
    await session.flush()
    return transaction


async def get_transaction(
    session: AsyncSession, transaction_id: uuid.UUID
) -> CreditTransaction | None:
    return await session.get(CreditTransaction, transaction_id)


async def get_transaction_by_idempotency_key(
    session: AsyncSession,
    idempotency_key: str,
) -> CreditTransaction | None:
    """Check if a transaction with this key already exists."""
    result = await session.execute(
        select(CreditTransaction).where(
            CreditTransaction.idempotency_key == idempotency_key
        )
    )
    return result.scalar_one_or_none()


async def get_user_transactions(
    session: AsyncSession,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    transaction_type: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> list[CreditTransaction]:
    """Get a user's transactions, newest first."""
    query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if transaction_type:
        query = query.where(CreditTransaction.type == transaction_type)
    if since:
        query = query.where(CreditTransaction.created_at >= since)
    if until:
        query = query.where(CreditTransaction.created_at <= until)

    result = await session.execute(
        query.order_by(CreditTransaction.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all())
