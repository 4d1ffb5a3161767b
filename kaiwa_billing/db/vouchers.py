"""Voucher-specific database queries.

Use-count changes are conditional ``UPDATE ... RETURNING`` statements, so the
``max_uses`` cap holds when many users redeem the last use of a voucher at
once: exactly one of them gets a row back.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

import logfire
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from kaiwa_billing.models import Voucher, VoucherRedemption

APPLIED = "applied"
REVOKED = "revoked"

_NO_SYNC = {"synchronize_session": False}


def normalize_code(code: str) -> str:
    return code.strip().upper()


# -----------------------------------------------------------------------------
# Voucher Queries
# -----------------------------------------------------------------------------


async def get_voucher_by_code(session: AsyncSession, code: str) -> Voucher | None:
    """Get a voucher by code (case and surrounding whitespace ignored)."""
    result = await session.execute(
        select(Voucher)
        .where(Voucher.code == normalize_code(code))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_vouchers_by_codes(session: AsyncSession, codes: Iterable[str]) -> list[Voucher]:
    """Get the vouchers for a list of codes. Unknown codes are skipped."""
    normalized = [normalize_code(code) for code in codes]
    if not normalized:
        return []
    result = await session.execute(select(Voucher).where(Voucher.code.in_(normalized)))
    by_code = {voucher.code: voucher for voucher in result.scalars().all()}
    # Keep the caller's order
    return [by_code[code] for code in dict.fromkeys(normalized) if code in by_code]


async def claim_voucher_use(session: AsyncSession, voucher_id: uuid.UUID) -> int | None:
    """Take one use of a voucher if its cap allows it.

    Returns:
        The new use count, or None if the voucher is inactive or its
        ``max_uses`` was reached (possibly by a concurrent redemption).
    """
    with logfire.span("db.claim_voucher_use", voucher_id=str(voucher_id)):
        result = await session.execute(
            update(Voucher)
            .where(
                Voucher.id == voucher_id,
                Voucher.is_active.is_(True),
                or_(Voucher.max_uses.is_(None), Voucher.current_uses < Voucher.max_uses),
            )
            .values(current_uses=Voucher.current_uses + 1)
            .returning(Voucher.current_uses)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()


async def release_voucher_use(session: AsyncSession, voucher_id: uuid.UUID) -> int | None:
    """Give back one use of a voucher, never going below zero.

    Returns:
        The new use count, or None if the count was already zero.
    """
    with logfire.span("db.release_voucher_use", voucher_id=str(voucher_id)):
        result = await session.execute(
            update(Voucher)
            .where(Voucher.id == voucher_id, Voucher.current_uses > 0)
            .values(current_uses=Voucher.current_uses - 1)
            .returning(Voucher.current_uses)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()


# -----------------------------------------------------------------------------
# Redemption Queries
# -----------------------------------------------------------------------------


async def count_user_redemptions(
    session: AsyncSession,
    voucher_id: uuid.UUID,
    user_id: str,
) -> int:
    """APPLIED redemptions of one voucher by one user."""
    result = await session.execute(
        select(func.count())
        .select_from(VoucherRedemption)
        .where(
            VoucherRedemption.voucher_id == voucher_id,
            VoucherRedemption.user_id == user_id,
            VoucherRedemption.status == APPLIED,
        )
    )
    return result.scalar_one()


async def count_all_user_redemptions(session: AsyncSession, user_id: str) -> int:
    """Redemptions of any voucher by a user, revoked ones included."""
    result = await session.execute(
        select(func.count())
        .select_from(VoucherRedemption)
        .where(VoucherRedemption.user_id == user_id)
    )
    return result.scalar_one()


async def has_other_exclusive_redemption(
    session: AsyncSession,
    user_id: str,
    exclude_voucher_id: uuid.UUID,
) -> bool:
    """Whether the user holds an APPLIED redemption of another exclusive voucher."""
    result = await session.execute(
        select(VoucherRedemption.id)
        .join(Voucher, VoucherRedemption.voucher_id == Voucher.id)
        .where(
            VoucherRedemption.user_id == user_id,
            VoucherRedemption.status == APPLIED,
            VoucherRedemption.voucher_id != exclude_voucher_id,
            Voucher.is_exclusive.is_(True),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def create_redemption(
    session: AsyncSession,
    voucher: Voucher,
    user_id: str,
    *,
    original_amount: int,
    final_amount: int,
    subscription_id: str | None = None,
) -> VoucherRedemption:
    """Insert an APPLIED redemption with a snapshot of the voucher terms."""
    with logfire.span("db.create_redemption", voucher_code=voucher.code, user_id=user_id):
        redemption = VoucherRedemption(
            voucher_id=voucher.id,
            user_id=user_id,
            subscription_id=subscription_id,
            discount_type=voucher.type,
            discount_value=voucher.value,
            original_amount=original_amount,
            final_amount=final_amount,
            status=APPLIED,
        )
        session.add(redemption)
        await session.flush()
        return redemption


async def get_redemption(
    session: AsyncSession, redemption_id: uuid.UUID
) -> VoucherRedemption | None:
    result = await session.execute(
        select(VoucherRedemption)
        .where(VoucherRedemption.id == redemption_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_redemption_revoked(
    session: AsyncSession, redemption_id: uuid.UUID
) -> uuid.UUID | None:
    """Move a redemption from APPLIED to REVOKED.

    Returns:
        The redemption's voucher id, or None if it was not APPLIED (missing
        or already revoked by a concurrent call).
    """
    with logfire.span("db.mark_redemption_revoked", redemption_id=str(redemption_id)):
        result = await session.execute(
            update(VoucherRedemption)
            .where(
                VoucherRedemption.id == redemption_id,
                VoucherRedemption.status == APPLIED,
            )
            .values(status=REVOKED)
            .returning(VoucherRedemption.voucher_id)
            .execution_options(**_NO_SYNC)
        )
        return result.scalar_one_or_none()


async def get_user_redemptions(
    session: AsyncSession,
    user_id: str,
) -> list[VoucherRedemption]:
    """A user's redemptions with their vouchers, newest first."""
    result = await session.execute(
        select(VoucherRedemption)
        .where(VoucherRedemption.user_id == user_id)
        .options(selectinload(VoucherRedemption.voucher))
        .order_by(VoucherRedemption.created_at.desc())
    )
    return list(result.scalars().all())
