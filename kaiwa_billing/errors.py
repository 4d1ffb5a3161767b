"""Exceptions raised by the billing engine.

Business outcomes (insufficient credits, invalid vouchers, ...) are returned
as typed results. Only store failures and lookups of missing records raise.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for billing engine errors."""


class SubscriptionNotFound(BillingError):
    """No subscription row exists for the user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Subscription for user {user_id} not found")
        self.user_id = user_id


class TransactionAborted(BillingError):
    """The store aborted the unit of work. Nothing was written; retry is safe."""

    retryable = True


class VoucherEffectFailed(BillingError):
    """A voucher's effect could not be applied after its use was claimed.

    Raised so the caller's unit of work rolls back the claimed use and the
    redemption row together.
    """
