"""SQLAlchemy models for the billing engine."""

from kaiwa_billing.models.base import Base, TimestampMixin
from kaiwa_billing.models.credit_transaction import CreditTransaction
from kaiwa_billing.models.subscription import Subscription
from kaiwa_billing.models.voucher import Voucher, VoucherRedemption

__all__ = [
    "Base",
    "TimestampMixin",
    "Subscription",
    "CreditTransaction",
    "Voucher",
    "VoucherRedemption",
]
