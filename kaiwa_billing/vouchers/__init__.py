"""Promotional vouchers.

Provides:
- Validator with a fixed, ordered set of checks
- Discount calculator and preview text
- Voucher service that applies, redeems and revokes vouchers
- Types for voucher operations
"""

from kaiwa_billing.vouchers.discount import calculate_discount, describe_discount
from kaiwa_billing.vouchers.service import DIRECT_REDEEM_TYPES, VoucherService
from kaiwa_billing.vouchers.types import (
    DiscountPreview,
    DiscountResult,
    RedemptionResult,
    RedemptionStatus,
    RevocationResult,
    StackCheck,
    VoucherError,
    VoucherType,
    VoucherValidation,
)
from kaiwa_billing.vouchers.validator import VoucherValidator

__all__ = [
    # Discounts
    "calculate_discount",
    "describe_discount",
    # Services
    "VoucherValidator",
    "VoucherService",
    "DIRECT_REDEEM_TYPES",
    # Types
    "VoucherType",
    "RedemptionStatus",
    "VoucherError",
    "DiscountPreview",
    "DiscountResult",
    "VoucherValidation",
    "RedemptionResult",
    "RevocationResult",
    "StackCheck",
]
