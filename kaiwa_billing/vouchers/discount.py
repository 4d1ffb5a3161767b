"""Discount arithmetic and preview text for vouchers.

Amounts are whole Rupiah. Percentages round half up, so a 15% voucher on
Rp 49.999 saves Rp 7.500.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from kaiwa_billing.vouchers.types import DiscountPreview, DiscountResult, VoucherType

if TYPE_CHECKING:
    from kaiwa_billing.models import Voucher


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(amount: int) -> str:
    """Indonesian thousands grouping: 1500000 -> ``1.500.000``."""
    return f"{amount:,}".replace(",", ".")


def calculate_discount(voucher: Voucher, original_amount: int) -> DiscountResult:
    """Discount a voucher gives on ``original_amount``.

    Raises:
        ValueError: If the amount is negative.
    """
    if original_amount < 0:
        msg = f"Original amount must be non-negative, got {original_amount}"
        raise ValueError(msg)

    match VoucherType(voucher.type):
        case VoucherType.PERCENTAGE:
            discount = round_half_up(Decimal(original_amount) * voucher.value / 100)
            discount = min(discount, original_amount)
            return DiscountResult(discount, original_amount - discount)
        case VoucherType.FIXED_AMOUNT:
            discount = min(voucher.value, original_amount)
            return DiscountResult(discount, original_amount - discount)
        case VoucherType.BONUS_CREDITS:
            return DiscountResult(0, original_amount, bonus_credits=voucher.value)
        case VoucherType.TRIAL_EXTENSION:
            return DiscountResult(0, original_amount, trial_extension_days=voucher.value)
        case VoucherType.TIER_UPGRADE:
            # Upgrade itself is applied by checkout
            return DiscountResult(0, original_amount)


def describe_discount(
    voucher: Voucher,
    original_amount: int | None = None,
    currency_label: str = "Rp",
) -> DiscountPreview:
    """Human readable summary of what a voucher gives."""
    voucher_type = VoucherType(voucher.type)
    match voucher_type:
        case VoucherType.PERCENTAGE:
            description = f"{voucher.value}% off"
            if original_amount:
                savings = calculate_discount(voucher, original_amount).discount_amount
                description += f" (Save {currency_label} {format_amount(savings)})"
        case VoucherType.FIXED_AMOUNT:
            description = f"{currency_label} {format_amount(voucher.value)} off"
        case VoucherType.BONUS_CREDITS:
            description = f"{format_amount(voucher.value)} bonus credits"
        case VoucherType.TRIAL_EXTENSION:
            description = f"{voucher.value} extra trial days"
        case VoucherType.TIER_UPGRADE:
            description = "Temporary tier upgrade"

    return DiscountPreview(type=voucher_type, value=voucher.value, description=description)
