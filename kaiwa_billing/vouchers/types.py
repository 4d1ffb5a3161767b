"""Types for voucher operations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from kaiwa_billing.models import Voucher, VoucherRedemption


class VoucherType(StrEnum):
    PERCENTAGE = "percentage"  # value = percent off
    FIXED_AMOUNT = "fixed_amount"  # value = currency amount off
    BONUS_CREDITS = "bonus_credits"  # value = credits granted
    TRIAL_EXTENSION = "trial_extension"  # value = extra trial days
    TIER_UPGRADE = "tier_upgrade"  # recorded only, upgrade handled by checkout


class RedemptionStatus(StrEnum):
    APPLIED = "applied"
    REVOKED = "revoked"


class VoucherError(StrEnum):
    """Why a voucher operation did not go through.

    The first nine are validation failures, in the order they are checked.
    """

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    DURATION_NOT_ALLOWED = "duration_not_allowed"
    MAX_USES_REACHED = "max_uses_reached"
    ALREADY_USED_BY_USER = "already_used_by_user"
    NOT_ELIGIBLE = "not_eligible"
    TIER_NOT_APPLICABLE = "tier_not_applicable"

    STACK_CONFLICT = "stack_conflict"
    EFFECT_NOT_APPLICABLE = "effect_not_applicable"
    DIRECT_REDEEM_NOT_ALLOWED = "direct_redeem_not_allowed"
    REDEMPTION_NOT_FOUND = "redemption_not_found"
    ALREADY_REVOKED = "already_revoked"


@dataclass(frozen=True, slots=True)
class DiscountPreview:
    type: VoucherType
    value: int
    description: str


@dataclass(frozen=True, slots=True)
class DiscountResult:
    """Monetary effect and side effects of one voucher on one amount."""

    discount_amount: int
    final_amount: int
    bonus_credits: int | None = None
    trial_extension_days: int | None = None


@dataclass(frozen=True, slots=True)
class VoucherValidation:
    valid: bool
    voucher: Voucher | None = None
    error: VoucherError | None = None
    message: str | None = None
    preview: DiscountPreview | None = None


@dataclass(frozen=True, slots=True)
class RedemptionResult:
    success: bool
    redemption: VoucherRedemption | None = None
    discount: DiscountResult | None = None
    error: VoucherError | None = None
    message: str | None = None
    new_trial_end: datetime | None = None


@dataclass(frozen=True, slots=True)
class RevocationResult:
    success: bool
    redemption_id: uuid.UUID
    error: VoucherError | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class StackCheck:
    can_stack: bool
    conflicting_code: str | None = None
    error: VoucherError | None = None
    reason: str | None = None
