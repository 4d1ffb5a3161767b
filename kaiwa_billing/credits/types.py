"""Types for credit operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from kaiwa_billing.credits.tiers import UsageKind


class TransactionType(StrEnum):
    """Types of credit transactions for audit trail."""

    CHARGE = "charge"  # Metered AI usage
    BONUS = "bonus"  # Promotional credits (vouchers)
    REFUND = "refund"  # Compensation for an earlier charge
    GRANT = "grant"  # Trial or monthly allowance
    ADJUSTMENT = "adjustment"  # Manual correction by support


class DiagnosticKind(StrEnum):
    UNKNOWN_MODEL = "unknown_model"
    USAGE_KIND_MISMATCH = "usage_kind_mismatch"
    UNKNOWN_USAGE_KIND = "unknown_usage_kind"


@dataclass(frozen=True, slots=True)
class PricingDiagnostic:
    """Why (part of) a usage event was billed at zero."""

    kind: DiagnosticKind
    model_id: str | None  # None when the usage kind itself is unknown
    message: str


@dataclass(frozen=True, slots=True)
class CreditResult:
    """Credits and USD cost of one usage event or an aggregated session."""

    credits: int
    usd_cost: Decimal
    breakdown: dict[str, Decimal] = field(default_factory=dict)
    diagnostics: tuple[PricingDiagnostic, ...] = ()

    @property
    def is_free(self) -> bool:
        return self.credits == 0

    @classmethod
    def zero(cls, *diagnostics: PricingDiagnostic) -> CreditResult:
        return cls(credits=0, usd_cost=Decimal(0), breakdown={}, diagnostics=diagnostics)


class CreditDenial(StrEnum):
    """Why a usage request was refused."""

    INSUFFICIENT_CREDITS = "insufficient_credits"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    TRIAL_EXPIRED = "trial_expired"
    FEATURE_NOT_AVAILABLE = "feature_not_available"


@dataclass(frozen=True, slots=True)
class CreditCheckResult:
    """Result of checking credit availability before a request runs."""

    allowed: bool
    usage_kind: UsageKind | str  # Raw value when it is not a known kind
    credits_required: int
    credits_available: int
    is_trial_user: bool = False
    trial_days_remaining: int | None = None
    reason: CreditDenial | None = None
    message: str | None = None
    daily_remaining: int | None = None  # Messages left today, None when uncapped
    diagnostic: PricingDiagnostic | None = None


@dataclass(frozen=True, slots=True)
class DeductionResult:
    """Outcome of billing measured usage against a subscription.

    ``usage`` is always the computed cost, even when nothing was charged.
    """

    usage: CreditResult
    usage_kind: UsageKind | str
    credits_charged: int = 0
    balance_after: int | None = None
    transaction_id: object | None = None
    unlimited: bool = False
    duplicate: bool = False
    denial: CreditDenial | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.denial is None


@dataclass(frozen=True, slots=True)
class CreditBalance:
    """Snapshot of a subscription's credit state."""

    user_id: str
    tier: str
    total: int
    remaining: int
    used: int
    is_trial_active: bool
    trial_days_remaining: int | None
    trial_end_date: datetime | None
    period_end: datetime | None
    daily_text_used: int
    daily_text_limit: int | None
