"""Credit metering and ledger.

Provides:
- Pricing registry with provider list prices
- Typed usage events and the calculator that turns them into credits
- Tier policy table (unlimited kinds, daily caps, allowances)
- Credit service for checking, deducting and granting credits
- Types for credit operations
"""

from kaiwa_billing.credits.calculator import (
    CREDIT_USD_VALUE,
    UsageCalculator,
    credits_from_usd,
)
from kaiwa_billing.credits.pricing import (
    DEFAULT_PRICING,
    DurationPricing,
    ModelClass,
    PricingRegistry,
    RealtimePricing,
    SynthesisPricing,
    TokenPricing,
)
from kaiwa_billing.credits.service import CreditService, infer_usage_kind
from kaiwa_billing.credits.tiers import (
    DEFAULT_ESTIMATE_RATES,
    DEFAULT_TIER_POLICIES,
    EstimateRates,
    SubscriptionTier,
    TierPolicy,
    UsageKind,
    get_policy,
    parse_usage_kind,
)
from kaiwa_billing.credits.types import (
    CreditBalance,
    CreditCheckResult,
    CreditDenial,
    CreditResult,
    DeductionResult,
    DiagnosticKind,
    PricingDiagnostic,
    TransactionType,
)
from kaiwa_billing.credits.usage import (
    DurationUsage,
    RealtimeUsage,
    SynthesisUsage,
    TextTokenUsage,
    UsageEvent,
    usage_from_report,
)

__all__ = [
    # Pricing registry
    "ModelClass",
    "TokenPricing",
    "DurationPricing",
    "SynthesisPricing",
    "RealtimePricing",
    "PricingRegistry",
    "DEFAULT_PRICING",
    # Usage events
    "TextTokenUsage",
    "DurationUsage",
    "SynthesisUsage",
    "RealtimeUsage",
    "UsageEvent",
    "usage_from_report",
    # Calculator
    "UsageCalculator",
    "credits_from_usd",
    "CREDIT_USD_VALUE",
    # Tiers
    "SubscriptionTier",
    "UsageKind",
    "TierPolicy",
    "DEFAULT_TIER_POLICIES",
    "EstimateRates",
    "DEFAULT_ESTIMATE_RATES",
    "get_policy",
    "parse_usage_kind",
    # Service
    "CreditService",
    "infer_usage_kind",
    # Types
    "TransactionType",
    "DiagnosticKind",
    "PricingDiagnostic",
    "CreditResult",
    "CreditDenial",
    "CreditCheckResult",
    "DeductionResult",
    "CreditBalance",
]
