"""Subscription tiers and their usage policies.

The policy table is configuration: which usage kinds are unlimited, which
are capped per day, and how many credits each tier receives. Services take
a table as a constructor argument; ``DEFAULT_TIER_POLICIES`` is the
production value.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType


class SubscriptionTier(StrEnum):
    """Subscription plan levels."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class UsageKind(StrEnum):
    """Billing categories of AI usage."""

    TEXT_CHAT = "text_chat"  # Text generation (chat, feedback, hints)
    VOICE_STANDARD = "voice_standard"  # Transcription and speech synthesis
    REALTIME = "realtime"  # Realtime speech-to-speech sessions


def parse_usage_kind(value: UsageKind | str) -> UsageKind | None:
    """Usage kind for ``value``, None when it is not a known billing category."""
    try:
        return UsageKind(value)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class TierPolicy:
    """Usage policy for one subscription tier."""

    tier: SubscriptionTier
    monthly_credits: int = 0
    trial_credits: int = 0
    trial_days: int = 0

    # Kinds billed at zero (balance is not consulted)
    unlimited_kinds: frozenset[UsageKind] = frozenset()

    # Kinds not available on this tier at all
    disabled_kinds: frozenset[UsageKind] = frozenset()

    # Text messages per day, None for no cap
    text_daily_limit: int | None = None

    def is_unlimited(self, kind: UsageKind) -> bool:
        return kind in self.unlimited_kinds

    def allows(self, kind: UsageKind) -> bool:
        return kind not in self.disabled_kinds

    def daily_limit(self, kind: UsageKind) -> int | None:
        """Daily message cap for a usage kind (only text chat is capped)."""
        if kind == UsageKind.TEXT_CHAT:
            return self.text_daily_limit
        return None


TierPolicyTable = Mapping[SubscriptionTier, TierPolicy]

DEFAULT_TIER_POLICIES: TierPolicyTable = MappingProxyType(
    {
        SubscriptionTier.FREE: TierPolicy(
            tier=SubscriptionTier.FREE,
            trial_credits=5000,  # $0.50 of API usage
            trial_days=14,
            disabled_kinds=frozenset({UsageKind.REALTIME}),
            text_daily_limit=20,
        ),
        SubscriptionTier.BASIC: TierPolicy(
            tier=SubscriptionTier.BASIC,
            monthly_credits=6000,  # $0.60 of API usage
            unlimited_kinds=frozenset({UsageKind.TEXT_CHAT}),
            disabled_kinds=frozenset({UsageKind.REALTIME}),
        ),
        SubscriptionTier.PRO: TierPolicy(
            tier=SubscriptionTier.PRO,
            monthly_credits=16500,  # $1.65 of API usage
            unlimited_kinds=frozenset({UsageKind.TEXT_CHAT}),
        ),
    }
)


def get_policy(policies: TierPolicyTable, tier: str) -> TierPolicy:
    """Look up the policy for a tier.

    Raises:
        ValueError: If the tier has no policy in the table.
    """
    try:
        return policies[SubscriptionTier(tier)]
    except (KeyError, ValueError):
        msg = f"No tier policy for {tier!r}"
        raise ValueError(msg) from None


@dataclass(frozen=True, slots=True)
class EstimateRates:
    """Fixed per-unit credit rates used for pre-flight checks.

    Real charges are computed from measured usage. These rates only size the
    balance check before a request runs.
    """

    text_per_message: int = 4
    voice_per_minute: int = 100
    realtime_per_minute: int = 350

    def estimate(self, kind: UsageKind, units: int | float) -> int:
        """Credits for ``units`` messages (text) or seconds (voice, realtime)."""
        if units < 0:
            msg = f"Estimated units must be non-negative, got {units}"
            raise ValueError(msg)
        if kind == UsageKind.TEXT_CHAT:
            return math.ceil(units) * self.text_per_message
        minutes = math.ceil(units / 60)
        if kind == UsageKind.REALTIME:
            return minutes * self.realtime_per_minute
        return minutes * self.voice_per_minute


DEFAULT_ESTIMATE_RATES = EstimateRates()
