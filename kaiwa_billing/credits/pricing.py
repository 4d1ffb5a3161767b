"""Pricing registry for metered AI models.

Every model is registered with its provider list price. Prices are kept in
the unit the provider publishes (per 1M tokens, per minute) as ``Decimal`` so
cost arithmetic stays exact.

To add a new model:
1. Pick the pricing shape matching how the provider bills it
2. Add an entry to ``_DEFAULT_RULES``
3. Usage for the model is billed as the shape's ``usage_kind``

The registry is an immutable value. Pass a custom ``PricingRegistry`` to
``UsageCalculator`` to bill against different prices.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import ClassVar

from kaiwa_billing.credits.tiers import UsageKind


class ModelClass(StrEnum):
    """How a model's usage is measured."""

    TEXT_TOKENS = "text_tokens"  # Prompt/completion tokens
    AUDIO_DURATION = "audio_duration"  # Seconds of recorded audio
    SYNTHESIS = "synthesis"  # Input characters + generated audio tokens
    REALTIME = "realtime"  # Text tokens + streamed audio tokens


def _dec(value: Decimal | int | float | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True, slots=True)
class TokenPricing:
    """Token-priced text generation."""

    model_class: ClassVar[ModelClass] = ModelClass.TEXT_TOKENS
    usage_kind: ClassVar[UsageKind] = UsageKind.TEXT_CHAT

    input_per_1m: Decimal
    output_per_1m: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_per_1m", _dec(self.input_per_1m))
        object.__setattr__(self, "output_per_1m", _dec(self.output_per_1m))


@dataclass(frozen=True, slots=True)
class DurationPricing:
    """Duration-priced audio input (speech-to-text)."""

    model_class: ClassVar[ModelClass] = ModelClass.AUDIO_DURATION
    usage_kind: ClassVar[UsageKind] = UsageKind.VOICE_STANDARD

    per_minute: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "per_minute", _dec(self.per_minute))


@dataclass(frozen=True, slots=True)
class SynthesisPricing:
    """Speech synthesis billed on input characters and output audio tokens."""

    model_class: ClassVar[ModelClass] = ModelClass.SYNTHESIS
    usage_kind: ClassVar[UsageKind] = UsageKind.VOICE_STANDARD

    input_per_1m_chars: Decimal
    output_per_1m_tokens: Decimal

    def __post_init__(self) -> None:
        object.__setattr__(self, "input_per_1m_chars", _dec(self.input_per_1m_chars))
        object.__setattr__(
            self, "output_per_1m_tokens", _dec(self.output_per_1m_tokens)
        )


@dataclass(frozen=True, slots=True)
class RealtimePricing:
    """Realtime sessions mixing text tokens and audio tokens.

    Audio is priced per minute; token counts are converted to minutes with
    ``audio_tokens_per_second``.
    """

    model_class: ClassVar[ModelClass] = ModelClass.REALTIME
    usage_kind: ClassVar[UsageKind] = UsageKind.REALTIME

    text_input_per_1m: Decimal
    text_output_per_1m: Decimal
    audio_input_per_minute: Decimal
    audio_output_per_minute: Decimal
    audio_tokens_per_second: int = 450

    def __post_init__(self) -> None:
        for name in (
            "text_input_per_1m",
            "text_output_per_1m",
            "audio_input_per_minute",
            "audio_output_per_minute",
        ):
            object.__setattr__(self, name, _dec(getattr(self, name)))
        if self.audio_tokens_per_second <= 0:
            msg = "audio_tokens_per_second must be positive"
            raise ValueError(msg)


PricingRule = TokenPricing | DurationPricing | SynthesisPricing | RealtimePricing


class PricingRegistry(Mapping[str, PricingRule]):
    """Immutable model id -> pricing rule table."""

    __slots__ = ("_rules",)

    def __init__(self, rules: Mapping[str, PricingRule]) -> None:
        for model_id, rule in rules.items():
            if not isinstance(
                rule, TokenPricing | DurationPricing | SynthesisPricing | RealtimePricing
            ):
                msg = f"Invalid pricing rule for {model_id}: {rule!r}"
                raise TypeError(msg)
        self._rules = MappingProxyType(dict(rules))

    def __getitem__(self, model_id: str) -> PricingRule:
        return self._rules[model_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def model_class(self, model_id: str) -> ModelClass | None:
        rule = self._rules.get(model_id)
        return rule.model_class if rule is not None else None

    def usage_kind(self, model_id: str) -> UsageKind | None:
        """Billing category for a model, None if the model is not registered."""
        rule = self._rules.get(model_id)
        return rule.usage_kind if rule is not None else None


# OpenAI list prices, November 2025: https://openai.com/api/pricing/
_DEFAULT_RULES: dict[str, PricingRule] = {
    # Chat responses, feedback and hints
    "gpt-4o-mini": TokenPricing(
        input_per_1m=Decimal("0.15"),
        output_per_1m=Decimal("0.60"),
    ),
    # Speech-to-text
    "whisper-1": DurationPricing(per_minute=Decimal("0.006")),
    # Text-to-speech
    "gpt-4o-mini-tts": SynthesisPricing(
        input_per_1m_chars=Decimal("0.60"),
        output_per_1m_tokens=Decimal("12.00"),
    ),
    # Realtime speech-to-speech (~450 audio tokens per second)
    "gpt-4o-realtime-preview": RealtimePricing(
        text_input_per_1m=Decimal("0.60"),
        text_output_per_1m=Decimal("2.40"),
        audio_input_per_minute=Decimal("0.036"),
        audio_output_per_minute=Decimal("0.091"),
        audio_tokens_per_second=450,
    ),
}

DEFAULT_PRICING = PricingRegistry(_DEFAULT_RULES)
