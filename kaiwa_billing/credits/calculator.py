"""Conversion of measured AI usage into credits.

Cost is computed per event from the registered price, then converted to
whole credits by rounding up. Sessions are billed as the sum of their
individually rounded events, so many tiny events can never add up to a
free session.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import ROUND_CEILING, Decimal

from kaiwa_billing.credits.pricing import (
    DEFAULT_PRICING,
    DurationPricing,
    PricingRegistry,
    PricingRule,
    RealtimePricing,
    SynthesisPricing,
    TokenPricing,
)
from kaiwa_billing.credits.types import CreditResult, DiagnosticKind, PricingDiagnostic
from kaiwa_billing.credits.usage import (
    DurationUsage,
    RealtimeUsage,
    SynthesisUsage,
    TextTokenUsage,
    UsageEvent,
)

# Credit base: 1 credit = $0.0001 USD
CREDIT_USD_VALUE = Decimal("0.0001")

_PER_1M = Decimal(1_000_000)
_SECONDS_PER_MINUTE = Decimal(60)


def credits_from_usd(usd_cost: Decimal, credit_usd_value: Decimal = CREDIT_USD_VALUE) -> int:
    """Convert a USD cost into whole credits.

    Rounds up, and any positive cost costs at least 1 credit.

    Raises:
        ValueError: If the cost is negative.
    """
    if usd_cost < 0:
        msg = f"USD cost must be non-negative, got {usd_cost}"
        raise ValueError(msg)
    if usd_cost == 0:
        return 0
    credits = int((usd_cost / credit_usd_value).to_integral_value(rounding=ROUND_CEILING))
    return max(1, credits)


def _add(
    breakdown: dict[str, Decimal],
    key: str,
    quantity: int | Decimal | None,
    rate: Decimal,
    per: Decimal,
) -> None:
    # Zero or unreported quantities leave no breakdown line
    if not quantity:
        return
    breakdown[key] = quantity * rate / per


def _token_lines(
    usage: TextTokenUsage | RealtimeUsage, in_rate: Decimal, out_rate: Decimal
) -> dict[str, Decimal]:
    lines: dict[str, Decimal] = {}
    _add(lines, "input_tokens", usage.input_tokens, in_rate, _PER_1M)
    _add(lines, "output_tokens", usage.output_tokens, out_rate, _PER_1M)
    return lines


def _cost_lines(usage: UsageEvent, rule: PricingRule) -> dict[str, Decimal]:
    match usage, rule:
        case TextTokenUsage(), TokenPricing():
            return _token_lines(usage, rule.input_per_1m, rule.output_per_1m)
        case DurationUsage(), DurationPricing():
            lines: dict[str, Decimal] = {}
            _add(
                lines,
                "audio_duration",
                usage.audio_duration_seconds,
                rule.per_minute,
                _SECONDS_PER_MINUTE,
            )
            return lines
        case SynthesisUsage(), SynthesisPricing():
            lines = {}
            _add(lines, "tts_input", usage.character_count, rule.input_per_1m_chars, _PER_1M)
            _add(
                lines,
                "tts_output",
                usage.audio_output_tokens,
                rule.output_per_1m_tokens,
                _PER_1M,
            )
            return lines
        case RealtimeUsage(), RealtimePricing():
            lines = _token_lines(usage, rule.text_input_per_1m, rule.text_output_per_1m)
            tokens_per_minute = Decimal(rule.audio_tokens_per_second) * _SECONDS_PER_MINUTE
            _add(
                lines,
                "audio_input",
                usage.audio_input_tokens,
                rule.audio_input_per_minute,
                tokens_per_minute,
            )
            _add(
                lines,
                "audio_output",
                usage.audio_output_tokens,
                rule.audio_output_per_minute,
                tokens_per_minute,
            )
            return lines
    msg = f"No formula for {type(usage).__name__} with {type(rule).__name__}"
    raise TypeError(msg)


class UsageCalculator:
    """Prices usage events against an injected pricing registry.

    Usage:
        calculator = UsageCalculator(DEFAULT_PRICING)
        result = calculator.calculate(
            TextTokenUsage("gpt-4o-mini", input_tokens=800, output_tokens=200)
        )
        result.credits  # 3
    """

    def __init__(
        self,
        registry: PricingRegistry = DEFAULT_PRICING,
        credit_usd_value: Decimal = CREDIT_USD_VALUE,
    ) -> None:
        if credit_usd_value <= 0:
            msg = f"credit_usd_value must be positive, got {credit_usd_value}"
            raise ValueError(msg)
        self.registry = registry
        self.credit_usd_value = credit_usd_value

    def calculate(self, usage: UsageEvent) -> CreditResult:
        """Price a single usage event.

        Unknown models and events whose shape does not match the model's
        pricing are billed at zero with a diagnostic instead of raising.
        """
        rule = self.registry.get(usage.model_id)
        if rule is None:
            return CreditResult.zero(
                PricingDiagnostic(
                    kind=DiagnosticKind.UNKNOWN_MODEL,
                    model_id=usage.model_id,
                    message=f"Unknown model pricing: {usage.model_id}",
                )
            )
        if rule.model_class != usage.model_class:
            return CreditResult.zero(
                PricingDiagnostic(
                    kind=DiagnosticKind.USAGE_KIND_MISMATCH,
                    model_id=usage.model_id,
                    message=(
                        f"{type(usage).__name__} reported for {usage.model_id}, "
                        f"which is priced as {rule.model_class}"
                    ),
                )
            )

        breakdown = _cost_lines(usage, rule)
        usd_cost = sum(breakdown.values(), Decimal(0))
        return CreditResult(
            credits=credits_from_usd(usd_cost, self.credit_usd_value),
            usd_cost=usd_cost,
            breakdown=breakdown,
        )

    def aggregate(self, events: Iterable[UsageEvent]) -> CreditResult:
        """Price a session of usage events.

        Each event is rounded to credits on its own before summing. Breakdown
        keys are prefixed with the model id when the session spans more than
        one model.
        """
        events = list(events)
        if not events:
            return CreditResult.zero()

        results = [self.calculate(event) for event in events]
        namespaced = len({event.model_id for event in events}) > 1

        breakdown: dict[str, Decimal] = {}
        for event, result in zip(events, results, strict=True):
            for key, value in result.breakdown.items():
                merged_key = f"{event.model_id}_{key}" if namespaced else key
                breakdown[merged_key] = breakdown.get(merged_key, Decimal(0)) + value

        return CreditResult(
            credits=sum(r.credits for r in results),
            usd_cost=sum((r.usd_cost for r in results), Decimal(0)),
            breakdown=breakdown,
            diagnostics=tuple(d for r in results for d in r.diagnostics),
        )
