"""Usage events reported by the conversation and voice pipeline.

One variant per model class. Each carries only the quantities its pricing
formula reads. A quantity left as ``None`` was not reported, which is
different from a reported zero only in that neither produces a cost line.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal

from kaiwa_billing.credits.pricing import ModelClass, PricingRegistry


def _check_non_negative(event: object) -> None:
    for f in fields(event):
        if f.name == "model_id":
            continue
        value = getattr(event, f.name)
        if value is not None and value < 0:
            msg = f"{type(event).__name__}.{f.name} must be non-negative, got {value}"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class TextTokenUsage:
    model_id: str
    input_tokens: int | None = None
    output_tokens: int | None = None

    model_class = ModelClass.TEXT_TOKENS

    def __post_init__(self) -> None:
        _check_non_negative(self)


@dataclass(frozen=True, slots=True)
class DurationUsage:
    model_id: str
    audio_duration_seconds: Decimal | None = None

    model_class = ModelClass.AUDIO_DURATION

    def __post_init__(self) -> None:
        if self.audio_duration_seconds is not None and not isinstance(
            self.audio_duration_seconds, Decimal
        ):
            # Go through str so 0.1 stays 0.1 and not its binary expansion
            object.__setattr__(
                self,
                "audio_duration_seconds",
                Decimal(str(self.audio_duration_seconds)),
            )
        _check_non_negative(self)


@dataclass(frozen=True, slots=True)
class SynthesisUsage:
    model_id: str
    character_count: int | None = None
    audio_output_tokens: int | None = None

    model_class = ModelClass.SYNTHESIS

    def __post_init__(self) -> None:
        _check_non_negative(self)


@dataclass(frozen=True, slots=True)
class RealtimeUsage:
    model_id: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    audio_input_tokens: int | None = None
    audio_output_tokens: int | None = None

    model_class = ModelClass.REALTIME

    def __post_init__(self) -> None:
        _check_non_negative(self)


UsageEvent = TextTokenUsage | DurationUsage | SynthesisUsage | RealtimeUsage


def usage_from_report(
    registry: PricingRegistry,
    model_id: str,
    *,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    audio_duration_seconds: Decimal | int | float | None = None,
    character_count: int | None = None,
    audio_input_tokens: int | None = None,
    audio_output_tokens: int | None = None,
) -> UsageEvent:
    """Build a typed usage event from a flat provider usage report.

    The variant is chosen by the model's registered pricing shape. Models
    that are not registered become ``TextTokenUsage`` so the calculator can
    flag them as unknown.

    Speech synthesis reports carry the generated audio token count in
    ``output_tokens``; it is used when ``audio_output_tokens`` is absent.
    """
    match registry.model_class(model_id):
        case ModelClass.AUDIO_DURATION:
            return DurationUsage(model_id, audio_duration_seconds)
        case ModelClass.SYNTHESIS:
            audio_tokens = (
                audio_output_tokens if audio_output_tokens is not None else output_tokens
            )
            return SynthesisUsage(model_id, character_count, audio_tokens)
        case ModelClass.REALTIME:
            return RealtimeUsage(
                model_id,
                input_tokens,
                output_tokens,
                audio_input_tokens,
                audio_output_tokens,
            )
        case _:
            return TextTokenUsage(model_id, input_tokens, output_tokens)
