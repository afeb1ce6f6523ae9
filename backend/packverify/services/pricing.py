"""Model pricing table.

Maps a model identifier to its marked-up USD price per million input
and output tokens and computes the cost of one call.  The table is an
immutable value built once from settings (``PricingTable.from_settings``)
and passed to the credit converter, so tests can substitute their own
rates without touching global state.

Unknown model identifiers are billed at the default model's rates
instead of failing.  A newly deployed model name therefore never blocks
billing, but it may be mis-priced until the table is updated, so every
fallback is logged and counted (``pricing.unknown_model``).

All arithmetic uses :class:`~decimal.Decimal` so that the ceiling taken
by the credit converter is exact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Tuple

from packverify.core.observability import sentry_metric_inc
from packverify.models.schemas import ModelRate

logger = logging.getLogger(__name__)

TOKENS_PER_UNIT = Decimal(1_000_000)


@dataclass(frozen=True)
class PricingTable:
    rates: Mapping[str, ModelRate]
    default_model: str
    markup: Decimal = field(default=Decimal("1"))

    def __post_init__(self) -> None:
        if self.default_model not in self.rates:
            raise ValueError(f"default pricing model {self.default_model!r} has no rates")
        # Freeze the mapping so callers cannot mutate shared rates
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    @classmethod
    def build(cls, base_rates: Mapping[str, ModelRate], markup: Decimal | str | int, default_model: str) -> "PricingTable":
        """Apply ``markup`` uniformly to every base rate."""
        factor = Decimal(str(markup))
        marked_up = {
            name: ModelRate(input=rate.input * factor, output=rate.output * factor)
            for name, rate in base_rates.items()
        }
        return cls(rates=marked_up, default_model=default_model, markup=factor)

    @classmethod
    def from_settings(cls, settings) -> "PricingTable":
        return cls.build(settings.MODEL_PRICING, settings.PRICING_MARKUP, settings.DEFAULT_PRICING_MODEL)

    def resolve(self, model: str | None) -> Tuple[str, ModelRate, bool]:
        """Return ``(pricing_model, rate, fell_back)`` for ``model``."""
        if model and model in self.rates:
            return model, self.rates[model], False
        logger.warning(
            "[pricing] unknown model=%r; billing at default model=%s rates",
            model, self.default_model,
        )
        sentry_metric_inc("pricing.unknown_model", tags={"model": model or ""})
        return self.default_model, self.rates[self.default_model], True

    def cost(self, model: str | None, input_tokens: int, output_tokens: int) -> Decimal:
        """Marked-up USD cost of a single call."""
        _, rate, _ = self.resolve(model)
        return self.cost_for_rate(rate, input_tokens, output_tokens)

    @staticmethod
    def cost_for_rate(rate: ModelRate, input_tokens: int, output_tokens: int) -> Decimal:
        inp = Decimal(max(0, int(input_tokens or 0)))
        out = Decimal(max(0, int(output_tokens or 0)))
        return (inp / TOKENS_PER_UNIT) * rate.input + (out / TOKENS_PER_UNIT) * rate.output


__all__ = ["PricingTable", "TOKENS_PER_UNIT"]
