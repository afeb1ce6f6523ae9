"""Conversion of billed actions into integer credit debits.

``count`` mode charges a flat ``max(1, requested_count)`` per call and
ignores any token data.  ``tokens`` mode converts the marked-up model
cost into US cents, multiplies by the configured credits-per-cent rate
and rounds *up*; a call that reports no tokens at all (cache hit,
deterministic-only pass) is charged like ``count`` mode.  Every debit
is at least one credit.

Both functions are pure; they take the pricing table as an argument.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Optional

from packverify.models.enums import BillingMode
from packverify.models.schemas import CostDetail, TokenUsage
from packverify.services.pricing import PricingTable

CENTS_PER_DOLLAR = Decimal(100)


@dataclass(frozen=True)
class CreditQuote:
    credits: int
    cost_detail: CostDetail


def _flat(requested_count: int) -> int:
    return max(1, int(requested_count or 0))


def quote(
    token_usage: Optional[TokenUsage],
    billing_mode: BillingMode,
    credits_per_cent: Decimal,
    pricing: PricingTable,
    requested_count: int = 1,
) -> CreditQuote:
    """Compute the debit for one action together with its audit record."""
    mode = BillingMode(billing_mode)
    detail = CostDetail(billing_mode=mode)
    if token_usage is not None:
        detail.model = token_usage.model
        detail.prompt_tokens = token_usage.prompt_tokens
        detail.completion_tokens = token_usage.completion_tokens
        detail.total_tokens = token_usage.total_tokens

    if mode is BillingMode.COUNT or token_usage is None or token_usage.is_empty:
        return CreditQuote(credits=_flat(requested_count), cost_detail=detail)

    pricing_model, rate, fell_back = pricing.resolve(token_usage.model)
    cost_usd = pricing.cost_for_rate(rate, token_usage.prompt_tokens, token_usage.completion_tokens)
    rate_per_cent = Decimal(str(credits_per_cent))
    raw_credits = cost_usd * CENTS_PER_DOLLAR * rate_per_cent
    credits = max(1, int(raw_credits.to_integral_value(rounding=ROUND_CEILING)))

    detail.pricing_model = pricing_model
    detail.pricing_fallback = fell_back
    detail.cost_usd = str(cost_usd)
    detail.credits_per_cent = str(rate_per_cent)
    return CreditQuote(credits=credits, cost_detail=detail)


def to_credits(
    token_usage: Optional[TokenUsage],
    billing_mode: BillingMode,
    credits_per_cent: Decimal,
    pricing: PricingTable,
    requested_count: int = 1,
) -> int:
    """Integer credits (>= 1) charged for one action."""
    return quote(token_usage, billing_mode, credits_per_cent, pricing, requested_count).credits


__all__ = ["CreditQuote", "quote", "to_credits"]
