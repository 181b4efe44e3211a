"""
Token pricing for cost accounting.

Costs are normalized here so a session's cost_accumulated_usd is correct
no matter which adapter in the fallback chain served a call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..domain.entities import ProviderUsage


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float


# Matched by substring against the model name, most specific first
MODEL_PRICING: list[tuple[str, ModelPricing]] = [
    ("gpt-4o-mini", ModelPricing(0.15, 0.60)),
    ("gpt-4o", ModelPricing(2.50, 10.00)),
    ("opus", ModelPricing(15.00, 75.00)),
    ("sonnet", ModelPricing(3.00, 15.00)),
    ("haiku", ModelPricing(1.00, 5.00)),
    ("flash", ModelPricing(0.10, 0.40)),
]


def get_pricing(model: Optional[str]) -> Optional[ModelPricing]:
    """Look up pricing for a model. Local and unknown models have none."""
    if not model:
        return None
    lowered = model.lower()
    for key, pricing in MODEL_PRICING:
        if key in lowered:
            return pricing
    return None


def estimate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> float:
    """Estimate the USD cost of one call."""
    pricing = get_pricing(model)
    if pricing is None:
        return 0.0
    return (
        input_tokens / 1_000_000 * pricing.input_per_million
        + output_tokens / 1_000_000 * pricing.output_per_million
    )


def price_usage(usage: ProviderUsage) -> ProviderUsage:
    """Fill in cost_usd on a usage record reported by an adapter."""
    usage.cost_usd = estimate_cost(usage.model, usage.input_tokens, usage.output_tokens)
    return usage
