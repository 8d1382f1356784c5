"""
Pricing calculations and rate management.

Turns token counts and a model id into a USD cost using per-million-token rates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping, Optional, Protocol

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token USD rates for one price tier."""
    input: Decimal  # Cost per 1M input tokens
    output: Decimal  # Cost per 1M output tokens
    cache_write: Decimal  # Cost per 1M cache creation tokens
    cache_read: Decimal  # Cost per 1M cache read tokens

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("input", "output", "cache_write", "cache_read"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} rate must be >= 0")


class PricingProvider(Protocol):
    """Source of unit prices for a model id.

    Returning None means the provider has no data for the model; the
    adapter then uses the built-in defaults.
    """

    def prices_for(self, model: str) -> Optional[ModelPricing]:
        ...


def model_family(model: Optional[str]) -> str:
    """Map a versioned model id onto its price tier.

    Any "opus" id maps to opus, any "haiku" id to haiku, and everything
    else (including unknown ids) to the sonnet tier.
    """
    name = (model or "").lower()
    if "opus" in name:
        return "opus"
    if "haiku" in name:
        return "haiku"
    return "sonnet"


# Fixed fallback table, used whenever the provider has no price for a model
DEFAULT_PRICES: Dict[str, ModelPricing] = {
    "sonnet": ModelPricing(
        input=Decimal("3.00"),
        output=Decimal("15.00"),
        cache_write=Decimal("3.75"),
        cache_read=Decimal("0.30")
    ),
    "opus": ModelPricing(
        input=Decimal("15.00"),
        output=Decimal("75.00"),
        cache_write=Decimal("18.75"),
        cache_read=Decimal("1.50")
    ),
    "haiku": ModelPricing(
        input=Decimal("0.80"),
        output=Decimal("4.00"),
        cache_write=Decimal("1.00"),
        cache_read=Decimal("0.08")
    ),
}


@dataclass(frozen=True)
class PricingTable:
    """Static price table keyed by model family.

    Satisfies PricingProvider. Overrides from configuration are merged on
    top of DEFAULT_PRICES by `with_overrides`.
    """
    prices: Mapping[str, ModelPricing]

    def prices_for(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model id, or None when the tier is unknown."""
        return self.prices.get(model_family(model))

    def with_overrides(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with the given family prices replaced."""
        merged = dict(self.prices)
        merged.update(overrides)
        return PricingTable(merged)


PRICING_TABLE = PricingTable(DEFAULT_PRICES)


def resolve_pricing(model: str, provider: Optional[PricingProvider] = None) -> ModelPricing:
    """Look up rates for a model, never failing.

    Args:
        model: Model identifier as found in the log
        provider: Optional pricing collaborator

    Returns:
        The provider's rates, or the built-in rates for the model's tier
    """
    pricing = None
    if provider is not None:
        pricing = provider.prices_for(model)
    if pricing is None:
        logger.debug("No provider price for %s, using default %s tier", model, model_family(model))
        pricing = DEFAULT_PRICES[model_family(model)]
    return pricing


def calculate_cost(
    model: str,
    usage: TokenUsage,
    provider: Optional[PricingProvider] = None
) -> float:
    """Calculate the USD cost of one usage record.

    cost = sum(tokens_i / 1,000,000 * rate_i) over the four token
    categories. The result is not rounded so that costs stay additive.

    Args:
        model: Model identifier
        usage: Token usage data
        provider: Optional pricing collaborator

    Returns:
        Cost in USD, always >= 0
    """
    pricing = resolve_pricing(model, provider)

    total_cost = (
        Decimal(usage.input_tokens) * pricing.input
        + Decimal(usage.output_tokens) * pricing.output
        + Decimal(usage.cache_write_tokens) * pricing.cache_write
        + Decimal(usage.cache_read_tokens) * pricing.cache_read
    ) / ONE_MILLION

    return float(total_cost)
