"""
Unit tests for pricing calculations.

Tests cost accuracy, model tier mapping and provider fallback.
"""

from decimal import Decimal

import pytest

from usage_ledger.core.pricing import (
    DEFAULT_PRICES,
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cost,
    model_family,
    resolve_pricing,
)
from usage_ledger.core.token_counter import TokenUsage


class FixedPricing:
    """Pricing provider that knows a single model."""

    def __init__(self, model: str, pricing: ModelPricing):
        self.model = model
        self.pricing = pricing

    def prices_for(self, model: str):
        return self.pricing if model == self.model else None


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens sums all four categories."""
        usage = TokenUsage(input_tokens=100, output_tokens=50, cache_write_tokens=20, cache_read_tokens=5)
        assert usage.total_tokens == 175

    def test_zero_tokens(self):
        """Verify zero token handling."""
        assert TokenUsage().total_tokens == 0

    def test_negative_tokens_rejected(self):
        """Negative counts are invalid."""
        with pytest.raises(ValueError, match="input_tokens must be >= 0"):
            TokenUsage(input_tokens=-1)


class TestModelFamily:
    """Test mapping of versioned model ids onto price tiers."""

    @pytest.mark.parametrize("model,family", [
        ("claude-3-opus-20240229", "opus"),
        ("claude-opus-4-20250514", "opus"),
        ("claude-3-5-haiku-20241022", "haiku"),
        ("claude-3-5-sonnet-20241022", "sonnet"),
        ("claude-sonnet-4-20250514", "sonnet"),
        ("some-new-model", "sonnet"),
        ("", "sonnet"),
        (None, "sonnet"),
    ])
    def test_family(self, model, family):
        assert model_family(model) == family

    def test_table_lookup_by_tier(self):
        """Any opus id resolves to the opus rates."""
        pricing = PRICING_TABLE.prices_for("claude-3-opus-20240229")
        assert pricing.input == Decimal("15.00")
        assert pricing.output == Decimal("75.00")


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def test_exact_cost_sonnet(self):
        """Verify exact cost for the sonnet tier."""
        usage = TokenUsage(input_tokens=1000, output_tokens=500)
        # 1000 * $3 / 1M + 500 * $15 / 1M
        assert calculate_cost("claude-3-5-sonnet-20241022", usage) == pytest.approx(0.0105)

    def test_exact_cost_all_categories_opus(self):
        """Cache write and read tokens are priced separately."""
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            cache_write_tokens=1_000_000,
            cache_read_tokens=1_000_000
        )
        assert calculate_cost("claude-3-opus", usage) == pytest.approx(15 + 75 + 18.75 + 1.50)

    def test_exact_cost_haiku(self):
        """Verify exact cost for the haiku tier."""
        usage = TokenUsage(input_tokens=2_000_000, output_tokens=500_000)
        assert calculate_cost("claude-3-5-haiku", usage) == pytest.approx(1.60 + 2.00)

    def test_small_costs_are_not_rounded(self):
        """A single token keeps its fractional cost."""
        usage = TokenUsage(input_tokens=1)
        assert calculate_cost("claude-sonnet-4", usage) == pytest.approx(0.000003)

    def test_zero_tokens_cost(self):
        """Verify zero tokens cost nothing."""
        assert calculate_cost("claude-sonnet-4", TokenUsage()) == 0.0

    def test_unknown_model_uses_sonnet_rates(self):
        """Unknown model ids are priced, never rejected."""
        usage = TokenUsage(input_tokens=1000, output_tokens=500)
        assert calculate_cost("mystery-model", usage) == calculate_cost("claude-sonnet-4", usage)

    def test_cost_monotonic_in_each_category(self):
        """Adding tokens to any category never lowers the cost."""
        base = TokenUsage(input_tokens=100, output_tokens=100, cache_write_tokens=100, cache_read_tokens=100)
        base_cost = calculate_cost("claude-3-opus", base)
        for name in ("input_tokens", "output_tokens", "cache_write_tokens", "cache_read_tokens"):
            counts = {
                "input_tokens": 100,
                "output_tokens": 100,
                "cache_write_tokens": 100,
                "cache_read_tokens": 100,
            }
            counts[name] += 1000
            assert calculate_cost("claude-3-opus", TokenUsage(**counts)) > base_cost

    def test_cost_is_additive(self):
        """Two records cost the same as their combined tokens."""
        first = TokenUsage(input_tokens=1000, output_tokens=500)
        second = TokenUsage(input_tokens=200, output_tokens=100)
        combined = TokenUsage(input_tokens=1200, output_tokens=600)
        total = calculate_cost("claude-sonnet-4", first) + calculate_cost("claude-sonnet-4", second)
        assert total == pytest.approx(calculate_cost("claude-sonnet-4", combined))


class TestPricingProvider:
    """Test injected pricing collaborators."""

    def test_provider_price_is_used(self):
        """A provider's price wins over the defaults."""
        custom = ModelPricing(
            input=Decimal("1"), output=Decimal("2"), cache_write=Decimal("0"), cache_read=Decimal("0")
        )
        provider = FixedPricing("custom-model", custom)
        usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000)
        assert calculate_cost("custom-model", usage, provider) == pytest.approx(3.0)

    def test_provider_without_price_falls_back(self):
        """Models the provider doesn't know use the built-in tier."""
        custom = ModelPricing(
            input=Decimal("1"), output=Decimal("2"), cache_write=Decimal("0"), cache_read=Decimal("0")
        )
        provider = FixedPricing("custom-model", custom)
        assert resolve_pricing("claude-3-opus", provider) == DEFAULT_PRICES["opus"]

    def test_with_overrides_replaces_family(self):
        """Overrides replace only the named family."""
        cheap = ModelPricing(
            input=Decimal("0.5"), output=Decimal("1"), cache_write=Decimal("0"), cache_read=Decimal("0")
        )
        table = PRICING_TABLE.with_overrides({"sonnet": cheap})
        assert isinstance(table, PricingTable)
        assert table.prices_for("claude-sonnet-4") == cheap
        assert table.prices_for("claude-3-opus") == DEFAULT_PRICES["opus"]
        assert PRICING_TABLE.prices_for("claude-sonnet-4") == DEFAULT_PRICES["sonnet"]

    def test_negative_rate_rejected(self):
        """Rates must be non-negative."""
        with pytest.raises(ValueError, match="input rate must be >= 0"):
            ModelPricing(
                input=Decimal("-1"), output=Decimal("1"), cache_write=Decimal("0"), cache_read=Decimal("0")
            )
