"""
Unit tests for pricing calculations.

Tests per-direction cost accuracy, rounding behavior and the unknown-model fallback.
"""

import logging
from decimal import Decimal

import pytest

from shopbot_engine.core.pricing import (
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cost,
)
from shopbot_engine.core.token_counter import TokenUsage


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(input_tokens=100, output_tokens=50)
        assert usage.total_tokens == 150

    def test_zero_tokens(self):
        usage = TokenUsage(input_tokens=0, output_tokens=0)
        assert usage.total_tokens == 0

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError, match="input_tokens cannot be negative"):
            TokenUsage(input_tokens=-1, output_tokens=0)
        with pytest.raises(ValueError, match="output_tokens cannot be negative"):
            TokenUsage(input_tokens=0, output_tokens=-5)


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        pricing = PRICING_TABLE.get_pricing("gpt-4o")
        assert pricing.input_cost_per_million == Decimal("2.50")
        assert pricing.output_cost_per_million == Decimal("10.00")

    def test_unknown_model_falls_back_to_default(self, caplog):
        """Unpriced models are billed at the default model's rate, with a warning."""
        with caplog.at_level(logging.WARNING):
            pricing = PRICING_TABLE.get_pricing("mystery-model")
        assert pricing == PRICING_TABLE.prices["gpt-4o-mini"]
        assert "mystery-model" in caplog.text

    def test_default_model_must_be_priced(self):
        with pytest.raises(ValueError, match="Default pricing model not in table"):
            PricingTable(prices={}, default_model="gpt-4o")

    def test_supports(self):
        assert PRICING_TABLE.supports("gpt-4o-mini")
        assert not PRICING_TABLE.supports("gpt-2")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost_gpt4o(self):
        usage = TokenUsage(input_tokens=1_000_000, output_tokens=500_000)
        cost = calculate_cost("gpt-4o", usage)
        # Input: 1M * $2.50/M = $2.50
        # Output: 0.5M * $10.00/M = $5.00
        assert cost.input_cost == 2.50
        assert cost.output_cost == 5.00
        assert cost.total_cost == 7.50

    def test_exact_cost_gpt4o_mini(self):
        usage = TokenUsage(input_tokens=2000, output_tokens=1000)
        cost = calculate_cost("gpt-4o-mini", usage)
        # Input: 2000 * 0.15 / 1M = 0.0003
        # Output: 1000 * 0.60 / 1M = 0.0006
        assert cost.input_cost == 0.0003
        assert cost.output_cost == 0.0006
        assert cost.total_cost == pytest.approx(0.0009)

    def test_rounding_up_behavior(self):
        """Verify costs round UP to the micro-dollar (conservative bias)."""
        usage = TokenUsage(input_tokens=1, output_tokens=1)
        cost = calculate_cost("gpt-4o-mini", usage)
        # Input: 0.00000015 -> 0.000001, Output: 0.0000006 -> 0.000001
        assert cost.input_cost == 0.000001
        assert cost.output_cost == 0.000001
        assert cost.total_cost == 0.000002

    def test_zero_usage_costs_nothing(self):
        cost = calculate_cost("gpt-4o", TokenUsage(input_tokens=0, output_tokens=0))
        assert cost.total_cost == 0.0

    def test_custom_table(self):
        table = PricingTable(
            prices={"cheap": ModelPricing(Decimal("1.00"), Decimal("2.00"))},
            default_model="cheap",
        )
        cost = calculate_cost("cheap", TokenUsage(input_tokens=500_000, output_tokens=250_000), table)
        assert cost.total_cost == 1.00
