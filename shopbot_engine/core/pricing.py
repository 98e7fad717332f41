"""
Pricing calculations and rate management.

Handles per-direction cost computation for the generation models the
engine is allowed to call.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

_PER_MILLION = Decimal("1000000")
_COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_million: Decimal  # USD per 1M input tokens
    output_cost_per_million: Decimal  # USD per 1M output tokens


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of a single provider call, split by direction."""
    input_cost: float
    output_cost: float
    total_cost: float


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default_model: str

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(f"Default pricing model not in table: {self.default_model}")

    def supports(self, model: str) -> bool:
        return model in self.prices

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        A call to an unpriced model has already happened and must still be
        recorded, so unknown models are billed at the default model's rate.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model
        """
        if model not in self.prices:
            logger.warning(
                "No pricing for model %r, billing at %r rates", model, self.default_model
            )
            return self.prices[self.default_model]
        return self.prices[model]


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable(
    prices={
        "gpt-4o": ModelPricing(
            input_cost_per_million=Decimal("2.50"),
            output_cost_per_million=Decimal("10.00")
        ),
        "gpt-4o-mini": ModelPricing(
            input_cost_per_million=Decimal("0.15"),
            output_cost_per_million=Decimal("0.60")
        ),
        "gpt-4.1": ModelPricing(
            input_cost_per_million=Decimal("2.00"),
            output_cost_per_million=Decimal("8.00")
        ),
        "gpt-4.1-mini": ModelPricing(
            input_cost_per_million=Decimal("0.40"),
            output_cost_per_million=Decimal("1.60")
        ),
        "o3-mini": ModelPricing(
            input_cost_per_million=Decimal("1.10"),
            output_cost_per_million=Decimal("4.40")
        ),
        "gpt-image-1": ModelPricing(
            input_cost_per_million=Decimal("5.00"),
            output_cost_per_million=Decimal("40.00")
        ),
    },
    default_model="gpt-4o-mini",
)


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> CostBreakdown:
    """Calculate the cost of one provider call with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage reported by the provider
        table: Pricing table to use

    Returns:
        CostBreakdown with each figure rounded UP to 6 decimal places
    """
    pricing = table.get_pricing(model)

    input_cost = (Decimal(usage.input_tokens) / _PER_MILLION) * pricing.input_cost_per_million
    output_cost = (Decimal(usage.output_tokens) / _PER_MILLION) * pricing.output_cost_per_million

    input_cost = input_cost.quantize(_COST_QUANTUM, rounding=ROUND_UP)
    output_cost = output_cost.quantize(_COST_QUANTUM, rounding=ROUND_UP)

    return CostBreakdown(
        input_cost=float(input_cost),
        output_cost=float(output_cost),
        total_cost=float(input_cost + output_cost),
    )
