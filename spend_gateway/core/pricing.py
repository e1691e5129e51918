"""
Pricing calculations and rate management.

Handles cost computations per provider and model.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple
from decimal import Decimal, ROUND_UP

from .errors import UnknownPricingError
from .token_counter import TokenUsage

ONE_MILLION = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1m: Decimal  # Cost per 1M input tokens
    output_cost_per_1m: Decimal  # Cost per 1M output tokens


@dataclass(frozen=True)
class PricingTable:
    """Pricing keyed by (provider, model) with per-provider fallbacks."""
    prices: Dict[Tuple[str, str], ModelPricing]
    provider_defaults: Dict[str, ModelPricing] = field(default_factory=dict)

    def get_pricing(self, provider: str, model: str) -> ModelPricing:
        """Get pricing for a provider/model pair.

        Args:
            provider: Provider identifier
            model: Model identifier

        Returns:
            ModelPricing for the model, or the provider default

        Raises:
            UnknownPricingError: If neither the model nor the provider is priced
        """
        pricing = self.prices.get((provider, model))
        if pricing is not None:
            return pricing
        if provider in self.provider_defaults:
            return self.provider_defaults[provider]
        raise UnknownPricingError(provider, model)

    def has_pricing(self, provider: str, model: str) -> bool:
        return (provider, model) in self.prices or provider in self.provider_defaults


_GROK_2 = ModelPricing(input_cost_per_1m=Decimal("2.00"), output_cost_per_1m=Decimal("10.00"))
_CLAUDE_SONNET = ModelPricing(input_cost_per_1m=Decimal("3.00"), output_cost_per_1m=Decimal("15.00"))

# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable(
    prices={
        ("grok", "grok-4-fast-reasoning"): _GROK_2,
        ("grok", "grok-2-latest"): _GROK_2,
        ("grok", "grok-2-mini"): ModelPricing(
            input_cost_per_1m=Decimal("0.50"),
            output_cost_per_1m=Decimal("2.00")
        ),
        ("claude", "claude-3-5-sonnet-20241022"): _CLAUDE_SONNET,
        ("claude", "claude-3-opus-20240229"): ModelPricing(
            input_cost_per_1m=Decimal("15.00"),
            output_cost_per_1m=Decimal("75.00")
        ),
        ("claude", "claude-3-haiku-20240307"): ModelPricing(
            input_cost_per_1m=Decimal("0.25"),
            output_cost_per_1m=Decimal("1.25")
        ),
    },
    provider_defaults={
        "grok": _GROK_2,
        "claude": _CLAUDE_SONNET,
    },
)


def calculate_cost(
    provider: str,
    model: str,
    usage: TokenUsage,
    table: PricingTable = PRICING_TABLE,
) -> Decimal:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        provider: Provider identifier
        model: Model identifier
        usage: Token usage data
        table: Pricing table to look rates up in

    Returns:
        Total cost rounded UP to 6 decimal places

    Raises:
        UnknownPricingError: If the model has no rate and the provider no default
    """
    pricing = table.get_pricing(provider, model)

    input_cost = (Decimal(usage.tokens_in) / ONE_MILLION) * pricing.input_cost_per_1m
    output_cost = (Decimal(usage.tokens_out) / ONE_MILLION) * pricing.output_cost_per_1m

    # Always round UP so spend is never under-reported
    total_cost = input_cost + output_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)
