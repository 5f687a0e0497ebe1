"""
Pricing calculations and cost resolution.

Turns token counts into USD under a selectable cost mode. Pricing data is
injected as a lookup callable; nothing here reads files or the network.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .token_counter import TokenCounts
from ccmeter.storage.models import CostSource, ResolvedUsage, UsageEvent

logger = logging.getLogger(__name__)


class CostMode(Enum):
    """Policy for where an event's cost comes from."""
    AUTO = "auto"            # precomputed cost when > 0, otherwise calculate
    CALCULATE = "calculate"  # always calculate from tokens
    DISPLAY = "display"      # always use precomputed cost, 0 when absent


@dataclass(frozen=True)
class ModelPricing:
    """Per-token USD rates for a model.

    A rate left as None is not priced and contributes nothing to the cost.
    """
    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_creation_cost_per_token: Optional[float] = None
    cache_read_cost_per_token: Optional[float] = None

    @classmethod
    def from_million_tokens(
        cls,
        input_per_million: float,
        output_per_million: float,
        cache_write_multiplier: float = 1.25,
        cache_read_multiplier: float = 0.10,
    ) -> "ModelPricing":
        """Build pricing from per-million prices; cache rates derive from input."""
        input_rate = input_per_million / 1_000_000
        return cls(
            input_cost_per_token=input_rate,
            output_cost_per_token=output_per_million / 1_000_000,
            cache_creation_cost_per_token=input_rate * cache_write_multiplier,
            cache_read_cost_per_token=input_rate * cache_read_multiplier,
        )


PricingLookup = Callable[[str], Optional[ModelPricing]]


class PricingTable:
    """Immutable model -> pricing table usable as a pricing lookup.

    Lookup order: exact name, name without a 'provider/' prefix, then the
    longest table key contained in the name (so dated model ids match their
    family entry).
    """

    def __init__(self, prices: Mapping[str, ModelPricing]):
        self._prices = MappingProxyType(dict(prices))

    @property
    def prices(self) -> Mapping[str, ModelPricing]:
        return self._prices

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model, or None if it is not in the table."""
        if not model:
            return None
        if model in self._prices:
            return self._prices[model]
        bare = model.split("/", 1)[1] if "/" in model else model
        if bare in self._prices:
            return self._prices[bare]
        candidates = [key for key in self._prices if key in bare]
        if candidates:
            return self._prices[max(candidates, key=len)]
        return None

    def __call__(self, model: str) -> Optional[ModelPricing]:
        return self.get_pricing(model)

    def __contains__(self, model: str) -> bool:
        return self.get_pricing(model) is not None


DEFAULT_MODEL = "claude-sonnet-4-20250514"

DEFAULT_PRICING_TABLE = PricingTable({
    "claude-opus-4-1": ModelPricing.from_million_tokens(15.0, 75.0),
    "claude-opus-4": ModelPricing.from_million_tokens(15.0, 75.0),
    "claude-sonnet-4-5": ModelPricing.from_million_tokens(3.0, 15.0),
    "claude-sonnet-4": ModelPricing.from_million_tokens(3.0, 15.0),
    "claude-haiku-4-5": ModelPricing.from_million_tokens(1.0, 5.0),
    "claude-3-7-sonnet": ModelPricing.from_million_tokens(3.0, 15.0),
    "claude-3-5-sonnet": ModelPricing.from_million_tokens(3.0, 15.0),
    "claude-3-5-haiku": ModelPricing.from_million_tokens(0.80, 4.0),
    "claude-3-opus": ModelPricing.from_million_tokens(15.0, 75.0),
    "claude-3-haiku": ModelPricing.from_million_tokens(0.25, 1.25),
})


@dataclass(frozen=True)
class PriceMatch:
    """Outcome of the model -> default model -> unpriced fallback chain."""
    pricing: Optional[ModelPricing]
    matched_model: Optional[str]
    used_default: bool = False

    @property
    def unpriced(self) -> bool:
        return self.pricing is None


@dataclass(frozen=True)
class CostResolution:
    """Resolved cost for one event."""
    cost_usd: float
    source: CostSource
    unpriced: bool = False
    pricing_model: Optional[str] = None


def calculate_cost(tokens: TokenCounts, pricing: ModelPricing) -> float:
    """Calculate USD cost of token usage.

    Args:
        tokens: Token counts by category
        pricing: Per-token rates; unpriced categories contribute 0

    Returns:
        Total cost in USD
    """
    total = 0.0
    for count, rate in (
        (tokens.input_tokens, pricing.input_cost_per_token),
        (tokens.output_tokens, pricing.output_cost_per_token),
        (tokens.cache_creation_tokens, pricing.cache_creation_cost_per_token),
        (tokens.cache_read_tokens, pricing.cache_read_cost_per_token),
    ):
        if rate is not None:
            total += count * rate
    return total


def price_for(model: Optional[str], lookup: PricingLookup, default_model: str) -> PriceMatch:
    """Find pricing for a model with an explicit fallback chain.

    1. The event's model (or the default model when the event has none)
    2. The default model
    3. Unpriced
    """
    candidate = model or default_model
    pricing = lookup(candidate)
    if pricing is not None:
        return PriceMatch(pricing, candidate, used_default=candidate != model)

    if candidate != default_model:
        pricing = lookup(default_model)
        if pricing is not None:
            logger.debug("No pricing for %s, using default model %s", candidate, default_model)
            return PriceMatch(pricing, default_model, used_default=True)

    return PriceMatch(None, None, used_default=candidate != model)


def resolve_cost(
    event: UsageEvent,
    mode: CostMode,
    lookup: PricingLookup,
    default_model: str = DEFAULT_MODEL,
) -> CostResolution:
    """Resolve the USD cost of one event under a cost mode.

    AUTO uses the logged cost when it is present and positive and otherwise
    calculates it; CALCULATE always calculates; DISPLAY only ever uses the
    logged cost (0 when absent). A calculation that finds no pricing for the
    model or the default model yields 0 flagged as unpriced.
    """
    precomputed = event.precomputed_cost_usd

    if mode is CostMode.DISPLAY:
        if precomputed is None:
            return CostResolution(0.0, CostSource.NONE)
        return CostResolution(precomputed, CostSource.PRECOMPUTED)

    if mode is CostMode.AUTO and precomputed is not None and precomputed > 0:
        return CostResolution(precomputed, CostSource.PRECOMPUTED)

    match = price_for(event.model, lookup, default_model)
    if match.unpriced:
        return CostResolution(0.0, CostSource.NONE, unpriced=True)
    return CostResolution(
        calculate_cost(event.tokens, match.pricing),
        CostSource.CALCULATED,
        pricing_model=match.matched_model,
    )


def resolve_event(
    event: UsageEvent,
    mode: CostMode,
    lookup: PricingLookup,
    default_model: str = DEFAULT_MODEL,
) -> ResolvedUsage:
    """Attach a resolved cost to an event."""
    resolution = resolve_cost(event, mode, lookup, default_model)
    return ResolvedUsage(
        event=event,
        cost_usd=resolution.cost_usd,
        cost_source=resolution.source,
        unpriced=resolution.unpriced,
        pricing_model=resolution.pricing_model,
    )


def resolve_events(
    events: Iterable[UsageEvent],
    mode: CostMode,
    lookup: PricingLookup,
    default_model: str = DEFAULT_MODEL,
) -> List[ResolvedUsage]:
    """Resolve costs for a sequence of events, preserving order."""
    return [resolve_event(e, mode, lookup, default_model) for e in events]


def unpriced_models(resolved: Iterable[ResolvedUsage]) -> List[str]:
    """Distinct model names whose events could not be priced."""
    names: Dict[str, None] = {}
    for usage in resolved:
        if usage.unpriced:
            names[usage.model or "<unknown>"] = None
    return sorted(names)

