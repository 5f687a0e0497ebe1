"""
Burn-rate and limit forecasting.

Derives per-hour consumption rates from an active block or session and
projects how long until each configured limit is reached. Results are raw
numbers plus discrete classifications; formatting and colors belong to the
caller.

Context-window growth is not measured from context-size deltas. It is
approximated as context_growth_fraction of the cumulative-token rate (0.2 by
default), a known rough heuristic kept overridable through EngineConfig.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from .blocks import BillingBlock
from .rollup import PeriodSummary
from .token_counter import TokenCounts
from ccmeter.config.loader import (
    EngineConfig,
    ForecastThresholds,
    Limits,
    RateUnitThresholds,
)
from ccmeter.storage.models import ResolvedUsage

_SECONDS_PER_HOUR = 3600.0


class RateUnit(Enum):
    """Suggested display unit for a rate."""
    PER_DAY = "per_day"
    PER_HOUR = "per_hour"
    PER_MINUTE = "per_minute"


class ForecastSeverity(Enum):
    """How close a limit is, from most to least urgent."""
    EXCEEDED = "exceeded"
    IMMINENT = "imminent"
    SOON = "soon"
    DISTANT = "distant"
    NO_LIMIT = "no_limit"


class ForecastMetric(Enum):
    TOKENS = "tokens"
    CONTEXT = "context"
    COST = "cost"
    MESSAGES = "messages"


@dataclass(frozen=True)
class BurnRate:
    """Consumption rates over the elapsed time of a block or session."""
    tokens_per_hour: float
    non_cache_tokens_per_hour: float
    cost_per_hour: float
    messages_per_hour: float
    elapsed_hours: float


@dataclass(frozen=True)
class LimitForecast:
    """Time until one limit is reached at the current rate.

    hours_until_limit is <= 0 once the limit is reached or exceeded, and None
    when no limit is configured or nothing is being consumed.
    """
    metric: ForecastMetric
    current: float
    limit: Optional[float]
    rate_per_hour: float
    hours_until_limit: Optional[float]
    severity: ForecastSeverity

    @property
    def limit_configured(self) -> bool:
        return self.severity is not ForecastSeverity.NO_LIMIT


@dataclass(frozen=True)
class UsageForecast:
    """Forecasts for every tracked limit."""
    tokens: LimitForecast
    context: LimitForecast
    cost: LimitForecast
    messages: LimitForecast

    @property
    def all(self) -> Sequence[LimitForecast]:
        return (self.tokens, self.context, self.cost, self.messages)

    @property
    def most_urgent(self) -> LimitForecast:
        """The forecast with the most severe classification (earliest on ties)."""
        order = list(ForecastSeverity)
        return min(
            self.all,
            key=lambda f: (
                order.index(f.severity),
                f.hours_until_limit if f.hours_until_limit is not None else float("inf"),
            ),
        )


@dataclass(frozen=True)
class ProjectedUsage:
    """Linear projection of an active block's totals to its end time."""
    total_tokens: int
    total_cost: float
    remaining_minutes: int


def calculate_burn_rate(
    start_time: datetime,
    tokens: TokenCounts,
    cost_usd: float,
    messages: int,
    now: datetime,
    min_elapsed_hours: float = 1 / 60,
) -> BurnRate:
    """Per-hour rates since start_time.

    Elapsed time is floored at min_elapsed_hours so brand-new sessions and
    events stamped in the future (clock skew) do not produce absurd or
    negative rates.
    """
    elapsed = (now - start_time).total_seconds() / _SECONDS_PER_HOUR
    elapsed = max(elapsed, min_elapsed_hours)
    return BurnRate(
        tokens_per_hour=tokens.total_tokens / elapsed,
        non_cache_tokens_per_hour=tokens.non_cache_tokens / elapsed,
        cost_per_hour=cost_usd / elapsed,
        messages_per_hour=messages / elapsed,
        elapsed_hours=elapsed,
    )


def burn_rate_for_block(
    block: BillingBlock,
    now: datetime,
    min_elapsed_hours: float = 1 / 60,
) -> Optional[BurnRate]:
    """Burn rate of a block; elapsed time stops at the block's end.

    Returns None for gap blocks.
    """
    if block.is_gap or not block.events:
        return None
    return calculate_burn_rate(
        start_time=block.start_time,
        tokens=block.token_counts,
        cost_usd=block.cost_usd,
        messages=block.message_count,
        now=min(now, block.end_time),
        min_elapsed_hours=min_elapsed_hours,
    )


def burn_rate_for_session(
    summary: PeriodSummary,
    now: datetime,
    min_elapsed_hours: float = 1 / 60,
) -> Optional[BurnRate]:
    """Burn rate of a session summary from its first event until now."""
    if summary.first_timestamp is None:
        return None
    return calculate_burn_rate(
        start_time=summary.first_timestamp,
        tokens=summary.token_counts,
        cost_usd=summary.cost_usd,
        messages=summary.message_count,
        now=now,
        min_elapsed_hours=min_elapsed_hours,
    )


def suggest_rate_unit(rate_per_hour: float, thresholds: RateUnitThresholds) -> RateUnit:
    """Pick a display unit from the magnitude of a per-hour rate."""
    if rate_per_hour < thresholds.per_day_below:
        return RateUnit.PER_DAY
    if rate_per_hour >= thresholds.per_minute_from:
        return RateUnit.PER_MINUTE
    return RateUnit.PER_HOUR


def rate_in_unit(rate_per_hour: float, unit: RateUnit) -> float:
    """Convert a per-hour rate to the given unit."""
    if unit is RateUnit.PER_DAY:
        return rate_per_hour * 24
    if unit is RateUnit.PER_MINUTE:
        return rate_per_hour / 60
    return rate_per_hour


def context_growth_rate(burn_rate: BurnRate, context_growth_fraction: float) -> float:
    """Approximate context-window growth per hour from the token rate."""
    return burn_rate.tokens_per_hour * context_growth_fraction


def forecast_limit(
    metric: ForecastMetric,
    current: float,
    limit: Optional[float],
    rate_per_hour: float,
    thresholds: ForecastThresholds,
) -> LimitForecast:
    """Forecast the time until one limit is reached.

    Args:
        metric: Which quantity is forecast
        current: Amount consumed so far
        limit: Configured limit; None, 0 or negative means no limit
        rate_per_hour: Current consumption rate
        thresholds: Hour boundaries for IMMINENT and SOON

    Returns:
        LimitForecast; an already reached limit gives a non-positive
        duration with severity EXCEEDED rather than a forecast
    """
    if limit is None or limit <= 0:
        return LimitForecast(metric, current, None, rate_per_hour, None, ForecastSeverity.NO_LIMIT)

    remaining = limit - current
    if remaining <= 0:
        hours = remaining / rate_per_hour if rate_per_hour > 0 else 0.0
        return LimitForecast(metric, current, limit, rate_per_hour, hours, ForecastSeverity.EXCEEDED)

    if rate_per_hour <= 0:
        return LimitForecast(metric, current, limit, rate_per_hour, None, ForecastSeverity.DISTANT)

    hours = remaining / rate_per_hour
    if hours < thresholds.imminent_hours:
        severity = ForecastSeverity.IMMINENT
    elif hours < thresholds.soon_hours:
        severity = ForecastSeverity.SOON
    else:
        severity = ForecastSeverity.DISTANT
    return LimitForecast(metric, current, limit, rate_per_hour, hours, severity)


def forecast_usage(
    burn_rate: BurnRate,
    tokens: int,
    cost_usd: float,
    messages: int,
    context_tokens: int,
    config: EngineConfig,
    token_limit: Optional[int] = None,
    context_window: Optional[int] = None,
    cost_limit: Optional[float] = None,
) -> UsageForecast:
    """Forecast every tracked limit for an active block or session.

    Limits not passed explicitly come from config.limits: the block cost
    baseline for cost, the context window for context and the message quota
    for messages. token_limit must already be resolved to a number.
    """
    limits: Limits = config.limits
    if token_limit is None and isinstance(limits.token_limit, int):
        token_limit = limits.token_limit
    if context_window is None:
        context_window = limits.context_window
    if cost_limit is None:
        cost_limit = limits.block_cost_baseline

    thresholds = config.forecast
    return UsageForecast(
        tokens=forecast_limit(
            ForecastMetric.TOKENS, tokens, token_limit,
            burn_rate.tokens_per_hour, thresholds,
        ),
        context=forecast_limit(
            ForecastMetric.CONTEXT, context_tokens, context_window,
            context_growth_rate(burn_rate, config.context_growth_fraction), thresholds,
        ),
        cost=forecast_limit(
            ForecastMetric.COST, cost_usd, cost_limit,
            burn_rate.cost_per_hour, thresholds,
        ),
        messages=forecast_limit(
            ForecastMetric.MESSAGES, messages, limits.message_quota,
            burn_rate.messages_per_hour, thresholds,
        ),
    )


def project_block_usage(
    block: BillingBlock,
    now: datetime,
    burn_rate: Optional[BurnRate],
) -> Optional[ProjectedUsage]:
    """Project an active block's totals to its end at the current rate.

    Returns None when the block is a gap, has already ended, or no burn rate
    is available. The remaining time never exceeds the block's own window.
    """
    if block.is_gap or burn_rate is None or not block.is_open_at(now):
        return None
    remaining = block.end_time - max(now, block.start_time)
    remaining_hours = remaining.total_seconds() / _SECONDS_PER_HOUR
    return ProjectedUsage(
        total_tokens=int(round(block.token_counts.total_tokens + burn_rate.tokens_per_hour * remaining_hours)),
        total_cost=block.cost_usd + burn_rate.cost_per_hour * remaining_hours,
        remaining_minutes=int(round(remaining_hours * 60)),
    )


def current_context_tokens(events: Sequence[ResolvedUsage]) -> int:
    """Context size of the most recent event (0 when there are none)."""
    if not events:
        return 0
    # last of equal timestamps wins, matching stream order
    _, latest = max(enumerate(events), key=lambda pair: (pair[1].timestamp, pair[0]))
    return latest.tokens.context_tokens
