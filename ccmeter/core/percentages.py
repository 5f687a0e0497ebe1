"""
Usage percentage calculation.

The single place where raw counts and limits become percentages. Status
lines, dashboards and reports must all call these functions rather than
dividing by limits themselves, so every view shows the same number for the
same data.

Percentages are clamped at 0 but never capped at 100; capping for display is
the caller's choice. A missing, zero or negative limit yields 0 with
limit_configured=False instead of dividing by zero.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .blocks import BillingBlock
from .rollup import PeriodSummary
from ccmeter.config.loader import Limits, UsageLevelThresholds


@dataclass(frozen=True)
class Percentage:
    """A percentage plus whether a limit was actually configured."""
    value: float
    limit_configured: bool


class CostBaseline(Enum):
    """Which limit a cost percentage is measured against."""
    BLOCK = "block"      # per-block cost baseline
    MONTHLY = "monthly"  # monthly plan limit


class CriticalSource(Enum):
    """Which metric produced the critical percentage."""
    TOKENS = "tokens"
    COST = "cost"
    MONTHLY_COST = "monthly_cost"
    MONTHLY_TOKENS = "monthly_tokens"
    NONE = "none"


class UsageLevel(Enum):
    IDLE = "idle"
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class ActiveUsage:
    """Token and cost totals of the active block or session."""
    tokens: int
    cost_usd: float

    @classmethod
    def from_block(cls, block: BillingBlock) -> "ActiveUsage":
        return cls(tokens=block.token_counts.total_tokens, cost_usd=block.cost_usd)

    @classmethod
    def from_session(cls, summary: PeriodSummary) -> "ActiveUsage":
        return cls(tokens=summary.total_tokens, cost_usd=summary.cost_usd)


@dataclass(frozen=True)
class MonthlyUsage:
    """Totals for the current calendar month."""
    cost_usd: float
    tokens: int = 0


@dataclass(frozen=True)
class CriticalPercentage:
    """The composite at-a-glance percentage and where it came from."""
    value: float
    source: CriticalSource
    limit_configured: bool


def percentage(value: float, limit: Union[int, float, None]) -> Percentage:
    """100 * value / limit, clamped at 0; no limit gives 0 with the flag unset."""
    if limit is None or limit <= 0:
        return Percentage(0.0, False)
    return Percentage(max(0.0, 100.0 * value / limit), True)


def token_percentage(tokens: int, limit: Optional[int]) -> Percentage:
    """Token usage as a percentage of a token limit."""
    return percentage(tokens, limit)


def message_percentage(messages: int, quota: Optional[int]) -> Percentage:
    """Message count as a percentage of a message quota."""
    return percentage(messages, quota)


def cost_percentage(cost: float, baseline: CostBaseline, limits: Limits) -> Percentage:
    """Cost as a percentage of the explicitly selected baseline.

    Args:
        cost: Cost in USD
        baseline: BLOCK for the per-block baseline, MONTHLY for the monthly limit
        limits: Configured limits

    Returns:
        Percentage against the selected baseline
    """
    if baseline is CostBaseline.BLOCK:
        return percentage(cost, limits.block_cost_baseline)
    return percentage(cost, limits.monthly_cost_limit)


def critical_percentage(
    active: Optional[ActiveUsage],
    monthly: Optional[MonthlyUsage],
    limits: Limits,
    token_limit: Optional[int] = None,
) -> CriticalPercentage:
    """Composite usage percentage used for status displays.

    With active usage: the larger of its token percentage and its
    block-baseline cost percentage. Without: the larger of the monthly cost
    and monthly token percentages, for whichever monthly limits are
    configured. Otherwise 0.

    Args:
        active: Totals of the active block or session, if any
        monthly: Totals of the current month, if known
        limits: Configured limits
        token_limit: Resolved token limit; defaults to limits.token_limit when
            that is a number

    Returns:
        CriticalPercentage naming the metric that won (tokens on ties)
    """
    if active is not None:
        if token_limit is None and isinstance(limits.token_limit, int):
            token_limit = limits.token_limit
        return _max_of(
            (token_percentage(active.tokens, token_limit), CriticalSource.TOKENS),
            (cost_percentage(active.cost_usd, CostBaseline.BLOCK, limits), CriticalSource.COST),
        )

    if monthly is not None:
        return _max_of(
            (cost_percentage(monthly.cost_usd, CostBaseline.MONTHLY, limits), CriticalSource.MONTHLY_COST),
            (token_percentage(monthly.tokens, limits.monthly_token_limit), CriticalSource.MONTHLY_TOKENS),
        )

    return CriticalPercentage(0.0, CriticalSource.NONE, False)


def _max_of(*candidates) -> CriticalPercentage:
    configured = [(pct, source) for pct, source in candidates if pct.limit_configured]
    if not configured:
        return CriticalPercentage(0.0, CriticalSource.NONE, False)
    # max() keeps the first of equal values
    pct, source = max(configured, key=lambda pair: pair[0].value)
    return CriticalPercentage(pct.value, source, True)


def classify_usage(percent: float, thresholds: UsageLevelThresholds) -> UsageLevel:
    """Discrete usage level for a percentage."""
    if percent <= 0:
        return UsageLevel.IDLE
    if percent >= thresholds.exceeded:
        return UsageLevel.EXCEEDED
    if percent >= thresholds.critical:
        return UsageLevel.CRITICAL
    if percent >= thresholds.warning:
        return UsageLevel.WARNING
    return UsageLevel.NORMAL
