"""
Usage report assembly.

Runs the full engine over an immutable event snapshot: cost resolution,
block segmentation, rollups, burn rate, forecasts and percentages. Both the
batch reporting path and live status views build their output from
UsageReport, so they always agree for the same events and the same `now`.

The report is read-only and deterministic:
1. No I/O (loading happens before, rendering after)
2. No state carried between calls; the active block is re-derived from `now`
3. Identical inputs give identical outputs
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from .blocks import (
    BillingBlock,
    filter_recent_blocks,
    find_active_block,
    resolve_token_limit,
    segment_blocks,
)
from .forecast import (
    BurnRate,
    ProjectedUsage,
    UsageForecast,
    burn_rate_for_block,
    burn_rate_for_session,
    current_context_tokens,
    forecast_usage,
    project_block_usage,
)
from .percentages import (
    ActiveUsage,
    CriticalPercentage,
    MonthlyUsage,
    UsageLevel,
    classify_usage,
    critical_percentage,
)
from .pricing import (
    DEFAULT_PRICING_TABLE,
    PricingLookup,
    resolve_events,
    unpriced_models,
)
from .rollup import (
    PeriodSummary,
    daily_summaries,
    model_summaries,
    monthly_summaries,
    session_summaries,
)
from ccmeter.config.loader import EngineConfig
from ccmeter.storage.loader import LoadResult, SourcePath, load_events
from ccmeter.storage.models import ResolvedUsage, UsageEvent
from ccmeter.utils.timezone import ensure_utc, month_key, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageReport:
    """Everything callers render, computed in one pass."""
    generated_at: datetime
    resolved: Tuple[ResolvedUsage, ...]
    blocks: Tuple[BillingBlock, ...]
    daily: Tuple[PeriodSummary, ...]
    monthly: Tuple[PeriodSummary, ...]
    sessions: Tuple[PeriodSummary, ...]
    models: Tuple[PeriodSummary, ...]
    current_month: Optional[PeriodSummary]
    active_block: Optional[BillingBlock]
    active_session: Optional[PeriodSummary]
    burn_rate: Optional[BurnRate]
    session_burn_rate: Optional[BurnRate]
    forecast: Optional[UsageForecast]
    projection: Optional[ProjectedUsage]
    token_limit: Optional[int]
    critical: CriticalPercentage
    usage_level: UsageLevel
    unpriced_models: Tuple[str, ...]


def build_usage_report(
    events: Sequence[UsageEvent],
    config: EngineConfig = EngineConfig(),
    pricing: PricingLookup = DEFAULT_PRICING_TABLE,
    now: Optional[datetime] = None,
    include_gaps: bool = False,
) -> UsageReport:
    """Run every engine stage over an event snapshot.

    Args:
        events: Deduplicated usage events (any order)
        config: Engine configuration
        pricing: Pricing lookup for cost calculation
        now: Reference time; defaults to the current time
        include_gaps: Keep synthetic gap blocks in report.blocks

    Returns:
        UsageReport for the snapshot
    """
    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    tz = resolve_timezone(config.timezone)
    limits = config.limits

    ordered = sorted(events, key=lambda e: e.timestamp)
    resolved = resolve_events(ordered, config.cost_mode, pricing, config.default_model)

    missing = unpriced_models(resolved)
    if missing:
        logger.warning("No pricing for models %s; their cost is reported as 0", ", ".join(missing))

    blocks = segment_blocks(resolved, config.block_duration, now, include_gaps=include_gaps)
    active_block = find_active_block(blocks, now)
    token_limit = resolve_token_limit(limits.token_limit, blocks, now)

    daily = daily_summaries(resolved, tz)
    monthly = monthly_summaries(resolved, tz)
    sessions = session_summaries(resolved)
    models = model_summaries(resolved)

    this_month = month_key(now, tz)
    current_month = next((m for m in monthly if m.key == this_month), None)

    burn_rate = None
    session_burn_rate = None
    forecast = None
    projection = None
    active_session = None

    if active_block is not None:
        burn_rate = burn_rate_for_block(active_block, now, config.min_elapsed_hours)
        latest = active_block.events[-1]
        active_session = next((s for s in sessions if s.key == latest.session_id), None)
        if active_session is not None:
            session_burn_rate = burn_rate_for_session(active_session, now, config.min_elapsed_hours)
        if burn_rate is not None:
            forecast = forecast_usage(
                burn_rate,
                tokens=active_block.token_counts.total_tokens,
                cost_usd=active_block.cost_usd,
                messages=active_block.message_count,
                context_tokens=current_context_tokens(active_block.events),
                config=config,
                token_limit=token_limit,
                context_window=limits.context_window,
            )
            projection = project_block_usage(active_block, now, burn_rate)

    monthly_usage = MonthlyUsage(
        cost_usd=current_month.cost_usd if current_month else 0.0,
        tokens=current_month.total_tokens if current_month else 0,
    )
    critical = critical_percentage(
        ActiveUsage.from_block(active_block) if active_block is not None else None,
        monthly_usage,
        limits,
        token_limit=token_limit,
    )

    return UsageReport(
        generated_at=now,
        resolved=tuple(resolved),
        blocks=tuple(blocks),
        daily=tuple(daily),
        monthly=tuple(monthly),
        sessions=tuple(sessions),
        models=tuple(models),
        current_month=current_month,
        active_block=active_block,
        active_session=active_session,
        burn_rate=burn_rate,
        session_burn_rate=session_burn_rate,
        forecast=forecast,
        projection=projection,
        token_limit=token_limit,
        critical=critical,
        usage_level=classify_usage(critical.value, config.usage_levels),
        unpriced_models=tuple(missing),
    )


def run_pipeline(
    sources: Sequence[SourcePath],
    config: EngineConfig = EngineConfig(),
    pricing: PricingLookup = DEFAULT_PRICING_TABLE,
    now: Optional[datetime] = None,
    timeout: Optional[float] = None,
    include_gaps: bool = False,
) -> Tuple[LoadResult, Optional[UsageReport]]:
    """Load sources and build a report.

    Returns:
        (LoadResult, UsageReport); the report is None when no source could
        be read, the load result always carries the diagnostics
    """
    load_result = load_events(sources, timeout=timeout)
    if not load_result.ok:
        logger.warning("No readable usage sources among %d given", len(sources))
        return load_result, None
    return load_result, build_usage_report(
        load_result.events, config, pricing, now, include_gaps=include_gaps
    )


def recent_blocks(report: UsageReport, days: int) -> List[BillingBlock]:
    """Blocks of a report that started within `days` of its generation time."""
    return filter_recent_blocks(report.blocks, report.generated_at, days)
