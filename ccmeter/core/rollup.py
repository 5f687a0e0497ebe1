"""
Period rollups.

Folds costed events into daily, monthly, per-session and per-model
summaries. Token totals are summed exactly as integers; costs are summed with
math.fsum over sorted values, so re-aggregating the same event set yields
bit-identical totals whatever order the events arrive in.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .blocks import BillingBlock, real_blocks
from .token_counter import TokenCounts, sum_token_counts
from ccmeter.storage.models import ResolvedUsage
from ccmeter.utils.timezone import date_key, month_key


class PeriodKind(Enum):
    """What a summary is grouped by."""
    DAY = "day"
    MONTH = "month"
    SESSION = "session"
    MODEL = "model"
    RANGE = "range"
    TOTAL = "total"


@dataclass(frozen=True)
class PeriodSummary:
    """Aggregate of a subset of costed events."""
    key: str
    kind: PeriodKind
    token_counts: TokenCounts
    cost_usd: float
    message_count: int
    models: Tuple[str, ...]
    first_timestamp: Optional[datetime]
    last_timestamp: Optional[datetime]
    unpriced_count: int = 0
    error_count: int = 0
    project: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.token_counts.total_tokens


def summarize(
    events: Sequence[ResolvedUsage],
    key: str,
    kind: PeriodKind,
    project: Optional[str] = None,
) -> PeriodSummary:
    """Fold a group of events into one summary."""
    timestamps = [e.timestamp for e in events]
    return PeriodSummary(
        key=key,
        kind=kind,
        token_counts=sum_token_counts(e.tokens for e in events),
        cost_usd=_stable_sum(e.cost_usd for e in events),
        message_count=len(events),
        models=tuple(sorted({e.model for e in events if e.model})),
        first_timestamp=min(timestamps) if timestamps else None,
        last_timestamp=max(timestamps) if timestamps else None,
        unpriced_count=sum(1 for e in events if e.unpriced),
        error_count=sum(1 for e in events if e.event.is_error_event),
        project=project,
    )


def _stable_sum(values: Iterable[float]) -> float:
    return math.fsum(sorted(values))


def _group(
    events: Iterable[ResolvedUsage],
    key_fn: Callable[[ResolvedUsage], str],
) -> Dict[str, List[ResolvedUsage]]:
    groups: Dict[str, List[ResolvedUsage]] = OrderedDict()
    for event in events:
        groups.setdefault(key_fn(event), []).append(event)
    return groups


def daily_summaries(events: Iterable[ResolvedUsage], tz: tzinfo) -> List[PeriodSummary]:
    """Summaries per calendar day in the given zone, ordered by date."""
    groups = _group(events, lambda e: date_key(e.timestamp, tz))
    return [summarize(groups[k], k, PeriodKind.DAY) for k in sorted(groups)]


def monthly_summaries(events: Iterable[ResolvedUsage], tz: tzinfo) -> List[PeriodSummary]:
    """Summaries per calendar month in the given zone, ordered by month."""
    groups = _group(events, lambda e: month_key(e.timestamp, tz))
    return [summarize(groups[k], k, PeriodKind.MONTH) for k in sorted(groups)]


def session_summaries(events: Iterable[ResolvedUsage]) -> List[PeriodSummary]:
    """Summaries per session id, ordered by first activity then id."""
    groups = _group(events, lambda e: e.session_id)
    summaries = [
        summarize(group, session_id, PeriodKind.SESSION, project=group[0].project)
        for session_id, group in groups.items()
    ]
    return sorted(summaries, key=lambda s: (s.first_timestamp, s.key))


def model_summaries(events: Iterable[ResolvedUsage]) -> List[PeriodSummary]:
    """Per-model breakdown, ordered by model name."""
    groups = _group(events, lambda e: e.model or "<unknown>")
    return [summarize(groups[k], k, PeriodKind.MODEL) for k in sorted(groups)]


def range_summary(
    events: Iterable[ResolvedUsage],
    start: datetime,
    end: datetime,
    key: Optional[str] = None,
) -> PeriodSummary:
    """Summary of events with start <= timestamp < end."""
    if end < start:
        raise ValueError("end must not be before start")
    selected = [e for e in events if start <= e.timestamp < end]
    label = key or f"{start.isoformat()}/{end.isoformat()}"
    return summarize(selected, label, PeriodKind.RANGE)


def block_totals(blocks: Sequence[BillingBlock]) -> PeriodSummary:
    """Totals across real blocks; gap blocks never contribute."""
    events = [e for block in real_blocks(blocks) for e in block.events]
    return summarize(events, "blocks", PeriodKind.TOTAL)


def grand_total(summaries: Sequence[PeriodSummary], key: str = "total") -> PeriodSummary:
    """Fold summaries into a single total."""
    firsts = [s.first_timestamp for s in summaries if s.first_timestamp is not None]
    lasts = [s.last_timestamp for s in summaries if s.last_timestamp is not None]
    models = set()
    for s in summaries:
        models.update(s.models)
    return PeriodSummary(
        key=key,
        kind=PeriodKind.TOTAL,
        token_counts=sum_token_counts(s.token_counts for s in summaries),
        cost_usd=_stable_sum(s.cost_usd for s in summaries),
        message_count=sum(s.message_count for s in summaries),
        models=tuple(sorted(models)),
        first_timestamp=min(firsts) if firsts else None,
        last_timestamp=max(lasts) if lasts else None,
        unpriced_count=sum(s.unpriced_count for s in summaries),
        error_count=sum(s.error_count for s in summaries),
    )
