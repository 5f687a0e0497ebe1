"""
Billing block segmentation.

Partitions a time-ordered stream of costed events into fixed-duration billing
blocks. A block opens at the timestamp of its first event and nominally lasts
block_duration regardless of when activity stopped. A new block opens when an
event arrives block_duration or more after the current block started, or
block_duration or more after the block's previous event.

Blocks are immutable. Whether a block is active is derived from
(blocks, now) on every pass; find_active_block re-derives it from timestamps
alone so callers never depend on a flag computed against a stale clock.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple, Union

from .token_counter import TokenCounts, sum_token_counts
from ccmeter.storage.models import ResolvedUsage

DEFAULT_BLOCK_DURATION = timedelta(hours=5)


@dataclass(frozen=True)
class BillingBlock:
    """A billing block, or a synthetic gap block covering idle time."""
    block_id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: Optional[datetime]
    events: Tuple[ResolvedUsage, ...]
    token_counts: TokenCounts
    cost_usd: float
    models: Tuple[str, ...]
    is_active: bool = False
    is_gap: bool = False

    @property
    def message_count(self) -> int:
        return len(self.events)

    @property
    def unpriced_count(self) -> int:
        return sum(1 for e in self.events if e.unpriced)

    def is_open_at(self, moment: datetime) -> bool:
        """True until the block's nominal window has ended.

        There is no lower bound: events stamped slightly after `moment`
        (clock skew) still belong to an open block.
        """
        return moment < self.end_time


def segment_blocks(
    events: Sequence[ResolvedUsage],
    block_duration: timedelta = DEFAULT_BLOCK_DURATION,
    now: Optional[datetime] = None,
    include_gaps: bool = False,
) -> List[BillingBlock]:
    """Group events into billing blocks.

    Args:
        events: Costed events; sorted by timestamp here (stable) if needed
        block_duration: Nominal length of every block
        now: Reference time for the active flag (defaults to the current time)
        include_gaps: Insert gap blocks for idle periods longer than the
            block duration; gaps carry no events and are never active

    Returns:
        Time-ordered, non-overlapping blocks. Only the last real block can be
        active, and only while now < end_time.
    """
    if block_duration <= timedelta(0):
        raise ValueError("block_duration must be positive")
    if not events:
        return []

    now = now or datetime.now(timezone.utc)
    ordered = sorted(events, key=lambda e: e.timestamp)

    groups: List[List[ResolvedUsage]] = []
    current: List[ResolvedUsage] = []
    block_start: Optional[datetime] = None

    for event in ordered:
        if block_start is None:
            block_start = event.timestamp
            current = [event]
            continue

        since_start = event.timestamp - block_start
        since_last = event.timestamp - current[-1].timestamp
        if since_start >= block_duration or since_last >= block_duration:
            groups.append(current)
            block_start = event.timestamp
            current = [event]
        else:
            current.append(event)

    groups.append(current)

    blocks: List[BillingBlock] = []
    for index, group in enumerate(groups):
        if include_gaps and blocks:
            gap = _gap_block(blocks[-1].actual_end_time, group[0].timestamp, block_duration)
            if gap is not None:
                blocks.append(gap)

        end = group[0].timestamp + block_duration
        is_last = index == len(groups) - 1
        blocks.append(_build_block(group, block_duration, is_last and now < end))

    return blocks


def _build_block(
    entries: List[ResolvedUsage],
    block_duration: timedelta,
    is_active: bool,
) -> BillingBlock:
    start = entries[0].timestamp
    models = sorted({e.model for e in entries if e.model})
    return BillingBlock(
        block_id=start.isoformat(),
        start_time=start,
        end_time=start + block_duration,
        actual_end_time=entries[-1].timestamp,
        events=tuple(entries),
        token_counts=sum_token_counts(e.tokens for e in entries),
        cost_usd=math.fsum(sorted(e.cost_usd for e in entries)),
        models=tuple(models),
        is_active=is_active,
    )


def _gap_block(
    last_activity: Optional[datetime],
    next_activity: datetime,
    block_duration: timedelta,
) -> Optional[BillingBlock]:
    """Gap covering [last_activity + duration, next_activity), if non-empty."""
    if last_activity is None or next_activity - last_activity <= block_duration:
        return None
    gap_start = last_activity + block_duration
    return BillingBlock(
        block_id=f"gap-{gap_start.isoformat()}",
        start_time=gap_start,
        end_time=next_activity,
        actual_end_time=None,
        events=(),
        token_counts=TokenCounts(),
        cost_usd=0.0,
        models=(),
        is_active=False,
        is_gap=True,
    )


def real_blocks(blocks: Sequence[BillingBlock]) -> List[BillingBlock]:
    """Blocks that hold events (gap blocks removed)."""
    return [b for b in blocks if not b.is_gap]


def find_active_block(blocks: Sequence[BillingBlock], now: datetime) -> Optional[BillingBlock]:
    """Derive the active block from timestamps.

    Only the most recently started real block can be active, and only while
    now is before its end_time.
    """
    candidates = real_blocks(blocks)
    if not candidates:
        return None
    latest = max(candidates, key=lambda b: b.start_time)
    return latest if latest.is_open_at(now) else None


def filter_recent_blocks(
    blocks: Sequence[BillingBlock],
    now: datetime,
    days: int = 3,
) -> List[BillingBlock]:
    """Blocks that started within the last `days` days, plus the active block."""
    cutoff = now - timedelta(days=days)
    active = find_active_block(blocks, now)
    return [b for b in blocks if b.start_time >= cutoff or b is active]


def max_tokens_from_completed_blocks(
    blocks: Sequence[BillingBlock],
    now: datetime,
) -> Optional[int]:
    """Largest total-token count of any real block that is not active."""
    active = find_active_block(blocks, now)
    totals = [
        b.token_counts.total_tokens
        for b in real_blocks(blocks)
        if b is not active
    ]
    return max(totals) if totals else None


def resolve_token_limit(
    token_limit: Union[int, str, None],
    blocks: Sequence[BillingBlock],
    now: datetime,
) -> Optional[int]:
    """Turn a configured token limit into a number.

    "max" resolves to the largest completed block; 0, None or a "max" with no
    completed blocks means no limit.
    """
    if token_limit == "max":
        return max_tokens_from_completed_blocks(blocks, now) or None
    if isinstance(token_limit, int) and token_limit > 0:
        return token_limit
    return None
