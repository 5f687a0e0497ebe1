"""
Data models for usage events.

Defines the normalized event produced by the loader and the costed event
produced by the cost resolver.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from ccmeter.core.token_counter import TokenCounts


class CostSource(Enum):
    """Where a resolved cost came from."""
    PRECOMPUTED = "precomputed"  # costUSD written in the log
    CALCULATED = "calculated"    # computed from tokens and model pricing
    NONE = "none"                # no cost available, resolved to 0


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one assistant interaction.

    Events come from append-only logs and are never modified once loaded.
    Timestamps are always timezone-aware UTC.
    """
    timestamp: datetime
    session_id: str
    project: str
    tokens: TokenCounts
    request_id: Optional[str] = None
    message_id: Optional[str] = None
    model: Optional[str] = None
    precomputed_cost_usd: Optional[float] = None
    is_error_event: bool = False
    source: str = ""

    def __post_init__(self):
        """Validate the event is usable downstream."""
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        if self.precomputed_cost_usd is not None and self.precomputed_cost_usd < 0:
            raise ValueError("precomputed_cost_usd cannot be negative")

    @property
    def dedup_key(self) -> Tuple[str, ...]:
        """Identity used to collapse the same event seen in several sources."""
        if self.request_id:
            return ("request", self.session_id, self.request_id)
        return ("fallback", self.session_id, self.timestamp.isoformat(), self.model or "")


@dataclass(frozen=True)
class ResolvedUsage:
    """A usage event with its resolved USD cost."""
    event: UsageEvent
    cost_usd: float
    cost_source: CostSource
    unpriced: bool = False
    pricing_model: Optional[str] = None

    def __post_init__(self):
        if self.cost_usd < 0:
            raise ValueError("cost_usd cannot be negative")

    @property
    def timestamp(self) -> datetime:
        return self.event.timestamp

    @property
    def session_id(self) -> str:
        return self.event.session_id

    @property
    def project(self) -> str:
        return self.event.project

    @property
    def model(self) -> Optional[str]:
        return self.event.model

    @property
    def tokens(self) -> TokenCounts:
        return self.event.tokens
