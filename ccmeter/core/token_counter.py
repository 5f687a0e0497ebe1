"""
Token counting and usage tracking.

Holds the four token categories reported by the assistant's usage logs.
"""

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class TokenCounts:
    """Token counts for one event or an aggregate of events.

    Contains exact integer counts; missing categories are 0.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self):
        """Validate counts are non-negative."""
        for name in ("input_tokens", "output_tokens",
                     "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens across all categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def non_cache_tokens(self) -> int:
        """Input plus output tokens, ignoring cache traffic."""
        return self.input_tokens + self.output_tokens

    @property
    def context_tokens(self) -> int:
        """Size of the prompt sent with the request (input + cache read + cache write)."""
        return self.input_tokens + self.cache_read_tokens + self.cache_creation_tokens

    def __add__(self, other: "TokenCounts") -> "TokenCounts":
        if not isinstance(other, TokenCounts):
            return NotImplemented
        return TokenCounts(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )


def sum_token_counts(counts: Iterable[TokenCounts]) -> TokenCounts:
    """Sum token counts exactly."""
    total = TokenCounts()
    for item in counts:
        total = total + item
    return total
