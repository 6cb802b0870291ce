"""
Token counts and total composition.

Defines the five token axes shared by the whole pipeline.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

TOKEN_AXES = ("input", "output", "cache", "thinking", "total")


@dataclass(frozen=True)
class TokenTotals:
    """Partial token counts as extracted from a log entry.

    An axis set to None means the source did not report it.
    """
    input: Optional[int] = None
    output: Optional[int] = None
    cache: Optional[int] = None
    thinking: Optional[int] = None
    total: Optional[int] = None

    def has_any(self) -> bool:
        """True when at least one axis was resolved."""
        return any(getattr(self, axis) is not None for axis in TOKEN_AXES)


@dataclass(frozen=True)
class RequiredTotals:
    """Token counts with every axis present.

    `total` is derived by the aggregator; values read from sources are
    only a fallback.
    """
    input: int = 0
    output: int = 0
    cache: int = 0
    thinking: int = 0
    total: int = 0

    def add(self, other: "RequiredTotals") -> "RequiredTotals":
        """Return the axis-wise sum of two totals."""
        return RequiredTotals(
            input=self.input + other.input,
            output=self.output + other.output,
            cache=self.cache + other.cache,
            thinking=self.thinking + other.thinking,
            total=self.total + other.total,
        )

    def is_zero(self) -> bool:
        return all(getattr(self, axis) == 0 for axis in TOKEN_AXES)

    def to_dict(self) -> Dict[str, int]:
        return {axis: getattr(self, axis) for axis in TOKEN_AXES}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "RequiredTotals":
        """Build totals from a persisted mapping.

        Missing or non-numeric axes become 0 so that older state files
        remain readable.
        """
        values = {}
        for axis in TOKEN_AXES:
            raw = data.get(axis, 0)
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raw = 0
            values[axis] = int(raw)
        return cls(**values)


def empty_totals() -> RequiredTotals:
    """All-zero totals."""
    return RequiredTotals()


def normalize_totals(tokens: Optional[TokenTotals]) -> RequiredTotals:
    """Convert partial totals to required totals, treating unknown as 0."""
    if tokens is None:
        return empty_totals()
    return RequiredTotals(
        input=tokens.input or 0,
        output=tokens.output or 0,
        cache=tokens.cache or 0,
        thinking=tokens.thinking or 0,
        total=tokens.total or 0,
    )


def compose_total(
    input_tokens: int,
    output_tokens: int,
    cache_tokens: int,
    thinking_tokens: int,
    reported_total: int = 0,
) -> int:
    """Derive the grand total from the individual axes.

    Cached tokens are a subset of input. When the cache figure exceeds the
    input figure, the input is assumed to exclude cached tokens and the
    two are added. Thinking tokens are added to output.

    Args:
        input_tokens: Input (prompt) tokens
        output_tokens: Output (completion) tokens
        cache_tokens: Cached input tokens
        thinking_tokens: Reasoning tokens
        reported_total: Total reported by the source, used only when
            nothing else yields a positive figure

    Returns:
        The composed total
    """
    if cache_tokens > input_tokens:
        input_total = input_tokens + cache_tokens
    elif input_tokens > 0:
        input_total = input_tokens
    else:
        input_total = cache_tokens

    output_total = output_tokens + thinking_tokens
    composed = input_total + output_total
    if composed > 0:
        return composed

    plain_sum = input_tokens + output_tokens + cache_tokens + thinking_tokens
    if plain_sum > 0:
        return plain_sum
    return max(0, reported_total)
