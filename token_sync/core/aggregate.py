"""
Per-day, per-model usage aggregation.

Folds a batch of usage records into one entry per (day, model).
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .extractor import RecordMode, UsageRecord
from .tokens import TOKEN_AXES, RequiredTotals, compose_total, normalize_totals


@dataclass(frozen=True)
class AggregatedUsage:
    """Token totals for one day and model."""
    day: str
    model: str
    tokens: RequiredTotals

    @property
    def key(self) -> str:
        return f"{self.day}::{self.model}"


def _zeros() -> Dict[str, int]:
    return {axis: 0 for axis in TOKEN_AXES}


def aggregate_usage(records: Iterable[UsageRecord]) -> List[AggregatedUsage]:
    """Aggregate usage records per (day, model).

    Delta records are summed. Cumulative records that were not converted
    to deltas are never summed: each source contributes its per-axis
    maximum for the day and model, and those maxima are then added to the
    group. The total is recomputed from the axes (see `compose_total`);
    reported totals are only a fallback.

    Args:
        records: Usage records from one run

    Returns:
        Aggregated entries sorted by day, then model name
    """
    groups: Dict[Tuple[str, str], Dict[str, int]] = {}
    peaks: Dict[Tuple[str, str, str], Dict[str, int]] = {}

    for record in records:
        values = normalize_totals(record.tokens)
        if record.mode == RecordMode.CUMULATIVE:
            peak = peaks.setdefault((record.day, record.model, record.source), _zeros())
            for axis in TOKEN_AXES:
                peak[axis] = max(peak[axis], getattr(values, axis))
            continue

        group = groups.setdefault((record.day, record.model), _zeros())
        for axis in TOKEN_AXES:
            group[axis] += getattr(values, axis)

    for (day, model, _source), peak in peaks.items():
        group = groups.setdefault((day, model), _zeros())
        for axis in TOKEN_AXES:
            group[axis] += peak[axis]

    aggregated = []
    for (day, model), group in groups.items():
        total = compose_total(
            group["input"],
            group["output"],
            group["cache"],
            group["thinking"],
            reported_total=group["total"],
        )
        aggregated.append(
            AggregatedUsage(
                day=day,
                model=model,
                tokens=RequiredTotals(
                    input=group["input"],
                    output=group["output"],
                    cache=group["cache"],
                    thinking=group["thinking"],
                    total=total,
                ),
            )
        )

    aggregated.sort(key=lambda entry: (entry.day, entry.model))
    return aggregated
