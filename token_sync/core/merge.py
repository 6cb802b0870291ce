"""
Daily totals ledger merging.
"""

from typing import Dict, Iterable, Mapping, Tuple

from .aggregate import AggregatedUsage
from .tokens import RequiredTotals, empty_totals


def merge_aggregates(
    existing: Mapping[str, RequiredTotals],
    aggregates: Iterable[AggregatedUsage],
) -> Dict[str, RequiredTotals]:
    """Add a run's aggregates onto the persisted `day::model` totals.

    Purely additive: keys not present in `aggregates` are carried over
    unchanged and new keys start from zero. `existing` is not modified.

    Args:
        existing: Grand totals from earlier runs
        aggregates: This run's aggregated deltas

    Returns:
        The next grand totals
    """
    merged = dict(existing)
    for aggregate in aggregates:
        merged[aggregate.key] = merged.get(aggregate.key, empty_totals()).add(aggregate.tokens)
    return merged


def split_totals_key(key: str) -> Tuple[str, str]:
    """Split a `day::model` key. Model names may themselves contain `::`."""
    day, _, model = key.partition("::")
    return day, model
