"""
Usage pipeline for a single sync run.

Walks the parse -> reconcile -> aggregate -> merge chain over copies of the
persisted state. Nothing here touches the network or writes state; the
caller persists the returned maps once the run is complete.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from .aggregate import AggregatedUsage, aggregate_usage
from .merge import merge_aggregates, split_totals_key
from .reader import FileCursor, parse_usage_sources
from .reconcile import apply_cumulative_adjustments
from .sources import UsageSource
from .tokens import RequiredTotals

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one run produces, ready to persist and upload."""
    records_parsed: int
    aggregates: List[AggregatedUsage]
    cursors: Dict[str, FileCursor]
    cumulative: Dict[str, RequiredTotals]
    daily_totals: Dict[str, RequiredTotals]
    warnings: List[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(tokens.total for tokens in self.daily_totals.values())

    @property
    def days(self) -> int:
        return len({split_totals_key(key)[0] for key in self.daily_totals})

    @property
    def models(self) -> int:
        return len({split_totals_key(key)[1] for key in self.daily_totals})


def run_pipeline(
    sources: Iterable[UsageSource],
    cursors: Optional[Mapping[str, FileCursor]] = None,
    cumulative: Optional[Mapping[str, RequiredTotals]] = None,
    daily_totals: Optional[Mapping[str, RequiredTotals]] = None,
) -> PipelineResult:
    """Run the usage pipeline over discovered sources.

    Args:
        sources: Sources from discovery
        cursors: Persisted file cursors
        cumulative: Persisted cumulative snapshots (`source::day::model`)
        daily_totals: Persisted grand totals (`day::model`)

    Returns:
        PipelineResult with the next cursors, snapshots and grand totals
    """
    parsed = parse_usage_sources(sources, cursors or {})
    adjusted = apply_cumulative_adjustments(parsed.records, cumulative or {})
    aggregates = aggregate_usage(adjusted.records)
    merged = merge_aggregates(daily_totals or {}, aggregates)

    logger.info(
        "Pipeline parsed %d records into %d aggregates (%d warnings)",
        len(parsed.records), len(aggregates), len(parsed.warnings) + len(adjusted.warnings),
    )

    return PipelineResult(
        records_parsed=len(parsed.records),
        aggregates=aggregates,
        cursors=parsed.cursors,
        cumulative=adjusted.cumulative,
        daily_totals=merged,
        warnings=parsed.warnings + adjusted.warnings,
    )
