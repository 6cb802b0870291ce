"""
Cumulative usage reconciliation.

Converts running-total (cumulative) records into deltas against the last
snapshot seen for the same source, day and model.

Reset policy:
A cumulative value lower than the stored snapshot on any axis means the
source's counter restarted. Negative deltas are clamped to zero, so the
ledger under-counts rather than over-counts, and the new value becomes the
baseline for later runs.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Sequence

from .extractor import RecordMode, UsageRecord
from .tokens import TOKEN_AXES, RequiredTotals, TokenTotals, empty_totals, normalize_totals

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Delta-only records plus the snapshot map to persist."""
    records: List[UsageRecord] = field(default_factory=list)
    cumulative: Dict[str, RequiredTotals] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def cumulative_key(record: UsageRecord) -> str:
    """Snapshot key: `source::day::model`."""
    return f"{record.source}::{record.day}::{record.model}"


def apply_cumulative_adjustments(
    records: Sequence[UsageRecord],
    cumulative: Mapping[str, RequiredTotals],
) -> ReconcileResult:
    """Replace cumulative records with deltas against stored snapshots.

    Delta records pass through unchanged. For each cumulative record the
    previous snapshot for its key (all zeros if none) is subtracted:

    - any negative axis is a counter reset: warn once per key, clamp to 0
    - an all-zero delta is a re-observation of the same snapshot and is
      dropped
    - anything else becomes a delta record

    The snapshot is replaced by the current value in every case.

    Args:
        records: Records parsed in this run
        cumulative: Snapshots persisted by earlier runs (not modified)

    Returns:
        ReconcileResult with delta records, next snapshots and warnings
    """
    result = ReconcileResult(cumulative=dict(cumulative))
    reset_keys = set()

    for record in records:
        if record.mode != RecordMode.CUMULATIVE:
            result.records.append(record)
            continue

        key = cumulative_key(record)
        previous = result.cumulative.get(key, empty_totals())
        current = normalize_totals(record.tokens)

        deltas = {axis: getattr(current, axis) - getattr(previous, axis) for axis in TOKEN_AXES}

        if any(value < 0 for value in deltas.values()) and key not in reset_keys:
            reset_keys.add(key)
            logger.warning("Cumulative counter reset for %s", key)
            result.warnings.append(f"Cumulative totals reset detected for {record.source}.")

        clamped = {axis: max(0, value) for axis, value in deltas.items()}
        result.cumulative[key] = current

        if not any(clamped.values()):
            continue

        result.records.append(
            replace(record, tokens=TokenTotals(**clamped), mode=RecordMode.DELTA)
        )

    return result
