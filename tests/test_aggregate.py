"""
Unit tests for total composition and per-day aggregation.
"""

from token_sync.core.aggregate import aggregate_usage
from token_sync.core.extractor import RecordMode, UsageRecord
from token_sync.core.tokens import RequiredTotals, TokenTotals, compose_total, normalize_totals


def _record(day="2025-01-01", model="gpt-5", source="a.jsonl", mode=RecordMode.DELTA, **tokens):
    return UsageRecord(day=day, model=model, tokens=TokenTotals(**tokens), source=source, mode=mode)


class TestComposeTotal:
    """Test the grand total formula."""

    def test_cache_is_subset_of_input(self):
        assert compose_total(10, 5, 2, 3) == 18

    def test_cache_larger_than_input_is_added(self):
        assert compose_total(2, 5, 10, 0) == 17

    def test_cache_only(self):
        assert compose_total(0, 0, 7, 0) == 7

    def test_reported_total_is_last_fallback(self):
        assert compose_total(0, 0, 0, 0, reported_total=50) == 50

    def test_never_negative(self):
        assert compose_total(0, 0, 0, 0, reported_total=-5) == 0


class TestNormalizeTotals:
    """Test conversion of partial totals."""

    def test_missing_axes_become_zero(self):
        totals = normalize_totals(TokenTotals(input=4))
        assert totals == RequiredTotals(input=4)

    def test_none_is_empty(self):
        assert normalize_totals(None).is_zero()

    def test_from_dict_ignores_non_numeric(self):
        totals = RequiredTotals.from_dict({"input": "12", "output": True, "cache": 3.9})
        assert totals == RequiredTotals(input=0, output=0, cache=3)


class TestAggregateUsage:
    """Test aggregation of delta and cumulative records."""

    def test_delta_records_are_summed(self):
        records = [
            _record(input=10, output=3),
            _record(input=3, output=4),
        ]

        aggregated = aggregate_usage(records)

        assert len(aggregated) == 1
        tokens = aggregated[0].tokens
        assert tokens.input == 13
        assert tokens.output == 7
        assert tokens.total == 20

    def test_cumulative_records_take_per_axis_max(self):
        records = [
            _record(input=5, output=2, mode=RecordMode.CUMULATIVE),
            _record(input=7, output=3, mode=RecordMode.CUMULATIVE),
        ]

        tokens = aggregate_usage(records)[0].tokens

        assert tokens.input == 7
        assert tokens.output == 3
        assert tokens.total == 10

    def test_cumulative_maxima_from_different_sources_are_added(self):
        records = [
            _record(source="a.jsonl", input=5, mode=RecordMode.CUMULATIVE),
            _record(source="a.jsonl", input=8, mode=RecordMode.CUMULATIVE),
            _record(source="b.jsonl", input=4, mode=RecordMode.CUMULATIVE),
            _record(input=1),
        ]

        tokens = aggregate_usage(records)[0].tokens

        assert tokens.input == 13

    def test_cache_and_thinking_in_total(self):
        records = [_record(input=10, output=5, cache=2, thinking=3)]

        tokens = aggregate_usage(records)[0].tokens

        assert tokens.total == 18

    def test_reported_total_ignored_when_axes_present(self):
        records = [_record(input=10, output=5, total=999)]

        assert aggregate_usage(records)[0].tokens.total == 15

    def test_sorted_by_day_then_model(self):
        records = [
            _record(day="2025-01-02", model="a", input=1),
            _record(day="2025-01-01", model="b", input=1),
            _record(day="2025-01-01", model="a", input=1),
        ]

        keys = [entry.key for entry in aggregate_usage(records)]

        assert keys == ["2025-01-01::a", "2025-01-01::b", "2025-01-02::a"]

    def test_empty_input(self):
        assert aggregate_usage([]) == []


class TestAggregateScenarios:
    """End-to-end aggregation scenarios."""

    def test_two_deltas(self):
        records = [
            _record(day="2026-01-02", model="gpt-4", input=10, output=5),
            _record(day="2026-01-02", model="gpt-4", input=3, output=2),
        ]

        (entry,) = aggregate_usage(records)

        assert entry.key == "2026-01-02::gpt-4"
        assert entry.tokens == RequiredTotals(input=13, output=7, total=20)

    def test_raw_cumulative_series_with_reset_is_not_summed(self):
        records = [
            _record(day="2026-01-03", source="source-a", input=5, output=2, mode=RecordMode.CUMULATIVE),
            _record(day="2026-01-03", source="source-a", input=3, output=1, mode=RecordMode.CUMULATIVE),
            _record(day="2026-01-03", source="source-b", input=2, output=1, mode=RecordMode.CUMULATIVE),
        ]

        (entry,) = aggregate_usage(records)

        assert entry.tokens == RequiredTotals(input=7, output=3, total=10)

    def test_cache_within_input_and_thinking(self):
        records = [_record(input=10, output=6, cache=4, thinking=2)]

        (entry,) = aggregate_usage(records)

        assert entry.tokens.total == 18
