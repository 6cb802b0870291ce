"""
Unit tests for rate limiting, watch timing and payload construction.
"""

from datetime import datetime, timedelta, timezone

from token_sync.core.payload import build_sync_payload
from token_sync.core.scheduler import (
    compute_next_run,
    format_duration,
    format_iso,
    get_rate_limit_status,
    parse_iso,
)
from token_sync.core.tokens import RequiredTotals

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestRateLimit:
    """Test the 15-minute upload window."""

    def test_no_previous_success(self):
        assert get_rate_limit_status(None, NOW).limited is False

    def test_recent_success_is_limited(self):
        last = format_iso(NOW - timedelta(minutes=5))

        status = get_rate_limit_status(last, NOW)

        assert status.limited is True
        assert status.next_allowed_at == "2025-01-01T12:10:00.000Z"

    def test_old_success_is_not_limited(self):
        last = format_iso(NOW - timedelta(minutes=16))
        assert get_rate_limit_status(last, NOW).limited is False

    def test_unparseable_timestamp_never_limits(self):
        assert get_rate_limit_status("yesterday", NOW).limited is False


class TestWatchTiming:
    """Test next-run computation."""

    def test_next_run_within_jitter_window(self):
        next_run = compute_next_run(format_iso(NOW), now=NOW)

        assert 15 * 60 <= next_run.delay_seconds <= 17 * 60
        target = parse_iso(next_run.next_run_at)
        assert NOW + timedelta(minutes=15) <= target <= NOW + timedelta(minutes=17)

    def test_overdue_run_has_zero_delay(self):
        base = format_iso(NOW - timedelta(hours=1))
        assert compute_next_run(base, now=NOW).delay_seconds == 0

    def test_format_duration(self):
        assert format_duration(42) == "42s"
        assert format_duration(905) == "15m 5s"

    def test_format_iso_uses_milliseconds(self):
        moment = datetime(2025, 1, 1, 0, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_iso(moment) == "2025-01-01T00:00:00.123Z"


class TestSyncPayload:
    """Test payload construction."""

    def test_totals_are_sorted(self):
        totals = {
            "2025-01-02::a": RequiredTotals(input=1, total=1),
            "2025-01-01::b": RequiredTotals(input=2, total=2),
            "2025-01-01::a": RequiredTotals(input=3, total=3),
        }

        payload = build_sync_payload(totals, generated_at="2025-01-03T00:00:00.000Z")

        assert payload["version"] == 1
        assert payload["generatedAt"] == "2025-01-03T00:00:00.000Z"
        assert [(t["day"], t["model"]) for t in payload["totals"]] == [
            ("2025-01-01", "a"),
            ("2025-01-01", "b"),
            ("2025-01-02", "a"),
        ]
        assert payload["totals"][0]["tokens"] == {
            "input": 3, "output": 0, "cache": 0, "thinking": 0, "total": 3,
        }

    def test_device_fields(self):
        payload = build_sync_payload({}, device_id="abc", device_name="  ")

        assert payload["deviceId"] == "abc"
        assert "deviceName" not in payload
        assert payload["totals"] == []
