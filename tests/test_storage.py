"""
Unit tests for storage layer.

Tests the sync state file, device identity and the offline upload queue.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from token_sync.core.reader import FileCursor
from token_sync.core.tokens import RequiredTotals
from token_sync.diagnostics.errors import SafeErrorContext
from token_sync.storage.db import get_connection
from token_sync.storage.device import DEVICE_VERSION, DeviceError, get_or_create_device_info
from token_sync.storage.queue import (
    MAX_QUEUE_SIZE,
    count_queue,
    enqueue_payload,
    initialize_schema,
    read_queue,
    record_queue_attempt,
    remove_queue_items,
)
from token_sync.storage.state import (
    StateError,
    SyncState,
    SyncStatus,
    get_state_file_path,
    read_sync_state,
    write_sync_state,
)


class TestSyncState:
    """Test sync state persistence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_dir = Path(self.temp_dir)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_state_is_empty(self):
        state = read_sync_state(self.config_dir)

        assert state.last_run_at is None
        assert state.file_cursors == {}
        assert state.daily_totals == {}

    def test_write_then_read(self):
        state = SyncState(
            last_run_at="2025-01-01T00:00:00.000Z",
            last_status=SyncStatus.SKIPPED,
            last_note="Local-only mode enabled. No upload attempted.",
            last_error_context=SafeErrorContext(at="t", code="SYNC_API_ERROR", message="boom"),
            file_cursors={"/a.jsonl": FileCursor(last_line=2, last_size=10, last_mtime_ms=1)},
            cumulative_totals={"/a.jsonl::2025-01-01::m": RequiredTotals(input=5)},
            daily_totals={"2025-01-01::m": RequiredTotals(input=5, total=5)},
        )

        path = write_sync_state(state, self.config_dir)
        loaded = read_sync_state(self.config_dir)

        assert loaded.last_status == SyncStatus.SKIPPED
        assert loaded.last_note == state.last_note
        assert loaded.last_error_context.code == "SYNC_API_ERROR"
        assert loaded.file_cursors == state.file_cursors
        assert loaded.cumulative_totals == state.cumulative_totals
        assert loaded.daily_totals == state.daily_totals
        assert oct(path.stat().st_mode & 0o777) == oct(0o600)

    def test_corrupt_state_raises(self):
        get_state_file_path(self.config_dir).write_text("{not json", encoding="utf-8")

        with pytest.raises(StateError, match="Invalid sync state JSON"):
            read_sync_state(self.config_dir)

    def test_camel_case_state_is_migrated(self):
        legacy = {
            "lastRunAt": "2025-01-01T00:00:00.000Z",
            "lastSuccessAt": "2025-01-01T00:00:00.000Z",
            "lastStatus": "success",
            "fileCursors": {"/a.jsonl": {"lastLine": 4, "lastSize": 9, "lastMtimeMs": 2}},
            "dailyTotals": {"2025-01-01::m": {"input": 3, "output": 1, "total": 4}},
        }
        get_state_file_path(self.config_dir).write_text(json.dumps(legacy), encoding="utf-8")

        state = read_sync_state(self.config_dir)

        assert state.last_run_at == "2025-01-01T00:00:00.000Z"
        assert state.last_status == SyncStatus.SUCCESS
        assert state.file_cursors["/a.jsonl"].last_line == 4
        assert state.daily_totals["2025-01-01::m"] == RequiredTotals(input=3, output=1, total=4)


class TestDeviceInfo:
    """Test device identity creation and migration."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_dir = Path(self.temp_dir)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_created_once_and_stable(self):
        first = get_or_create_device_info(self.config_dir)
        second = get_or_create_device_info(self.config_dir)

        assert first.device_id == second.device_id
        assert first.version == DEVICE_VERSION

    def test_v1_file_is_migrated(self):
        path = self.config_dir / "device.json"
        path.write_text(json.dumps({
            "version": 1,
            "deviceId": "legacy-id",
            "createdAt": "2024-01-01T00:00:00.000Z",
        }), encoding="utf-8")

        with patch("token_sync.storage.device.socket.gethostname", return_value="  workstation  "):
            device = get_or_create_device_info(self.config_dir)

        assert device.device_id == "legacy-id"
        assert device.device_name == "workstation"
        assert device.created_at == "2024-01-01T00:00:00.000Z"
        stored = json.loads(path.read_text(encoding="utf-8"))
        assert stored["version"] == 2
        assert stored["device_name"] == "workstation"

    def test_corrupt_device_file_raises(self):
        (self.config_dir / "device.json").write_text("nope", encoding="utf-8")

        with pytest.raises(DeviceError):
            get_or_create_device_info(self.config_dir)

    def test_blank_hostname_falls_back(self):
        with patch("token_sync.storage.device.socket.gethostname", return_value=" "):
            device = get_or_create_device_info(self.config_dir)

        assert device.device_name == "unknown"


class TestUploadQueue:
    """Test the bounded offline upload queue."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "queue.db")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_schema_creation(self):
        initialize_schema(self.db_path)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("PRAGMA table_info(upload_queue)")
            column_names = [col[1] for col in cursor.fetchall()]
        finally:
            conn.close()

        assert column_names == [
            "seq", "id", "created_at", "payload", "attempts", "last_error", "last_attempt_at",
        ]

    def test_enqueue_and_read_in_order(self):
        enqueue_payload({"n": 1}, self.db_path)
        queue = enqueue_payload({"n": 2}, self.db_path, reason="HTTP 503")

        assert [item.payload for item in queue] == [{"n": 1}, {"n": 2}]
        assert queue[1].last_error == "HTTP 503"
        assert queue[0].attempts == 0

    def test_queue_is_bounded(self):
        for n in range(MAX_QUEUE_SIZE + 5):
            enqueue_payload({"n": n}, self.db_path)

        queue = read_queue(self.db_path)

        assert len(queue) == MAX_QUEUE_SIZE
        assert queue[0].payload == {"n": 5}
        assert queue[-1].payload == {"n": MAX_QUEUE_SIZE + 4}

    def test_remove_and_record_attempt(self):
        enqueue_payload({"n": 1}, self.db_path)
        enqueue_payload({"n": 2}, self.db_path)
        first, second = read_queue(self.db_path)

        remove_queue_items([first.id], self.db_path)
        record_queue_attempt(second.id, "2025-01-01T00:00:00.000Z", "timeout", self.db_path)

        (remaining,) = read_queue(self.db_path)
        assert remaining.id == second.id
        assert remaining.attempts == 1
        assert remaining.last_error == "timeout"
        assert remaining.last_attempt_at == "2025-01-01T00:00:00.000Z"
        assert count_queue(self.db_path) == 1

    def test_empty_queue(self):
        assert read_queue(self.db_path) == []
        remove_queue_items([], self.db_path)
        assert count_queue(self.db_path) == 0
