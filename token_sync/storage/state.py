"""
Persisted sync state.

Holds the file cursors, cumulative snapshots, daily totals ledger and the
metadata of the last run. The state is read once at the start of a run
and written once at the end.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from token_sync.config.loader import get_config_dir
from token_sync.core.reader import FileCursor
from token_sync.core.tokens import RequiredTotals
from token_sync.diagnostics.errors import SafeErrorContext
from .files import write_private_file

STATE_FILE = "state.json"
STATE_VERSION = 1

_METADATA_FIELDS = (
    "last_run_at",
    "last_success_at",
    "last_error",
    "last_note",
    "last_sources_count",
    "last_records_parsed",
    "last_aggregated_entries",
    "last_total_tokens",
    "last_warnings_count",
)


class StateError(Exception):
    """Raised when the persisted state file is corrupt."""


class SyncStatus(Enum):
    """Outcome of a sync run."""
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class SyncState:
    """Everything token-sync remembers between runs."""
    last_run_at: Optional[str] = None
    last_success_at: Optional[str] = None
    last_status: Optional[SyncStatus] = None
    last_error: Optional[str] = None
    last_error_context: Optional[SafeErrorContext] = None
    last_note: Optional[str] = None
    last_sources_count: Optional[int] = None
    last_records_parsed: Optional[int] = None
    last_aggregated_entries: Optional[int] = None
    last_total_tokens: Optional[int] = None
    last_warnings_count: Optional[int] = None
    file_cursors: Dict[str, FileCursor] = field(default_factory=dict)
    cumulative_totals: Dict[str, RequiredTotals] = field(default_factory=dict)
    daily_totals: Dict[str, RequiredTotals] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": STATE_VERSION}
        for name in _METADATA_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.last_status is not None:
            data["last_status"] = self.last_status.value
        if self.last_error_context is not None:
            data["last_error_context"] = self.last_error_context.to_dict()
        data["file_cursors"] = {path: cursor.to_dict() for path, cursor in self.file_cursors.items()}
        data["cumulative_totals"] = {
            key: totals.to_dict() for key, totals in self.cumulative_totals.items()
        }
        data["daily_totals"] = {key: totals.to_dict() for key, totals in self.daily_totals.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        data = migrate_state(data)
        state = cls()
        for name in _METADATA_FIELDS:
            if data.get(name) is not None:
                setattr(state, name, data[name])

        try:
            state.last_status = SyncStatus(data["last_status"]) if data.get("last_status") else None
        except ValueError:
            state.last_status = None
        state.last_error_context = SafeErrorContext.from_dict(data.get("last_error_context"))

        state.file_cursors = {
            path: FileCursor.from_dict(cursor)
            for path, cursor in _as_mapping(data.get("file_cursors")).items()
            if isinstance(cursor, dict)
        }
        state.cumulative_totals = {
            key: RequiredTotals.from_dict(totals)
            for key, totals in _as_mapping(data.get("cumulative_totals")).items()
            if isinstance(totals, dict)
        }
        state.daily_totals = {
            key: RequiredTotals.from_dict(totals)
            for key, totals in _as_mapping(data.get("daily_totals")).items()
            if isinstance(totals, dict)
        }
        return state


def _as_mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def migrate_state(data: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a raw state mapping up to the current layout.

    State written by earlier releases used camelCase top-level keys
    (`lastRunAt`, `fileCursors`, ...). Those are renamed once here so the
    rest of the code only deals with one spelling.
    """
    migrated: Dict[str, Any] = {}
    for key, value in data.items():
        snake = _snake_case(key)
        if snake in migrated and key != snake:
            continue
        migrated[snake] = value
    migrated["version"] = STATE_VERSION
    return migrated


def get_state_file_path(config_dir: Optional[Path] = None) -> Path:
    return (config_dir or get_config_dir()) / STATE_FILE


def read_sync_state(config_dir: Optional[Path] = None) -> SyncState:
    """Read the sync state, or an empty state when none exists.

    Raises:
        StateError: If the file exists but is not valid JSON
    """
    path = get_state_file_path(config_dir)
    if not path.exists():
        return SyncState()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StateError(f"Invalid sync state JSON at {path}: {e}")
    except OSError as e:
        raise StateError(f"Unable to read sync state at {path}: {e}")

    if not isinstance(raw, dict):
        raise StateError(f"Invalid sync state JSON at {path}: expected an object")
    return SyncState.from_dict(raw)


def write_sync_state(state: SyncState, config_dir: Optional[Path] = None) -> Path:
    path = get_state_file_path(config_dir)
    write_private_file(path, json.dumps(state.to_dict(), indent=2) + "\n")
    return path
