"""
Incremental usage file reading.

Keeps a per-file cursor so repeated runs only parse content appended since
the previous run.

Cursor rules:
1. Size and mtime unchanged - the file is skipped entirely
2. Size smaller than recorded - the file was truncated or rotated, so the
   cursor resets and the file is parsed from the start
3. Otherwise lines up to the recorded line count are skipped and only new
   lines are parsed
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .extractor import UNKNOWN_MODEL, WARN_UNKNOWN_MODEL, ParseResult, parse_json_value, parse_line_value
from .sources import SourceKind, UsageSource

logger = logging.getLogger(__name__)

JSONL_EXTENSION = ".jsonl"

WARN_FILE_SHRANK = "File size shrank; resetting cursor."
WARN_JSONL_FALLBACK = "Falling back to JSONL parsing."
WARN_NO_TOKEN_ENTRIES = "No token usage entries found in file."

# Older state files stored cursors with camelCase keys.
_LEGACY_CURSOR_KEYS = {
    "lastLine": "last_line",
    "lastSize": "last_size",
    "lastMtimeMs": "last_mtime_ms",
    "lastModel": "last_model",
}


@dataclass(frozen=True)
class FileStat:
    size: int
    mtime_ms: int

    @classmethod
    def of(cls, path: str) -> "FileStat":
        stat = os.stat(path)
        return cls(size=stat.st_size, mtime_ms=stat.st_mtime_ns // 1_000_000)


@dataclass(frozen=True)
class FileCursor:
    """Persisted read position for one usage file."""
    last_line: Optional[int] = None
    last_size: Optional[int] = None
    last_mtime_ms: Optional[int] = None
    last_model: Optional[str] = None

    def matches(self, stat: FileStat) -> bool:
        """True when the file is unchanged since this cursor was taken."""
        return self.last_size == stat.size and self.last_mtime_ms == stat.mtime_ms

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key in ("last_line", "last_size", "last_mtime_ms", "last_model"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FileCursor":
        """Load a cursor, migrating legacy key spellings.

        Fields that are no longer used (per-file cumulative totals and
        line signatures) are dropped.
        """
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _LEGACY_CURSOR_KEYS.get(key, key)
            if name in ("last_line", "last_size", "last_mtime_ms"):
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    values[name] = int(value)
            elif name == "last_model":
                if isinstance(value, str) and value:
                    values[name] = value
        return cls(**values)


@dataclass
class FileParseResult(ParseResult):
    cursor: Optional[FileCursor] = None


@dataclass
class ParseOutput(ParseResult):
    """Records and warnings for a batch of files, with the cursors to persist."""
    cursors: Dict[str, FileCursor] = field(default_factory=dict)


def parse_json_lines_file(path: str, cursor: Optional[FileCursor] = None) -> FileParseResult:
    """Parse the lines of a JSON Lines file appended since `cursor`.

    The cursor's size and mtime are refreshed even when no new records are
    found, so an unchanged file is skipped on the next run.

    Args:
        path: File to read
        cursor: Cursor from the previous run, if any

    Returns:
        FileParseResult with new records, warnings and the updated cursor

    Raises:
        OSError: If the file cannot be read
        UnicodeDecodeError: If the file is not valid UTF-8
    """
    stat = FileStat.of(path)
    if cursor is not None and cursor.matches(stat):
        return FileParseResult(cursor=cursor)

    result = FileParseResult()
    start_line = (cursor.last_line or 0) if cursor else 0
    last_model = cursor.last_model if cursor else None

    if cursor is not None and cursor.last_size is not None and stat.size < cursor.last_size:
        logger.warning("Usage file shrank, resetting cursor: %s", path)
        result.warnings.append(WARN_FILE_SHRANK)
        start_line = 0
        last_model = None

    line_number = 0
    saw_new_lines = False
    with open(path, "r", encoding="utf-8") as handle:
        for raw_line in handle:
            line_number += 1
            if line_number <= start_line:
                continue

            stripped = raw_line.strip()
            if not stripped:
                saw_new_lines = True
                continue

            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError as e:
                if not raw_line.endswith("\n"):
                    # Still being written; picked up again next run.
                    line_number -= 1
                    logger.debug("Holding back unterminated line %d in %s", line_number + 1, path)
                    break
                saw_new_lines = True
                result.warnings.append(f"Line {line_number}: {e}")
                continue

            saw_new_lines = True
            extraction = parse_line_value(parsed, path, last_model)
            last_model = extraction.last_model
            result.extend(extraction.result, prefix=f"Line {line_number}: ")

    if not result.records and saw_new_lines:
        result.warnings.append(WARN_NO_TOKEN_ENTRIES)

    result.cursor = FileCursor(
        last_line=line_number,
        last_size=stat.size,
        last_mtime_ms=stat.mtime_ms,
        last_model=last_model,
    )
    return result


def parse_json_document_file(path: str, cursor: Optional[FileCursor] = None) -> FileParseResult:
    """Parse a whole-document JSON file, falling back to JSON Lines.

    Whole documents have no line positions, so their cursor only records
    whether the current size and mtime were already consumed.
    """
    stat = FileStat.of(path)
    if cursor is not None and cursor.matches(stat):
        return FileParseResult(cursor=cursor)

    with open(path, "r", encoding="utf-8") as handle:
        raw = handle.read()

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        document = ParseResult(warnings=[str(e), WARN_JSONL_FALLBACK])
    else:
        document = parse_json_value(parsed, path)
        if document.records or not document.warnings:
            return FileParseResult(
                records=document.records,
                warnings=document.warnings,
                cursor=FileCursor(last_line=1, last_size=stat.size, last_mtime_ms=stat.mtime_ms),
            )

    lines = parse_json_lines_file(path, cursor)
    return FileParseResult(
        records=lines.records,
        warnings=document.warnings + lines.warnings,
        cursor=lines.cursor,
    )


def parse_usage_file(path: str, cursor: Optional[FileCursor] = None) -> FileParseResult:
    """Parse one usage file, dispatching on its extension.

    `.jsonl` files are always read line by line. Anything else is tried as
    a JSON document first, since many producers write JSON Lines content
    under other extensions.
    """
    if os.path.splitext(path)[1].lower() == JSONL_EXTENSION:
        return parse_json_lines_file(path, cursor)
    return parse_json_document_file(path, cursor)


def parse_usage_sources(
    sources: Iterable[UsageSource],
    cursors: Optional[Mapping[str, FileCursor]] = None,
) -> ParseOutput:
    """Parse every file source once, in order.

    A file that cannot be read contributes a warning and keeps its old
    cursor; the remaining files are still processed.

    Args:
        sources: Discovered sources; directory entries are ignored
        cursors: Cursors from the previous run, keyed by path

    Returns:
        ParseOutput with all records, warnings and the next cursor map
    """
    previous = dict(cursors or {})
    output = ParseOutput(cursors=dict(previous))
    seen = set()

    for source in sources:
        if source.kind != SourceKind.FILE or source.path in seen:
            continue
        seen.add(source.path)

        try:
            result = parse_usage_file(source.path, previous.get(source.path))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to parse usage file %s: %s", source.path, e)
            output.warnings.append(f"{source.path}: {e}")
            continue

        logger.debug(
            "Parsed %s: %d records, %d warnings",
            source.path, len(result.records), len(result.warnings),
        )
        output.extend(result, prefix=f"{source.path}: ")
        if result.cursor is not None:
            output.cursors[source.path] = result.cursor

    if any(record.model == UNKNOWN_MODEL for record in output.records):
        output.warnings.append(WARN_UNKNOWN_MODEL)

    return output
