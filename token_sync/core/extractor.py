"""
Usage record extraction.

Locates day, model and token fields in loosely structured JSON log entries
and turns them into normalized usage records.

Field lookup is table driven: every canonical field has an ordered tuple of
key aliases, and every entry exposes an ordered list of nested contexts.
The first (context, alias) pair that yields a usable value wins.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .tokens import TOKEN_AXES, TokenTotals

UNKNOWN_MODEL = "unknown"
TOKEN_EVENT_TYPE = "token_count"
MILLISECONDS_THRESHOLD = 1_000_000_000_000

ARRAY_KEYS = ("records", "entries", "items", "usage", "data", "events", "sessions")

MODEL_KEYS = (
    "model",
    "model_name",
    "modelName",
    "model_id",
    "modelId",
    "model_slug",
    "modelSlug",
    "base_model",
    "baseModel",
    "engine",
    "deployment",
    "deployment_id",
    "deploymentId",
)

DAY_KEYS = ("day", "date", "usage_date", "usageDate")

TIME_KEYS = (
    "timestamp",
    "ts",
    "created_at",
    "createdAt",
    "time",
    "start_time",
    "startTime",
)

TOKEN_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "input": ("input_tokens", "inputTokens", "prompt_tokens", "promptTokens"),
    "output": (
        "output_tokens",
        "outputTokens",
        "completion_tokens",
        "completionTokens",
        "response_tokens",
        "responseTokens",
    ),
    "cache": (
        "cache_tokens",
        "cacheTokens",
        "cached_tokens",
        "cachedTokens",
        "cached_input_tokens",
        "cachedInputTokens",
    ),
    "thinking": (
        "thinking_tokens",
        "thinkingTokens",
        "reasoning_tokens",
        "reasoningTokens",
        "reasoning_output_tokens",
        "reasoningOutputTokens",
    ),
    "total": ("total_tokens", "totalTokens", "tokens", "token_count", "tokenCount"),
}

TOKEN_CONTEXT_KEYS = ("usage", "token_usage", "tokenUsage", "tokens", "payload", "info")

NESTED_CONTEXT_KEYS = (
    "payload",
    "info",
    "metadata",
    "context",
    "request",
    "model_info",
    "modelInfo",
    "model_config",
    "modelConfig",
)

LAST_USAGE_KEY = "last_token_usage"
TOTAL_USAGE_KEY = "total_token_usage"

WARN_MISSING_DAY = "Skipping entry with missing day/timestamp."
WARN_MISSING_TOKENS = "Skipping entry with missing token counts."
WARN_CUMULATIVE = "Using total_token_usage; this may be cumulative for the session."
WARN_NO_ENTRIES = "No usage entries found in JSON."
WARN_UNKNOWN_MODEL = "Some entries are missing model info; recorded as 'unknown'."

_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}")


class RecordMode(Enum):
    """How a record's token counts should be interpreted."""
    DELTA = "delta"  # Tokens incurred since the previous observation
    CUMULATIVE = "cumulative"  # Running total as of this observation


@dataclass(frozen=True)
class UsageRecord:
    """A single normalized usage observation."""
    day: str
    model: str
    tokens: TokenTotals
    source: str
    mode: RecordMode = RecordMode.DELTA


@dataclass
class ParseResult:
    """Records and warnings collected from one or more entries."""
    records: List[UsageRecord] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def extend(self, other: "ParseResult", prefix: str = "") -> None:
        self.records.extend(other.records)
        self.warnings.extend(f"{prefix}{warning}" for warning in other.warnings)


@dataclass(frozen=True)
class UsageSnapshot:
    """A nested usage object such as `last_token_usage`."""
    usage: Dict[str, Any]
    cumulative: bool


@dataclass(frozen=True)
class TokenExtraction:
    tokens: TokenTotals
    mode: RecordMode
    warning: Optional[str] = None


@dataclass(frozen=True)
class LineExtraction:
    """Result of one JSON Lines entry plus the model context to carry forward."""
    result: ParseResult
    last_model: Optional[str]


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def parse_number(value: Any) -> Optional[int]:
    """Coerce a JSON number or numeric string to an int.

    Booleans, non-finite numbers and non-numeric strings yield None.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            parsed = float(trimmed)
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    return None


def parse_date_string(raw: str) -> Optional[str]:
    """Return the YYYY-MM-DD day of a date string, or None."""
    trimmed = raw.strip()
    if not trimmed:
        return None
    if _ISO_DAY.match(trimmed):
        return trimmed[:10]

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(trimmed)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def parse_timestamp(value: float) -> Optional[str]:
    """Convert epoch seconds or milliseconds to a UTC day.

    Values above 10^12 are taken as milliseconds.
    """
    if isinstance(value, bool) or not math.isfinite(value):
        return None
    seconds = value / 1000 if value > MILLISECONDS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def collect_contexts(obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    """List the objects searched for fields, in priority order.

    The entry itself comes first, then known token containers, then the
    nested metadata containers and their own nested containers.
    """
    contexts = [obj]

    for key in TOKEN_CONTEXT_KEYS:
        nested = obj.get(key)
        if _is_object(nested):
            contexts.append(nested)

    for key in NESTED_CONTEXT_KEYS:
        nested = obj.get(key)
        if not _is_object(nested):
            continue
        contexts.append(nested)
        for inner_key in NESTED_CONTEXT_KEYS:
            inner = nested.get(inner_key)
            if _is_object(inner):
                contexts.append(inner)

    return contexts


def _resolution_order(
    contexts: List[Dict[str, Any]], aliases: Tuple[str, ...]
) -> Iterator[Any]:
    for ctx in contexts:
        for alias in aliases:
            if alias in ctx:
                yield ctx[alias]


def find_usage_snapshot(obj: Dict[str, Any]) -> Optional[UsageSnapshot]:
    """Find a nested `last_token_usage` or `total_token_usage` object."""
    for ctx in collect_contexts(obj):
        last = ctx.get(LAST_USAGE_KEY)
        if _is_object(last):
            return UsageSnapshot(usage=last, cumulative=False)
        total = ctx.get(TOTAL_USAGE_KEY)
        if _is_object(total):
            return UsageSnapshot(usage=total, cumulative=True)
    return None


def has_token_fields(obj: Dict[str, Any]) -> bool:
    contexts = collect_contexts(obj)
    for aliases in TOKEN_FIELD_ALIASES.values():
        for _ in _resolution_order(contexts, aliases):
            return True
    return False


def is_token_event(obj: Dict[str, Any]) -> bool:
    """Decide whether an entry looks like a token usage event."""
    if obj.get("type") == TOKEN_EVENT_TYPE:
        return True
    payload = obj.get("payload")
    if _is_object(payload) and payload.get("type") == TOKEN_EVENT_TYPE:
        return True
    if find_usage_snapshot(obj) is not None:
        return True
    return has_token_fields(obj)


def extract_day(obj: Dict[str, Any]) -> Optional[str]:
    """Find the calendar day of an entry.

    Explicit day fields are tried before timestamp fields.
    """
    contexts = collect_contexts(obj)

    for value in _resolution_order(contexts, DAY_KEYS):
        if isinstance(value, str):
            day = parse_date_string(value)
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            day = parse_timestamp(value)
        else:
            day = None
        if day:
            return day

    for value in _resolution_order(contexts, TIME_KEYS):
        day = None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            day = parse_timestamp(value)
        elif isinstance(value, str):
            try:
                day = parse_timestamp(float(value.strip()))
            except ValueError:
                day = parse_date_string(value)
        if day:
            return day

    return None


def extract_model(obj: Dict[str, Any]) -> Optional[str]:
    """Find an explicit model name, or None."""
    for value in _resolution_order(collect_contexts(obj), MODEL_KEYS):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_tokens(obj: Dict[str, Any]) -> Optional[TokenExtraction]:
    """Resolve the five token axes of an entry.

    Returns None when no axis could be resolved.
    """
    contexts = collect_contexts(obj)
    snapshot = find_usage_snapshot(obj)
    if snapshot is not None:
        contexts.insert(0, snapshot.usage)

    resolved: Dict[str, Optional[int]] = {}
    for axis in TOKEN_AXES:
        resolved[axis] = None
        for value in _resolution_order(contexts, TOKEN_FIELD_ALIASES[axis]):
            number = parse_number(value)
            if number is not None:
                resolved[axis] = number
                break

    tokens = TokenTotals(**resolved)
    if not tokens.has_any():
        return None

    if snapshot is not None and snapshot.cumulative:
        return TokenExtraction(tokens=tokens, mode=RecordMode.CUMULATIVE, warning=WARN_CUMULATIVE)
    return TokenExtraction(tokens=tokens, mode=RecordMode.DELTA)


def normalize_record(
    value: Any, source: str, fallback_model: Optional[str] = None
) -> Tuple[Optional[UsageRecord], List[str]]:
    """Turn one entry into a usage record.

    Args:
        value: A parsed JSON value
        source: Path of the file the value came from
        fallback_model: Model to use when the entry names none

    Returns:
        The record (or None when the entry is skipped) and its warnings
    """
    warnings: List[str] = []
    if not _is_object(value) or not is_token_event(value):
        return None, warnings

    day = extract_day(value)
    if not day:
        warnings.append(WARN_MISSING_DAY)
        return None, warnings

    model = extract_model(value) or fallback_model or UNKNOWN_MODEL

    extraction = extract_tokens(value)
    if extraction is None:
        warnings.append(WARN_MISSING_TOKENS)
        return None, warnings

    if extraction.warning:
        warnings.append(extraction.warning)

    record = UsageRecord(
        day=day,
        model=model,
        tokens=extraction.tokens,
        source=source,
        mode=extraction.mode,
    )
    return record, warnings


def _first_array(obj: Dict[str, Any]) -> Optional[List[Any]]:
    for key in ARRAY_KEYS:
        candidate = obj.get(key)
        if isinstance(candidate, list):
            return candidate
    for candidate in obj.values():
        if isinstance(candidate, list):
            return candidate
    return None


def extract_entries(value: Any) -> List[Any]:
    """Split a parsed document into candidate entries."""
    if isinstance(value, list):
        return value
    if _is_object(value):
        if is_token_event(value):
            return [value]
        array_value = _first_array(value)
        if array_value is not None:
            return array_value
        return [value]
    return []


def parse_json_value(
    value: Any, source: str, fallback_model: Optional[str] = None
) -> ParseResult:
    """Extract every usage record from a parsed JSON document or line."""
    result = ParseResult()
    entries = extract_entries(value)
    if not entries:
        result.warnings.append(WARN_NO_ENTRIES)
        return result

    for entry in entries:
        record, warnings = normalize_record(entry, source, fallback_model)
        result.warnings.extend(warnings)
        if record is not None:
            result.records.append(record)
    return result


def parse_line_value(
    value: Any, source: str, last_model: Optional[str]
) -> LineExtraction:
    """Extract records from one JSON Lines entry.

    Some producers declare the model once and stream usage events beneath
    it. The most recent explicit model is carried forward and attached to
    token events that lack one.

    Args:
        value: The parsed line
        source: Path of the file being read
        last_model: Model carried from earlier lines of the same file

    Returns:
        The line's records and warnings, and the model to carry forward
    """
    fallback_model = None
    if _is_object(value):
        explicit_model = extract_model(value)
        if explicit_model:
            last_model = explicit_model
        elif last_model and is_token_event(value):
            fallback_model = last_model

    return LineExtraction(
        result=parse_json_value(value, source, fallback_model),
        last_model=last_model,
    )
