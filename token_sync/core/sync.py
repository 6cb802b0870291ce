"""
Sync run orchestration.

One run reads the persisted state, walks the usage sources through the
pipeline, decides whether to upload, flushes the offline queue, posts the
latest payload and writes the new state once at the end.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from token_sync.config.loader import ConfigError, get_config_dir, is_local_only, read_config
from token_sync.diagnostics.errors import SafeErrorContext, build_error_context, hint_for_status
from token_sync.diagnostics.log import log_event
from token_sync.storage.db import get_queue_db_path
from token_sync.storage.device import DeviceError, get_or_create_device_info
from token_sync.storage.queue import enqueue_payload, read_queue, record_queue_attempt, remove_queue_items
from token_sync.storage.state import StateError, SyncState, SyncStatus, read_sync_state, write_sync_state
from token_sync.transport.api import ApiResponse, post_sync_payload_with_retry, resolve_sync_url
from token_sync.transport.auth import AuthToken, record_auth_error, resolve_auth_token
from .aggregate import AggregatedUsage
from .payload import build_sync_payload
from .pipeline import PipelineResult, run_pipeline
from .scheduler import RateLimitStatus, compute_next_run, format_iso, get_rate_limit_status, utc_now
from .sources import discover_usage_sources

logger = logging.getLogger(__name__)

AUTH_REJECTED_NOTE = "Auth rejected by API. Run `token-sync login`."
LOCAL_ONLY_NOTE = "Local-only mode enabled. No upload attempted."

PostFunction = Callable[..., ApiResponse]


@dataclass(frozen=True)
class SyncOptions:
    force: bool = False
    local_only: bool = False
    quiet: bool = False


@dataclass
class QueueSummary:
    pending: int = 0
    flushed: int = 0
    enqueued: bool = False


@dataclass
class SyncResult:
    """Outcome of one sync run, rendered by the CLI."""
    status: SyncStatus
    message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    records_parsed: int = 0
    aggregates: List[AggregatedUsage] = field(default_factory=list)
    total_tokens: int = 0
    days: int = 0
    models: int = 0
    payload: Optional[Dict[str, Any]] = None
    api: Optional[ApiResponse] = None
    rate_limit: Optional[RateLimitStatus] = None
    queue: Optional[QueueSummary] = None
    auth: Optional[AuthToken] = None
    local_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        api = None
        if self.api is not None:
            api = {
                "url": self.api.url,
                "status": self.api.status,
                "error": self.api.error,
                "attempts": self.api.attempts,
            }
        rate_limit = None
        if self.rate_limit is not None:
            rate_limit = {
                "limited": self.rate_limit.limited,
                "next_allowed_at": self.rate_limit.next_allowed_at,
            }
        auth = None
        if self.auth is not None:
            auth = {
                "status": self.auth.status.value,
                "source": self.auth.source.value if self.auth.source else None,
                "expires_at": self.auth.expires_at,
                "message": self.auth.message,
            }
        queue = None
        if self.queue is not None:
            queue = {
                "pending": self.queue.pending,
                "flushed": self.queue.flushed,
                "enqueued": self.queue.enqueued,
            }
        return {
            "status": self.status.value,
            "message": self.message,
            "records_parsed": self.records_parsed,
            "aggregated_entries": len(self.aggregates),
            "total_tokens": self.total_tokens,
            "days": self.days,
            "models": self.models,
            "warnings": self.warnings,
            "payload": self.payload,
            "rate_limit": rate_limit,
            "api": api,
            "queue": queue,
            "auth": auth,
            "local_only": self.local_only,
        }


def _finalize(result: SyncResult) -> SyncResult:
    level = {
        SyncStatus.ERROR: logging.ERROR,
        SyncStatus.SKIPPED: logging.WARNING,
    }.get(result.status, logging.INFO)
    log_event(
        logger,
        level,
        "sync.result",
        status=result.status.value,
        message=result.message,
        records_parsed=result.records_parsed,
        aggregated_entries=len(result.aggregates),
        warnings=len(result.warnings),
        local_only=result.local_only,
        rate_limited=bool(result.rate_limit and result.rate_limit.limited),
    )
    return result


def _record_run(
    state: SyncState,
    now_iso: str,
    status: SyncStatus,
    error: Optional[str] = None,
    error_context: Optional[SafeErrorContext] = None,
    note: Optional[str] = None,
) -> None:
    state.last_run_at = now_iso
    state.last_status = status
    state.last_error = error
    state.last_note = note
    if error_context is not None:
        state.last_error_context = error_context


def _apply_pipeline(state: SyncState, pipeline: PipelineResult, sources_count: int, warnings: int) -> None:
    state.last_sources_count = sources_count
    state.last_records_parsed = pipeline.records_parsed
    state.last_aggregated_entries = len(pipeline.aggregates)
    state.last_total_tokens = pipeline.total_tokens
    state.last_warnings_count = warnings
    state.file_cursors = pipeline.cursors
    state.cumulative_totals = pipeline.cumulative
    state.daily_totals = pipeline.daily_totals


def _skip_reason(
    local_only: bool,
    endpoint_url: Optional[str],
    endpoint_error: Optional[str],
    auth: AuthToken,
    rate_limit: RateLimitStatus,
    force: bool,
) -> Optional[str]:
    if local_only:
        return LOCAL_ONLY_NOTE
    if not endpoint_url:
        return endpoint_error or "API base URL not configured."
    if not auth.is_valid:
        return auth.message or "Auth token missing or invalid."
    if rate_limit.limited and not force:
        return f"Rate limited until {rate_limit.next_allowed_at or 'later'}."
    return None


def run_sync_once(
    options: SyncOptions,
    config_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
    post: Optional[PostFunction] = None,
) -> SyncResult:
    """Run one sync cycle.

    Args:
        options: Flags from the command line
        config_dir: Directory holding config, state and queue
        now: Clock override
        post: Upload function, `post_sync_payload_with_retry` when None

    Returns:
        SyncResult describing what happened. Only corrupt state or config
        produce an `error` result without running the pipeline.
    """
    config_dir = config_dir or get_config_dir()
    post = post or post_sync_payload_with_retry
    now = now or utc_now()
    now_iso = format_iso(now)
    log_event(logger, logging.INFO, "sync.start", force=options.force, local_only=options.local_only)

    try:
        state = read_sync_state(config_dir)
    except StateError as e:
        logger.debug("Sync state read failed: %s", e)
        return _finalize(SyncResult(status=SyncStatus.ERROR, message=str(e)))

    try:
        config, _ = read_config(config_dir)
    except ConfigError as e:
        message = str(e)
        context = build_error_context(
            "SYNC_CONFIG_READ_FAILED", message, now_iso, hint="Fix the config file and retry."
        )
        _record_run(state, now_iso, SyncStatus.ERROR, error=message, error_context=context)
        write_sync_state(state, config_dir)
        return _finalize(SyncResult(status=SyncStatus.ERROR, message=message))

    discovery = discover_usage_sources(config.usage_path)
    if not discovery.sources:
        message = "No usage files found."
        context = build_error_context(
            "SYNC_USAGE_NOT_FOUND",
            message,
            now_iso,
            hint="Set usage_path with `token-sync config set usage_path <path>` or set CODEX_HOME.",
        )
        _record_run(state, now_iso, SyncStatus.ERROR, error=message, error_context=context)
        state.last_sources_count = 0
        state.last_warnings_count = len(discovery.warnings)
        write_sync_state(state, config_dir)
        return _finalize(
            SyncResult(status=SyncStatus.ERROR, message=message, warnings=list(discovery.warnings))
        )

    pipeline = run_pipeline(
        discovery.sources, state.file_cursors, state.cumulative_totals, state.daily_totals
    )
    warnings = list(discovery.warnings) + pipeline.warnings

    try:
        device = get_or_create_device_info(config_dir)
        device_id, device_name = device.device_id, device.device_name
    except DeviceError as e:
        warnings.append(str(e))
        device_id, device_name = None, None
    payload = build_sync_payload(
        pipeline.daily_totals, generated_at=now_iso, device_id=device_id, device_name=device_name
    )

    local_only = is_local_only(config, options.local_only)
    rate_limit = get_rate_limit_status(state.last_success_at, now)
    endpoint = resolve_sync_url(config)
    auth = resolve_auth_token(config_dir, now)

    result = SyncResult(
        status=SyncStatus.SUCCESS,
        warnings=warnings,
        records_parsed=pipeline.records_parsed,
        aggregates=pipeline.aggregates,
        total_tokens=pipeline.total_tokens,
        days=pipeline.days,
        models=pipeline.models,
        payload=payload,
        rate_limit=rate_limit,
        auth=auth,
        local_only=local_only,
    )

    db_path = get_queue_db_path(config_dir)
    try:
        queue = read_queue(db_path)
    except sqlite3.Error as e:
        logger.debug("Upload queue read failed: %s", e)
        warnings.append(f"Upload queue unavailable: {e}")
        queue = []
    result.queue = QueueSummary(pending=len(queue))

    status = SyncStatus.SUCCESS
    error: Optional[str] = None
    error_context: Optional[SafeErrorContext] = None
    note = _skip_reason(local_only, endpoint.url, endpoint.error, auth, rate_limit, options.force)

    if note is not None:
        status = SyncStatus.SKIPPED
        result.message = note
    else:
        flushed_ids = []
        for item in queue:
            response = post(endpoint.url, item.payload, token=auth.token, token_type=auth.token_type)
            if response.ok:
                flushed_ids.append(item.id)
                continue

            message = response.error or "Failed to flush queued payload."
            if response.status in (401, 403):
                record_auth_error("API rejected token.", str(response.status), config_dir)
                note = message = AUTH_REJECTED_NOTE
            error_context = build_error_context(
                "SYNC_QUEUE_FLUSH_FAILED",
                message,
                now_iso,
                hint=hint_for_status(response.status),
                status=response.status,
                url=response.url,
            )
            logger.debug("Queue flush failed for %s: %s", item.id, response.error)
            try:
                record_queue_attempt(item.id, now_iso, response.error, db_path)
            except sqlite3.Error as e:
                warnings.append(f"Unable to record queue attempt: {e}")
            status, error = SyncStatus.ERROR, message
            result.api = response
            break

        try:
            remove_queue_items(flushed_ids, db_path)
        except sqlite3.Error as e:
            warnings.append(f"Unable to remove flushed queue items: {e}")
        result.queue.flushed = len(flushed_ids)
        result.queue.pending = len(queue) - len(flushed_ids)

        if status != SyncStatus.ERROR:
            response = post(endpoint.url, payload, token=auth.token, token_type=auth.token_type)
            result.api = response
            if response.ok:
                state.last_success_at = now_iso
                result.message = "Sync completed."
            else:
                message = response.error or "Sync failed."
                if response.status in (401, 403):
                    record_auth_error("API rejected token.", str(response.status), config_dir)
                    note = message = AUTH_REJECTED_NOTE
                error_context = build_error_context(
                    "SYNC_API_ERROR",
                    message,
                    now_iso,
                    hint=hint_for_status(response.status),
                    status=response.status,
                    url=response.url,
                )
                status, error = SyncStatus.ERROR, message
                try:
                    result.queue.pending = len(enqueue_payload(payload, db_path, reason=message))
                    result.queue.enqueued = True
                except sqlite3.Error as e:
                    warnings.append(f"Unable to queue payload: {e}")

        if status == SyncStatus.ERROR:
            result.message = error

    result.status = status
    _record_run(state, now_iso, status, error=error, error_context=error_context, note=note)
    _apply_pipeline(state, pipeline, len(discovery.sources), len(warnings))
    write_sync_state(state, config_dir)
    return _finalize(result)


def run_watch(
    options: SyncOptions,
    config_dir: Optional[Path] = None,
    on_result: Optional[Callable[[SyncResult, str, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_runs: Optional[int] = None,
) -> None:
    """Run sync repeatedly, sleeping 15 minutes plus jitter between runs.

    Runs never overlap: the next one starts only after the sleep that
    follows the previous one.

    Args:
        options: Flags from the command line
        config_dir: Directory holding config, state and queue
        on_result: Called with each result, the next run time and the delay
        sleep: Sleep function
        max_runs: Stop after this many runs (runs forever when None)
    """
    runs = 0
    while max_runs is None or runs < max_runs:
        result = run_sync_once(options, config_dir)
        runs += 1

        base = format_iso(utc_now())
        try:
            state = read_sync_state(config_dir)
            base = state.last_success_at or state.last_run_at or base
        except StateError as e:
            logger.warning("Unable to read sync state for scheduling: %s", e)

        next_run = compute_next_run(base)
        if on_result is not None:
            on_result(result, next_run.next_run_at, next_run.delay_seconds)
        if max_runs is not None and runs >= max_runs:
            break
        sleep(next_run.delay_seconds)
