"""
Usage API client.

Posts sync payloads with a timeout and retries transient failures with
exponential backoff. Failures are returned as ApiResponse values, never
raised.
"""

import logging
import os
import platform
import random
import time
from dataclasses import dataclass, replace
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import requests

from token_sync.config.loader import Config, resolve_api_base_url
from token_sync.diagnostics.errors import sanitize_message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 45_000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 8.0
MAX_RETRY_JITTER = 0.25
DEFAULT_SYNC_PATH = "/v1/usage"

ENV_SYNC_PATH = "TOKEN_SYNC_API_SYNC_PATH"
ENV_TIMEOUT_MS = "TOKEN_SYNC_API_TIMEOUT_MS"

HTTP_STATUS_MESSAGES = {
    400: "Invalid request. Please check your inputs.",
    401: "Not authorized. Run token-sync login and try again.",
    403: "Access denied. Run token-sync login and try again.",
    404: "Endpoint not found. Check your API base URL.",
    408: "Request timed out. Please retry.",
    429: "Rate limited. Please retry later.",
    500: "Server error. Please retry.",
    502: "Service unavailable. Please retry shortly.",
    503: "Service unavailable. Please retry shortly.",
    504: "Service unavailable. Please retry shortly.",
}


@dataclass(frozen=True)
class ApiResponse:
    ok: bool
    status: Optional[int] = None
    url: Optional[str] = None
    body: Any = None
    error: Optional[str] = None
    attempts: int = 1


@dataclass(frozen=True)
class SyncUrl:
    url: Optional[str] = None
    error: Optional[str] = None


def read_package_version() -> str:
    try:
        return version("token-sync")
    except PackageNotFoundError:
        return "0.0.0"


def _timeout_seconds(timeout_ms: Optional[int]) -> float:
    if timeout_ms is None:
        raw = os.environ.get(ENV_TIMEOUT_MS, "")
        try:
            parsed = float(raw)
        except ValueError:
            parsed = 0
        timeout_ms = parsed if parsed > 0 else DEFAULT_TIMEOUT_MS
    return timeout_ms / 1000


def join_url(base: str, path: str) -> str:
    """Append `path` to the path of `base`.

    Raises:
        ValueError: If `base` is not an absolute http(s) URL
    """
    parts = urlsplit(base)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Invalid API base URL: {base}")
    extra = path if path.startswith("/") else f"/{path}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/") + extra, parts.query, ""))


def resolve_sync_url(config: Config) -> SyncUrl:
    base = resolve_api_base_url(config)
    if not base:
        return SyncUrl(error="API base URL not configured.")
    path = os.environ.get(ENV_SYNC_PATH) or DEFAULT_SYNC_PATH
    try:
        return SyncUrl(url=join_url(base, path))
    except ValueError as e:
        return SyncUrl(error=str(e))


def format_http_status_error(status: int) -> str:
    return HTTP_STATUS_MESSAGES.get(status, f"HTTP {status}")


def detect_api_error(body: Any) -> Optional[str]:
    """Error message from a body that reports failure despite its status."""
    if not isinstance(body, dict):
        return None
    if body.get("ok") is False or body.get("success") is False or body.get("status") == "error":
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return "API reported an error."
    return None


def post_sync_payload(
    url: str,
    payload: Dict[str, Any],
    token: Optional[str] = None,
    token_type: str = "Bearer",
    timeout_ms: Optional[int] = None,
) -> ApiResponse:
    """POST a payload once.

    Args:
        url: Sync endpoint
        payload: JSON-serializable payload
        token: Bearer token, if any
        token_type: Authorization scheme
        timeout_ms: Request timeout; defaults to TOKEN_SYNC_API_TIMEOUT_MS or 45 s

    Returns:
        ApiResponse describing the outcome
    """
    headers = {
        "content-type": "application/json",
        "user-agent": (
            f"token-sync/{read_package_version()} "
            f"({platform.system().lower()}; {platform.machine().lower()})"
        ),
    }
    if token:
        headers["authorization"] = f"{token_type} {token}"

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=_timeout_seconds(timeout_ms))
    except requests.RequestException as e:
        return ApiResponse(ok=False, url=url, error=sanitize_message(str(e)))

    body: Any = response.text
    if "application/json" in response.headers.get("content-type", ""):
        try:
            body = response.json()
        except ValueError:
            body = response.text

    api_error = detect_api_error(body)
    sanitized_error = sanitize_message(api_error) if api_error else None

    if not response.ok:
        return ApiResponse(
            ok=False,
            status=response.status_code,
            url=url,
            body=body,
            error=sanitized_error or format_http_status_error(response.status_code),
        )
    if sanitized_error:
        return ApiResponse(ok=False, status=response.status_code, url=url, body=body, error=sanitized_error)
    return ApiResponse(ok=True, status=response.status_code, url=url, body=body)


def is_retryable_status(status: Optional[int]) -> bool:
    """Network failures (no status), 408, 429 and 5xx are retried."""
    if not status:
        return True
    if status in (408, 429):
        return True
    return status >= 500


def post_sync_payload_with_retry(
    url: str,
    payload: Dict[str, Any],
    token: Optional[str] = None,
    token_type: str = "Bearer",
    timeout_ms: Optional[int] = None,
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> ApiResponse:
    """POST a payload, retrying transient failures.

    The delay before attempt n+1 is `min(max_delay, base_delay * 2^(n-1))`
    plus up to 250 ms of jitter.
    """
    last_response: Optional[ApiResponse] = None

    for attempt in range(1, max_attempts + 1):
        response = replace(
            post_sync_payload(url, payload, token=token, token_type=token_type, timeout_ms=timeout_ms),
            attempts=attempt,
        )
        if response.ok or not is_retryable_status(response.status):
            return response

        last_response = response
        if attempt >= max_attempts:
            break

        delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
        logger.info(
            "Upload attempt %d failed (%s); retrying in %.2fs",
            attempt, response.status or response.error, delay,
        )
        sleep(delay + random.uniform(0, MAX_RETRY_JITTER))

    return ApiResponse(
        ok=False,
        status=last_response.status if last_response else None,
        url=url,
        body=last_response.body if last_response else None,
        error=(last_response.error if last_response else None) or "Request failed after retries.",
        attempts=max_attempts,
    )
