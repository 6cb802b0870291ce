"""
Error context and redaction helpers.

Everything stored in the sync state or written to logs passes through here
so credentials never leave the process.
"""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

REDACT_KEYS = ("token", "authorization", "secret", "password", "cookie")
REDACTED = "[REDACTED]"
MAX_CONTEXT_DEPTH = 4
MAX_STRING_LENGTH = 500
MAX_MESSAGE_LENGTH = 200

_BEARER_PATTERN = re.compile(r"bearer\s+[a-z0-9._-]+", re.IGNORECASE)
_KEY_VALUE_PATTERN = re.compile(
    r"(token|authorization|secret|password|cookie)\s*[:=]\s*([^\s]+)", re.IGNORECASE
)


@dataclass(frozen=True)
class SafeErrorContext:
    """Sanitized description of the last failure, persisted in sync state."""
    at: str
    code: str
    message: str
    hint: Optional[str] = None
    status: Optional[int] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SafeErrorContext"]:
        if not isinstance(data, dict) or "code" not in data or "message" not in data:
            return None
        status = data.get("status")
        return cls(
            at=str(data.get("at", "")),
            code=str(data["code"]),
            message=str(data["message"]),
            hint=data.get("hint"),
            status=status if isinstance(status, int) else None,
            url=data.get("url"),
        )


def should_redact_key(key: str) -> bool:
    normalized = key.lower()
    return any(needle in normalized for needle in REDACT_KEYS)


def sanitize_context(value: Any, depth: int = 0) -> Any:
    """Redact secret-looking keys, truncate deep nesting and long strings."""
    if depth > MAX_CONTEXT_DEPTH:
        return "[Truncated]"
    if isinstance(value, (list, tuple)):
        return [sanitize_context(entry, depth + 1) for entry in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if should_redact_key(str(key)) else sanitize_context(entry, depth + 1)
            for key, entry in value.items()
        }
    if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
        return value[:MAX_STRING_LENGTH] + "…"
    return value


def sanitize_message(message: str) -> str:
    """Collapse whitespace, redact credentials and cap the length."""
    sanitized = re.sub(r"\s+", " ", message).strip()
    sanitized = _BEARER_PATTERN.sub("Bearer [REDACTED]", sanitized)
    sanitized = _KEY_VALUE_PATTERN.sub(lambda m: f"{m.group(1)}: {REDACTED}", sanitized)
    if len(sanitized) > MAX_MESSAGE_LENGTH:
        sanitized = sanitized[:MAX_MESSAGE_LENGTH] + "…"
    return sanitized or "Request failed."


def sanitize_url(raw: Optional[str]) -> Optional[str]:
    """Drop the query string and fragment from a URL."""
    if not raw:
        return None
    try:
        parts = urlsplit(raw)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def build_error_context(
    code: str,
    message: str,
    at: str,
    hint: Optional[str] = None,
    status: Optional[int] = None,
    url: Optional[str] = None,
) -> SafeErrorContext:
    return SafeErrorContext(
        at=at,
        code=code,
        message=sanitize_message(message),
        hint=sanitize_message(hint) if hint else None,
        status=status,
        url=sanitize_url(url),
    )


def hint_for_status(status: Optional[int]) -> Optional[str]:
    """Operator hint for an HTTP status returned by the usage API."""
    if status in (401, 403):
        return "Run `token-sync login` to refresh credentials."
    if status == 404:
        return "Check TOKEN_SYNC_API_BASE_URL for the correct endpoint."
    if status == 429:
        return "Wait before retrying to avoid rate limits."
    if status is not None and status >= 500:
        return "Retry later or check server status."
    return None
