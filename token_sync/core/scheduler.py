"""
Upload rate limiting and watch-mode timing.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

SYNC_INTERVAL = timedelta(minutes=15)
DEFAULT_JITTER = timedelta(minutes=2)


@dataclass(frozen=True)
class RateLimitStatus:
    limited: bool
    next_allowed_at: Optional[str] = None


@dataclass(frozen=True)
class NextRun:
    delay_seconds: float
    next_run_at: str


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(moment: datetime) -> str:
    """Millisecond-precision UTC timestamp ending in `Z`."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_iso(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_next_allowed_at(last_success_at: Optional[str]) -> Optional[datetime]:
    last_success = parse_iso(last_success_at)
    if last_success is None:
        return None
    return last_success + SYNC_INTERVAL


def get_rate_limit_status(
    last_success_at: Optional[str], now: Optional[datetime] = None
) -> RateLimitStatus:
    """Uploads are limited to one success per 15-minute window.

    An unparseable timestamp never limits.
    """
    next_allowed = get_next_allowed_at(last_success_at)
    if next_allowed is None:
        return RateLimitStatus(limited=False)
    now = now or utc_now()
    return RateLimitStatus(limited=now < next_allowed, next_allowed_at=format_iso(next_allowed))


def compute_next_run(
    base_iso: Optional[str] = None,
    now: Optional[datetime] = None,
    jitter: timedelta = DEFAULT_JITTER,
) -> NextRun:
    """Schedule the next watch-mode run.

    The target is `base + 15 minutes + random jitter`, where the jitter
    spreads installs out so they do not hit the API at the same moment.
    """
    now = now or utc_now()
    base = parse_iso(base_iso) or now
    offset = timedelta(seconds=random.uniform(0, jitter.total_seconds()))
    target = base + SYNC_INTERVAL + offset
    delay = max(0.0, (target - now).total_seconds())
    return NextRun(delay_seconds=delay, next_run_at=format_iso(target))


def format_duration(seconds: float) -> str:
    total_seconds = max(0, int(seconds))
    minutes, remainder = divmod(total_seconds, 60)
    if minutes == 0:
        return f"{remainder}s"
    return f"{minutes}m {remainder}s"
