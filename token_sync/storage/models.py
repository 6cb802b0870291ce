"""
Data models for storage layer.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class QueueItem:
    """A payload that failed to upload and waits for a later run.

    Items are replayed oldest first before the latest payload is sent.
    """
    id: str
    created_at: str
    payload: Dict[str, Any]
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None
