"""
Offline upload queue.

Payloads that still fail after transport retries are kept here and flushed
on a later successful run. Only the most recent MAX_QUEUE_SIZE items are
kept.
"""

import json
import uuid
from typing import Any, Dict, Iterable, List, Optional

from token_sync.core.scheduler import format_iso, utc_now
from .db import get_connection
from .models import QueueItem

MAX_QUEUE_SIZE = 20


def initialize_schema(db_path: str) -> None:
    """Create the upload_queue table if it doesn't exist."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS upload_queue (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                payload TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                last_attempt_at TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def read_queue(db_path: str) -> List[QueueItem]:
    """Return queued items, oldest first.

    Raises:
        sqlite3.DatabaseError: If the queue database is corrupt
    """
    initialize_schema(db_path)
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("""
            SELECT id, created_at, payload, attempts, last_error, last_attempt_at
            FROM upload_queue
            ORDER BY seq ASC
        """)
        return [
            QueueItem(
                id=row[0],
                created_at=row[1],
                payload=json.loads(row[2]),
                attempts=row[3],
                last_error=row[4],
                last_attempt_at=row[5],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def enqueue_payload(
    payload: Dict[str, Any], db_path: str, reason: Optional[str] = None
) -> List[QueueItem]:
    """Append a payload and trim the queue to the newest MAX_QUEUE_SIZE items.

    Insert and trim run in one transaction.

    Returns:
        The queue after the insert
    """
    initialize_schema(db_path)
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN")
        conn.execute("""
            INSERT INTO upload_queue (id, created_at, payload, attempts, last_error)
            VALUES (?, ?, ?, 0, ?)
        """, (
            uuid.uuid4().hex,
            format_iso(utc_now()),
            json.dumps(payload),
            reason,
        ))
        conn.execute("""
            DELETE FROM upload_queue
            WHERE seq NOT IN (
                SELECT seq FROM upload_queue ORDER BY seq DESC LIMIT ?
            )
        """, (MAX_QUEUE_SIZE,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return read_queue(db_path)


def remove_queue_items(item_ids: Iterable[str], db_path: str) -> None:
    ids = list(item_ids)
    if not ids:
        return
    conn = get_connection(db_path)
    try:
        conn.executemany("DELETE FROM upload_queue WHERE id = ?", [(item_id,) for item_id in ids])
        conn.commit()
    finally:
        conn.close()


def record_queue_attempt(item_id: str, attempted_at: str, error: Optional[str], db_path: str) -> None:
    """Bump the attempt counter of an item that failed to flush."""
    conn = get_connection(db_path)
    try:
        conn.execute("""
            UPDATE upload_queue
            SET attempts = attempts + 1, last_attempt_at = ?, last_error = ?
            WHERE id = ?
        """, (attempted_at, error, item_id))
        conn.commit()
    finally:
        conn.close()


def count_queue(db_path: str) -> int:
    initialize_schema(db_path)
    conn = get_connection(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM upload_queue").fetchone()[0]
    finally:
        conn.close()
