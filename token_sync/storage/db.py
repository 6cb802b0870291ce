"""
Database connection management.

Provides the SQLite connection used by the offline upload queue.
"""

import sqlite3
from pathlib import Path
from typing import Optional

from token_sync.config.loader import get_config_dir

QUEUE_DB_FILE = "queue.db"


def get_queue_db_path(config_dir: Optional[Path] = None) -> str:
    return str((config_dir or get_config_dir()) / QUEUE_DB_FILE)


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection, creating the parent directory.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(path))
    return conn
