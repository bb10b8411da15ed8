"""
Database connection management.

Provides SQLite connections for ledger and cache persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".xint-guard.db"

# Seconds a connection waits on a lock held by another process
# (e.g. a running `watch` while a one-shot command writes).
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout for cross-process writers
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
