"""
Database connection management.

Provides SQLite connections for billing persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "tenant_billing.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Open a connection and run the block inside ``BEGIN IMMEDIATE``.

    The immediate transaction takes the database write lock up front, so a
    read followed by a write inside the block behaves like a read-for-update.
    Commits on success, rolls back on any exception.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()
