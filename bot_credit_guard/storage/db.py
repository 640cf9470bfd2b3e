"""
Database connection management.

Provides SQLite connections shared by the ledger, usage and webhook stores.
"""

import sqlite3
from pathlib import Path

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = "bot_credit_guard.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Every write path opens its own short-lived connection and takes the
    database write lock with ``BEGIN IMMEDIATE``, so concurrent writers from
    several threads queue up on the busy timeout instead of interleaving.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
