"""
Database connection management.

Provides the SQLite connection and schema backing the offset store.
"""

import sqlite3
from pathlib import Path

# Seconds to wait on a write lock held by another connection
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout configured
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    """Create the cursor and raw event tables if they don't exist.

    ``file_cursor`` holds one row per tracked log file. ``raw_event``
    holds the unpriced events read from each file so far; costs are
    never stored.
    """
    conn.execute("""
        CREATE TABLE IF NOT EXISTS file_cursor (
            path TEXT PRIMARY KEY,
            last_offset INTEGER NOT NULL,
            file_size INTEGER NOT NULL,
            mtime_ns INTEGER NOT NULL,
            inode INTEGER NOT NULL DEFAULT 0,
            parser_state TEXT NOT NULL DEFAULT '{}'
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS raw_event (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL,
            tool TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            model TEXT NOT NULL,
            input_tokens INTEGER NOT NULL,
            output_tokens INTEGER NOT NULL,
            cache_read_tokens INTEGER NOT NULL,
            cache_write_tokens INTEGER NOT NULL,
            identity_key TEXT
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS raw_event_path ON raw_event (path)")
    conn.commit()


def get_memory_connection() -> sqlite3.Connection:
    """Create an in-memory database with the store schema.

    Used in place of the database file when that file cannot be opened;
    nothing written to it survives the process.
    """
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    initialize_schema(conn)
    return conn
