"""
Offset store for incremental scans.

Persists a read cursor per log file together with the raw events read
from that file so far. Every update is one SQLite transaction, so a
crash mid-write leaves the previous committed state in place.
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .db import get_connection, get_memory_connection, initialize_schema
from .models import FileCursor, RawEvent, Tool

logger = logging.getLogger(__name__)

StoredEvent = Tuple[str, Tool, RawEvent]

T = TypeVar("T")


def cursor_is_valid(cursor: FileCursor, size: int, mtime_ns: int, inode: int = 0) -> bool:
    """Decide whether a stored cursor can be trusted for the file's current state.

    A file smaller than recorded, a modification time that went
    backwards, or a different inode means the file was replaced or
    rotated and must be read again from the start.
    """
    if size < cursor.file_size_at_last_scan:
        return False
    if mtime_ns < cursor.modified_time_at_last_scan:
        return False
    if inode and cursor.inode and inode != cursor.inode:
        return False
    return True


def _is_missing_table(error: Exception) -> bool:
    return isinstance(error, sqlite3.OperationalError) and "no such table" in str(error).lower()


def _is_corrupt(error: Exception) -> bool:
    # Corrupt and non-database files raise the base DatabaseError itself
    return type(error) is sqlite3.DatabaseError


def _is_unusable(error: Exception) -> bool:
    """True for failures of the database file rather than of the statement."""
    return isinstance(error, (OSError, sqlite3.OperationalError)) or _is_corrupt(error)


class OffsetStore:
    """SQLite-backed store of file cursors and raw events.

    Writes are serialised by an internal lock. ``scan_lock`` is held by
    a scanner for the whole duration of a scan so that two scans never
    advance the same cursors concurrently.

    When the database file cannot be opened or read at all, the store
    keeps working against an in-memory database for the rest of the
    process; every cursor is then absent and the next scan reads all
    files from the start.
    """

    def __init__(self, db_path: str):
        """Open (and if needed create or recover) the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = str(db_path)
        self.scan_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._memory_lock = threading.RLock()
        self._memory: Optional[sqlite3.Connection] = None
        self._query(_check_schema)

    @property
    def in_memory(self) -> bool:
        """True once the store gave up on its database file."""
        return self._memory is not None

    def get(self, path: str) -> Optional[FileCursor]:
        """Return the cursor for ``path``, or None when it is not tracked."""
        row = self._query(lambda conn: conn.execute(
            """
            SELECT path, last_offset, file_size, mtime_ns, inode, parser_state
            FROM file_cursor WHERE path = ?
            """,
            (path,),
        ).fetchone())
        return _row_to_cursor(row) if row else None

    def put(self, path: str, cursor: FileCursor) -> None:
        """Insert or replace the cursor for ``path``."""
        with self._write_lock:
            self._write(lambda conn: _upsert_cursor(conn, path, cursor))

    def delete(self, path: str) -> None:
        """Forget a file: its cursor and every event read from it."""
        def _delete(conn):
            conn.execute("DELETE FROM file_cursor WHERE path = ?", (path,))
            conn.execute("DELETE FROM raw_event WHERE path = ?", (path,))

        with self._write_lock:
            self._write(_delete)

    def clear(self) -> None:
        """Drop all cursors and events, forcing the next scan to start over."""
        def _clear(conn):
            conn.execute("DELETE FROM file_cursor")
            conn.execute("DELETE FROM raw_event")

        with self._write_lock:
            self._write(_clear)

    def commit_file(
        self,
        tool: Tool,
        cursor: FileCursor,
        events: Sequence[RawEvent],
        replace: bool = False,
    ) -> None:
        """Atomically record newly read events and the advanced cursor.

        Args:
            tool: Tool the file belongs to
            cursor: Cursor describing the position after the read
            events: Events read since the previous cursor
            replace: Drop the file's previously stored events first
        """
        def _commit(conn):
            if replace:
                conn.execute("DELETE FROM raw_event WHERE path = ?", (cursor.path,))
            conn.executemany(
                """
                INSERT INTO raw_event
                (path, tool, timestamp, model, input_tokens, output_tokens,
                 cache_read_tokens, cache_write_tokens, identity_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        cursor.path,
                        tool.value,
                        event.timestamp.isoformat(),
                        event.model,
                        event.input_tokens,
                        event.output_tokens,
                        event.cache_read_tokens,
                        event.cache_write_tokens,
                        event.identity_key,
                    )
                    for event in events
                ],
            )
            _upsert_cursor(conn, cursor.path, cursor)

        with self._write_lock:
            self._write(_commit)

    def load_events(self) -> List[StoredEvent]:
        """Return every stored event in ledger order (file path, then read order)."""
        rows = self._query(lambda conn: conn.execute(
            """
            SELECT path, tool, timestamp, model, input_tokens, output_tokens,
                   cache_read_tokens, cache_write_tokens, identity_key
            FROM raw_event
            ORDER BY path, id
            """
        ).fetchall())

        events = []
        for row in rows:
            events.append((
                row[0],
                Tool(row[1]),
                RawEvent(
                    timestamp=datetime.fromisoformat(row[2]),
                    model=row[3],
                    input_tokens=row[4],
                    output_tokens=row[5],
                    cache_read_tokens=row[6],
                    cache_write_tokens=row[7],
                    identity_key=row[8],
                ),
            ))
        return events

    def list_cursors(self) -> List[FileCursor]:
        rows = self._query(lambda conn: conn.execute(
            """
            SELECT path, last_offset, file_size, mtime_ns, inode, parser_state
            FROM file_cursor ORDER BY path
            """
        ).fetchall())
        return [_row_to_cursor(row) for row in rows]

    def event_count(self) -> int:
        return self._query(lambda conn: conn.execute("SELECT COUNT(*) FROM raw_event").fetchone()[0])

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._memory is not None:
            with self._memory_lock:
                yield self._memory
            return
        conn = get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _query(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run a read, recovering once from an unusable database."""
        try:
            with self._connection() as conn:
                return operation(conn)
        except (sqlite3.DatabaseError, OSError) as e:
            self._recover(e)
        with self._connection() as conn:
            return operation(conn)

    def _write(self, operation) -> None:
        """Run ``operation`` inside one transaction, recovering once from an unusable database."""
        try:
            self._transaction(operation)
        except (sqlite3.DatabaseError, OSError) as e:
            self._recover(e)
            self._transaction(operation)

    def _transaction(self, operation) -> None:
        with self._connection() as conn:
            conn.execute("BEGIN TRANSACTION")
            try:
                operation(conn)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _recover(self, error: Exception) -> None:
        """Make the store usable again after ``error``.

        A missing table (file deleted while open) only needs the schema
        again. A corrupt file is moved aside as ``<name>.corrupt`` and
        recreated empty. A file that cannot be opened, or a recovery that
        fails, switches the store to an in-memory database. Errors caused
        by the statement itself (constraint violations) are re-raised.
        """
        if self._memory is not None or not _is_unusable(error):
            raise error

        path = Path(self.db_path)
        if _is_missing_table(error) or _is_corrupt(error):
            try:
                if _is_corrupt(error):
                    logger.warning("Offset store %s is unreadable (%s); starting from scratch", path, error)
                    _move_aside(path)
                conn = get_connection(self.db_path)
                try:
                    initialize_schema(conn)
                finally:
                    conn.close()
                return
            except (sqlite3.DatabaseError, OSError) as e:
                error = e

        logger.warning(
            "Offset store %s cannot be used (%s); keeping cursors in memory, every file will be read in full",
            path, error,
        )
        self._memory = get_memory_connection()


def _check_schema(conn: sqlite3.Connection) -> None:
    initialize_schema(conn)
    conn.execute("SELECT COUNT(*) FROM file_cursor").fetchone()


def _move_aside(path: Path) -> None:
    if path.exists():
        os.replace(path, path.with_name(path.name + ".corrupt"))
    for suffix in ("-journal", "-wal", "-shm"):
        leftover = path.with_name(path.name + suffix)
        if leftover.exists():
            leftover.unlink()


def _upsert_cursor(conn: sqlite3.Connection, path: str, cursor: FileCursor) -> None:
    conn.execute(
        """
        INSERT OR REPLACE INTO file_cursor
        (path, last_offset, file_size, mtime_ns, inode, parser_state)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            path,
            cursor.last_offset,
            cursor.file_size_at_last_scan,
            cursor.modified_time_at_last_scan,
            cursor.inode,
            json.dumps(cursor.parser_state, sort_keys=True),
        ),
    )


def _row_to_cursor(row) -> FileCursor:
    try:
        state = json.loads(row[5]) if row[5] else {}
    except ValueError:
        state = {}
    return FileCursor(
        path=row[0],
        last_offset=row[1],
        file_size_at_last_scan=row[2],
        modified_time_at_last_scan=row[3],
        inode=row[4],
        parser_state=state if isinstance(state, dict) else {},
    )
