"""
SQLite storage. One file, a small capped connection pool, no ORM.

Tables:
- items_text: one row per processed item, unique on item_id
- pipeline_state: cursor/resume point per mode

The pool is the backpressure point towards the database: with
max_open=2 and six workers, four of them wait for a connection.
"""

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from models import ProcessedRecord


class ConnectionPool:
    """
    Hands out sqlite3 connections, at most `max_open` at a time.

    Idle connections are kept up to `max_idle`. A connection older than
    `max_lifetime` seconds is closed instead of being handed out again.
    """

    def __init__(self, db_path: Path, max_open: int = 2, max_idle: int = 1, max_lifetime: float = 3600):
        if max_open < 1:
            raise ValueError("max_open must be at least 1")
        self._db_path = db_path
        self._max_idle = max_idle
        self._max_lifetime = max_lifetime
        self._slots = threading.BoundedSemaphore(max_open)
        self._lock = threading.Lock()
        self._idle: list[tuple[sqlite3.Connection, float]] = []
        self._closed = False

    def _open(self) -> tuple[sqlite3.Connection, float]:
        # connections move between worker threads, access is serialized by the pool
        conn = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn, time.monotonic()

    @contextmanager
    def connection(self):
        self._slots.acquire()
        try:
            conn, opened_at = self._checkout()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._checkin(conn, opened_at)
        finally:
            self._slots.release()

    def _checkout(self) -> tuple[sqlite3.Connection, float]:
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("connection pool is closed")
            while self._idle:
                conn, opened_at = self._idle.pop()
                if time.monotonic() - opened_at < self._max_lifetime:
                    return conn, opened_at
                conn.close()
        return self._open()

    def _checkin(self, conn: sqlite3.Connection, opened_at: float):
        with self._lock:
            expired = time.monotonic() - opened_at >= self._max_lifetime
            if self._closed or expired or len(self._idle) >= self._max_idle:
                conn.close()
            else:
                self._idle.append((conn, opened_at))

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    def close(self):
        with self._lock:
            self._closed = True
            for conn, _ in self._idle:
                conn.close()
            self._idle.clear()


class Storage:
    def __init__(self, db_path: Path, max_open: int = 2, max_idle: int = 1, max_lifetime: float = 3600):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool = ConnectionPool(db_path, max_open, max_idle, max_lifetime)
        self._migrate()

    def _migrate(self):
        """Create tables if they don't exist. No migration framework needed."""
        with self._pool.connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS items_text (
                    item_id INTEGER PRIMARY KEY,
                    has_text INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS pipeline_state (
                    name TEXT PRIMARY KEY,
                    state TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
                );
            """)
            conn.commit()

    def insert_if_absent(self, record: ProcessedRecord) -> bool:
        """
        Record a processed item. Returns True if new, False if duplicate.
        Duplicates are silently ignored, never an error.
        """
        with self._pool.connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO items_text (item_id, has_text, created_at) VALUES (?, ?, ?)",
                (record.item_id, int(record.has_text), record.created_at.isoformat()),
            )
            conn.commit()
            return cursor.rowcount > 0

    def has_processed(self, item_id: int) -> bool:
        """Check if an item already has a row."""
        with self._pool.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM items_text WHERE item_id = ?", (item_id,)
            ).fetchone()
        return row is not None

    def get_record(self, item_id: int) -> ProcessedRecord | None:
        with self._pool.connection() as conn:
            row = conn.execute(
                "SELECT item_id, has_text, created_at FROM items_text WHERE item_id = ?",
                (item_id,),
            ).fetchone()
        if row is None:
            return None
        return ProcessedRecord(
            item_id=row["item_id"],
            has_text=bool(row["has_text"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_state(self, name: str) -> dict:
        """Get saved state for a pipeline mode (cursor, resume point)."""
        with self._pool.connection() as conn:
            row = conn.execute(
                "SELECT state FROM pipeline_state WHERE name = ?", (name,)
            ).fetchone()
        if row:
            return json.loads(row[0])
        return {}

    def set_state(self, name: str, state: dict):
        """Save pipeline state."""
        with self._pool.connection() as conn:
            conn.execute(
                """INSERT INTO pipeline_state (name, state, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(name)
                   DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at""",
                (name, json.dumps(state), datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def get_stats(self) -> dict:
        """Basic stats for debugging."""
        with self._pool.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM items_text").fetchone()[0]
            with_text = conn.execute(
                "SELECT COUNT(*) FROM items_text WHERE has_text = 1"
            ).fetchone()[0]
            newest = conn.execute("SELECT MAX(item_id) FROM items_text").fetchone()[0]
            states = {
                row["name"]: json.loads(row["state"])
                for row in conn.execute("SELECT name, state FROM pipeline_state")
            }
        return {
            "total_items": total,
            "with_text": with_text,
            "newest_item": newest,
            "state": states,
        }

    def close(self):
        self._pool.close()
