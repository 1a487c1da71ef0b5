"""SQLite ledger database: connection, schema and write transactions.

Several short-lived processes (hooks, CLI, daemon) share one ``ledger.db``.
Writes are serialized by SQLite itself: every write runs inside
``BEGIN IMMEDIATE`` so the write lock is taken up front and contention
surfaces as ``StorageBusy`` after ``busy_timeout`` seconds.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from memlayer.errors import StorageBusy, StorageUnavailable

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    event_type TEXT NOT NULL,
    session_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    content TEXT NOT NULL,
    payload TEXT NOT NULL,
    dedupe_key TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TEXT,
    embedded_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_events_session_ts ON events(session_id, timestamp, seq);
CREATE INDEX IF NOT EXISTS idx_events_dedupe ON events(dedupe_key, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);

CREATE TABLE IF NOT EXISTS memory_levels (
    event_id TEXT PRIMARY KEY,
    level INTEGER NOT NULL DEFAULT 0,
    changed_at TEXT NOT NULL,
    demoted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_levels_level ON memory_levels(level);

CREATE TABLE IF NOT EXISTS citations (
    citation_id TEXT PRIMARY KEY,
    event_id TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS citation_usages (
    usage_id TEXT PRIMARY KEY,
    citation_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    used_at TEXT NOT NULL,
    context_query TEXT
);
CREATE INDEX IF NOT EXISTS idx_usages_citation ON citation_usages(citation_id, used_at);
CREATE INDEX IF NOT EXISTS idx_usages_used_at ON citation_usages(used_at);

CREATE TABLE IF NOT EXISTS outbox (
    event_id TEXT PRIMARY KEY,
    enqueued_at TEXT NOT NULL,
    claimed_by TEXT,
    claimed_at TEXT,
    processed_at TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox(processed_at, enqueued_at);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    project_path TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    summary TEXT
);

CREATE TABLE IF NOT EXISTS sweep_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE VIRTUAL TABLE IF NOT EXISTS events_fts USING fts5(
    content,
    content='events',
    content_rowid='seq'
);
CREATE TRIGGER IF NOT EXISTS events_fts_insert AFTER INSERT ON events BEGIN
    INSERT INTO events_fts(rowid, content) VALUES (new.seq, new.content);
END;
CREATE TRIGGER IF NOT EXISTS events_fts_delete AFTER DELETE ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, content) VALUES ('delete', old.seq, old.content);
END;
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: datetime) -> str:
    """Fixed-width UTC ISO string, so lexical order equals time order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Database:
    """Lazily opened SQLite connection with WAL and an idempotent schema."""

    def __init__(self, path: Path, busy_timeout: float = 5.0) -> None:
        self.path = path
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._open()
        return self._conn

    def _open(self) -> sqlite3.Connection:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
            conn.executescript(SCHEMA)
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise StorageBusy(f"ledger {self.path} is locked: {e}") from e
            raise StorageUnavailable(f"cannot open ledger {self.path}: {e}") from e
        except (sqlite3.DatabaseError, OSError) as e:
            raise StorageUnavailable(f"cannot open ledger {self.path}: {e}") from e
        logger.debug("Opened ledger %s", self.path)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a write transaction under ``BEGIN IMMEDIATE``."""
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise StorageBusy(f"ledger write lock unavailable: {e}") from e
            raise StorageUnavailable(str(e)) from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            conn.execute("ROLLBACK")
            raise StorageUnavailable(str(e)) from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            conn.execute("ROLLBACK")
            if _is_busy(e):
                raise StorageBusy(f"ledger commit failed: {e}") from e
            raise StorageUnavailable(str(e)) from e

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as e:
            if _is_busy(e):
                raise StorageBusy(str(e)) from e
            raise StorageUnavailable(str(e)) from e

    def query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def scalar(self, sql: str, params: tuple | list = ()) -> int:
        row = self.query_one(sql, params)
        return int(row[0]) if row and row[0] is not None else 0

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
