"""Event ledger: the append-only source of truth for all memory.

Events are immutable once appended. Only the retention level and the usage
counters (``access_count``, ``last_accessed_at``) change afterwards, and rows
are removed only by an explicit retention sweep.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta
from sqlite3 import Row

from memlayer.config import StorageConfig
from memlayer.errors import ValidationError
from memlayer.memory.db import Database, from_iso, to_iso, utcnow
from memlayer.memory.models import (
    AppendResult,
    Event,
    EventType,
    MemoryLevel,
    Payload,
    SessionMarkerPayload,
    dedupe_text,
    payload_from_json,
    payload_to_json,
)
from memlayer.memory.outbox import Outbox

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = """
    e.seq, e.id, e.event_type, e.session_id, e.timestamp, e.payload, e.access_count,
    COALESCE(l.level, 0) AS level
"""
_EVENT_FROM = "events e LEFT JOIN memory_levels l ON l.event_id = e.id"
_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)


def dedupe_key(session_id: str, text: str) -> str:
    """Session-scoped fingerprint of case- and whitespace-normalised content."""
    normalised = " ".join(text.casefold().split())
    return hashlib.sha256(f"{session_id}\x00{normalised}".encode()).hexdigest()


def _row_to_event(row: Row) -> Event:
    event_type = EventType(row["event_type"])
    return Event(
        id=row["id"],
        type=event_type,
        session_id=row["session_id"],
        timestamp=from_iso(row["timestamp"]),
        payload=payload_from_json(event_type, row["payload"]),
        level=MemoryLevel(row["level"]),
        seq=row["seq"],
        access_count=row["access_count"],
    )


class EventLedger:
    """Append, read and window queries over the ``events`` table."""

    def __init__(self, db: Database, outbox: Outbox, config: StorageConfig | None = None) -> None:
        self.db = db
        self.outbox = outbox
        self.config = config or StorageConfig()

    # ── Write path ───────────────────────────────────────

    def append(
        self,
        session_id: str,
        event_type: EventType,
        payload: Payload,
        timestamp: datetime | None = None,
        dedupe_any_time: bool = False,
    ) -> AppendResult:
        """Append an event, or return the existing id for a near-duplicate.

        A duplicate is the same session, type and normalised searchable text
        within ``dedupe_window_seconds`` of an existing event (tool observations
        also compare their input). With ``dedupe_any_time`` the window is
        ignored, for capture paths that re-read the same source. A new event
        gets its L0 level row and its outbox entry in the same transaction.
        """
        if not session_id or not session_id.strip():
            raise ValidationError("session_id must not be empty")
        event_type = EventType.parse(event_type)
        payload = payload.clamp(self.config.max_content_length)
        timestamp = timestamp or utcnow()
        content = payload.searchable_text()
        key = dedupe_key(session_id, dedupe_text(payload))
        window = timedelta(seconds=self.config.dedupe_window_seconds)
        sql = "SELECT id FROM events WHERE dedupe_key = ? AND event_type = ?"
        params: list = [key, event_type.value]
        if not dedupe_any_time:
            sql += " AND timestamp BETWEEN ? AND ?"
            params += [to_iso(timestamp - window), to_iso(timestamp + window)]

        with self.db.transaction() as conn:
            existing = conn.execute(f"{sql} ORDER BY seq LIMIT 1", params).fetchone()
            if existing:
                logger.debug("Duplicate %s event in session %s", event_type.value, session_id)
                return AppendResult(event_id=existing["id"], is_duplicate=True)

            event_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO events (id, event_type, session_id, timestamp, content, payload, dedupe_key)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    event_type.value,
                    session_id,
                    to_iso(timestamp),
                    content,
                    payload_to_json(payload),
                    key,
                ),
            )
            conn.execute(
                "INSERT INTO memory_levels (event_id, level, changed_at) VALUES (?, ?, ?)",
                (event_id, int(MemoryLevel.L0), to_iso(timestamp)),
            )
            self.outbox.enqueue(event_id, conn=conn)
            if event_type == EventType.SESSION_START:
                self._upsert_session(conn, session_id, payload, timestamp)
            elif event_type == EventType.SESSION_END:
                self._end_session(conn, session_id, payload, timestamp)

        logger.debug("Appended %s event %s (session %s)", event_type.value, event_id, session_id)
        return AppendResult(event_id=event_id, is_duplicate=False)

    def _upsert_session(self, conn, session_id: str, payload: Payload, ts: datetime) -> None:
        project = payload.project_path if isinstance(payload, SessionMarkerPayload) else None
        conn.execute(
            """
            INSERT INTO sessions (session_id, project_path, started_at) VALUES (?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                project_path = COALESCE(excluded.project_path, sessions.project_path)
            """,
            (session_id, project, to_iso(ts)),
        )

    def _end_session(self, conn, session_id: str, payload: Payload, ts: datetime) -> None:
        summary = payload.searchable_text() or None
        conn.execute(
            """
            INSERT INTO sessions (session_id, started_at, ended_at, summary) VALUES (?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                ended_at = excluded.ended_at,
                summary = COALESCE(excluded.summary, sessions.summary)
            """,
            (session_id, to_iso(ts), to_iso(ts), summary),
        )

    def set_level(self, event_id: str, level: MemoryLevel) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO memory_levels (event_id, level, changed_at) VALUES (?, ?, ?)
                ON CONFLICT(event_id) DO UPDATE SET level = excluded.level, changed_at = excluded.changed_at
                """,
                (event_id, int(level), to_iso(utcnow())),
            )

    def record_access(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        marks = ",".join("?" * len(event_ids))
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE events SET access_count = access_count + 1, last_accessed_at = ? "
                f"WHERE id IN ({marks})",
                (to_iso(utcnow()), *event_ids),
            )

    def rebuild_keyword_index(self) -> int:
        """Rebuild the full-text index from the events table. Returns the event count."""
        with self.db.transaction() as conn:
            conn.execute("INSERT INTO events_fts(events_fts) VALUES ('rebuild')")
        count = self.count()
        logger.info("Rebuilt keyword index over %d events", count)
        return count

    def delete_events(self, event_ids: list[str]) -> int:
        """Hard-delete events with their level, citation and outbox rows.

        Usage rows stay: the usage log is append-only.
        """
        if not event_ids:
            return 0
        marks = ",".join("?" * len(event_ids))
        with self.db.transaction() as conn:
            conn.execute(f"DELETE FROM memory_levels WHERE event_id IN ({marks})", event_ids)
            conn.execute(f"DELETE FROM citations WHERE event_id IN ({marks})", event_ids)
            conn.execute(f"DELETE FROM outbox WHERE event_id IN ({marks})", event_ids)
            cursor = conn.execute(f"DELETE FROM events WHERE id IN ({marks})", event_ids)
            deleted = cursor.rowcount
        logger.info("Deleted %d events", deleted)
        return deleted

    # ── Read path ────────────────────────────────────────

    def get_by_id(self, event_id: str) -> Event | None:
        row = self.db.query_one(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} WHERE e.id = ?", (event_id,)
        )
        return _row_to_event(row) if row else None

    def get_many(self, event_ids: list[str]) -> dict[str, Event]:
        if not event_ids:
            return {}
        marks = ",".join("?" * len(event_ids))
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} WHERE e.id IN ({marks})", list(event_ids)
        )
        return {row["id"]: _row_to_event(row) for row in rows}

    def list_recent(
        self,
        limit: int = 20,
        session_id: str | None = None,
        event_type: EventType | str | None = None,
        since: datetime | None = None,
    ) -> list[Event]:
        """Newest first."""
        clauses, params = [], []
        if session_id:
            clauses.append("e.session_id = ?")
            params.append(session_id)
        if event_type:
            clauses.append("e.event_type = ?")
            params.append(EventType.parse(event_type).value)
        if since:
            clauses.append("e.timestamp >= ?")
            params.append(to_iso(since))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} {where} "
            "ORDER BY e.timestamp DESC, e.seq DESC LIMIT ?",
            (*params, limit),
        )
        return [_row_to_event(row) for row in rows]

    def list_session(self, session_id: str, limit: int = 100) -> list[Event]:
        """The first ``limit`` events of a session, oldest first."""
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} WHERE e.session_id = ? "
            "ORDER BY e.timestamp ASC, e.seq ASC LIMIT ?",
            (session_id, limit),
        )
        return [_row_to_event(row) for row in rows]

    def list_by_level(self, level: MemoryLevel, limit: int = 50) -> list[Event]:
        """Events currently at ``level``, most recently changed first."""
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} WHERE COALESCE(l.level, 0) = ? "
            "ORDER BY l.changed_at DESC, e.seq DESC LIMIT ?",
            (int(level), limit),
        )
        return [_row_to_event(row) for row in rows]

    def most_accessed(self, limit: int = 10) -> list[Event]:
        rows = self.db.query(
            f"SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM} WHERE e.access_count > 0 "
            "ORDER BY e.access_count DESC, e.last_accessed_at DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_event(row) for row in rows]

    def find_surrounding(
        self,
        session_id: str,
        timestamp: datetime,
        window_size: int,
        seq: int | None = None,
    ) -> list[Event]:
        """Up to ``window_size`` events before and after a point, same session, in order.

        The anchor event itself (``timestamp``, ``seq``) is included when it exists.
        Order is ``(timestamp, seq)``.
        """
        ts = to_iso(timestamp)
        anchor_seq = seq if seq is not None else -1
        before = self.db.query(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM}
            WHERE e.session_id = ? AND (e.timestamp < ? OR (e.timestamp = ? AND e.seq < ?))
            ORDER BY e.timestamp DESC, e.seq DESC LIMIT ?
            """,
            (session_id, ts, ts, anchor_seq, window_size),
        )
        after = self.db.query(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM}
            WHERE e.session_id = ? AND (e.timestamp > ? OR (e.timestamp = ? AND e.seq >= ?))
            ORDER BY e.timestamp ASC, e.seq ASC LIMIT ?
            """,
            (session_id, ts, ts, anchor_seq, window_size + (1 if seq is not None else 0)),
        )
        events = [_row_to_event(row) for row in reversed(before)]
        events.extend(_row_to_event(row) for row in after)
        return events

    def neighbours(self, event: Event) -> tuple[Event | None, Event | None]:
        """Immediately previous and next event in the same session."""
        ts = to_iso(event.timestamp)
        prev_row = self.db.query_one(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM}
            WHERE e.session_id = ? AND (e.timestamp < ? OR (e.timestamp = ? AND e.seq < ?))
            ORDER BY e.timestamp DESC, e.seq DESC LIMIT 1
            """,
            (event.session_id, ts, ts, event.seq),
        )
        next_row = self.db.query_one(
            f"""
            SELECT {_EVENT_COLUMNS} FROM {_EVENT_FROM}
            WHERE e.session_id = ? AND (e.timestamp > ? OR (e.timestamp = ? AND e.seq > ?))
            ORDER BY e.timestamp ASC, e.seq ASC LIMIT 1
            """,
            (event.session_id, ts, ts, event.seq),
        )
        return (
            _row_to_event(prev_row) if prev_row else None,
            _row_to_event(next_row) if next_row else None,
        )

    def keyword_search(
        self,
        query: str,
        limit: int = 10,
        session_id: str | None = None,
        event_type: EventType | str | None = None,
    ) -> list[tuple[Event, float]]:
        """Full-text search. Scores are bm25 ranks normalised so the best hit is 1.0."""
        terms = _FTS_TOKEN.findall(query)
        if not terms:
            return []
        match = " OR ".join(f'"{term}"*' for term in terms)
        clauses = ["events_fts MATCH ?"]
        params: list = [match]
        if session_id:
            clauses.append("e.session_id = ?")
            params.append(session_id)
        if event_type:
            clauses.append("e.event_type = ?")
            params.append(EventType.parse(event_type).value)
        rows = self.db.query(
            f"""
            SELECT {_EVENT_COLUMNS}, bm25(events_fts) AS rank
            FROM events_fts
            JOIN events e ON e.seq = events_fts.rowid
            LEFT JOIN memory_levels l ON l.event_id = e.id
            WHERE {' AND '.join(clauses)}
            ORDER BY rank LIMIT ?
            """,
            (*params, limit),
        )
        if not rows:
            return []
        # bm25 ranks are negative; more negative is better.
        best = rows[0]["rank"]
        results = []
        for row in rows:
            score = row["rank"] / best if best < 0 else 1.0
            results.append((_row_to_event(row), min(max(score, 0.0), 1.0)))
        return results

    # ── Counts ───────────────────────────────────────────

    def count(self) -> int:
        return self.db.scalar("SELECT COUNT(*) FROM events")

    def session_count(self) -> int:
        return self.db.scalar("SELECT COUNT(DISTINCT session_id) FROM events")

    def level_counts(self) -> dict[str, int]:
        counts = {level.label: 0 for level in MemoryLevel}
        rows = self.db.query(
            f"SELECT COALESCE(l.level, 0) AS level, COUNT(*) AS n FROM {_EVENT_FROM} "
            "GROUP BY COALESCE(l.level, 0)"
        )
        for row in rows:
            counts[MemoryLevel(row["level"]).label] = row["n"]
        return counts

    def list_sessions(self, limit: int = 20) -> list[dict]:
        rows = self.db.query(
            """
            SELECT s.session_id, s.project_path, s.started_at, s.ended_at, s.summary,
                   (SELECT COUNT(*) FROM events e WHERE e.session_id = s.session_id) AS event_count
            FROM sessions s ORDER BY s.started_at DESC LIMIT ?
            """,
            (limit,),
        )
        return [
            {
                "session_id": row["session_id"],
                "project_path": row["project_path"],
                "started_at": from_iso(row["started_at"]),
                "ended_at": from_iso(row["ended_at"]),
                "summary": row["summary"],
                "event_count": row["event_count"],
            }
            for row in rows
        ]
