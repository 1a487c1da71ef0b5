"""Citation registry: short, stable ids for referencing events.

``derive(event_id)`` is a pure function of the event id. A citation row is
created the first time an event is shown, never at append time. If the
derived id already belongs to a different event, the input is re-salted
(``event_id:1``, ``event_id:2``, ...) up to ``MAX_ATTEMPTS`` times.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import string
import uuid

from memlayer.errors import GenerationExhausted
from memlayer.memory.db import Database, from_iso, to_iso, utcnow
from memlayer.memory.models import CitationUsage

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_letters + string.digits
CITATION_LENGTH = 6
CITATION_PREFIX = "mem:"
MAX_ATTEMPTS = 5


def derive(event_id: str, salt: int = 0) -> str:
    """Map the sha256 of the (salted) event id onto a 6-symbol base-62 token."""
    source = event_id if salt == 0 else f"{event_id}:{salt}"
    value = int.from_bytes(hashlib.sha256(source.encode()).digest(), "big")
    chars = []
    for _ in range(CITATION_LENGTH):
        value, index = divmod(value, len(ALPHABET))
        chars.append(ALPHABET[index])
    return "".join(chars)


def format_citation(citation_id: str) -> str:
    return f"{CITATION_PREFIX}{citation_id}"


def parse_citation_id(value: str) -> str | None:
    """Accept ``XXXXXX`` or ``mem:XXXXXX``; None if it cannot be a citation id."""
    value = value.strip()
    if value.startswith(CITATION_PREFIX):
        value = value[len(CITATION_PREFIX):]
    if len(value) != CITATION_LENGTH or any(c not in ALPHABET for c in value):
        return None
    return value


class CitationRegistry:
    def __init__(self, db: Database) -> None:
        self.db = db

    def lookup(self, event_id: str) -> str | None:
        row = self.db.query_one("SELECT citation_id FROM citations WHERE event_id = ?", (event_id,))
        return row["citation_id"] if row else None

    def get_or_create(self, event_id: str) -> str | None:
        """Return the event's citation id, creating it on first use.

        Returns None when the event does not exist. Raises GenerationExhausted
        if every salted candidate is taken by another event.
        """
        existing = self.lookup(event_id)
        if existing:
            return existing

        with self.db.transaction() as conn:
            if conn.execute("SELECT 1 FROM events WHERE id = ?", (event_id,)).fetchone() is None:
                return None
            for salt in range(MAX_ATTEMPTS):
                candidate = derive(event_id, salt)
                owner = conn.execute(
                    "SELECT event_id FROM citations WHERE citation_id = ?", (candidate,)
                ).fetchone()
                if owner is not None and owner["event_id"] != event_id:
                    logger.debug("Citation %s collides (salt %d), re-salting", candidate, salt)
                    continue
                try:
                    conn.execute(
                        "INSERT INTO citations (citation_id, event_id, created_at) VALUES (?, ?, ?)",
                        (candidate, event_id, to_iso(utcnow())),
                    )
                except sqlite3.IntegrityError:
                    # Another writer created this event's citation first.
                    row = conn.execute(
                        "SELECT citation_id FROM citations WHERE event_id = ?", (event_id,)
                    ).fetchone()
                    if row is not None:
                        return row["citation_id"]
                    continue
                return candidate

        logger.error("Citation generation exhausted for event %s", event_id)
        raise GenerationExhausted(event_id, MAX_ATTEMPTS)

    def get_or_create_many(self, event_ids: list[str]) -> dict[str, str]:
        result = {}
        for event_id in event_ids:
            citation_id = self.get_or_create(event_id)
            if citation_id:
                result[event_id] = citation_id
        return result

    def resolve(self, citation_id: str) -> str | None:
        parsed = parse_citation_id(citation_id)
        if parsed is None:
            return None
        row = self.db.query_one("SELECT event_id FROM citations WHERE citation_id = ?", (parsed,))
        return row["event_id"] if row else None

    def log_usage(self, citation_id: str, session_id: str, query: str | None = None) -> CitationUsage:
        """Append one usage row. The usage log is never updated."""
        usage = CitationUsage(
            usage_id=uuid.uuid4().hex,
            citation_id=parse_citation_id(citation_id) or citation_id,
            session_id=session_id,
            used_at=utcnow(),
            context_query=query,
        )
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO citation_usages (usage_id, citation_id, session_id, used_at, context_query)
                VALUES (?, ?, ?, ?, ?)
                """,
                (usage.usage_id, usage.citation_id, usage.session_id, to_iso(usage.used_at), query),
            )
        return usage

    def usages(self, citation_id: str) -> list[CitationUsage]:
        rows = self.db.query(
            "SELECT * FROM citation_usages WHERE citation_id = ? ORDER BY used_at, rowid",
            (parse_citation_id(citation_id) or citation_id,),
        )
        return [
            CitationUsage(
                usage_id=row["usage_id"],
                citation_id=row["citation_id"],
                session_id=row["session_id"],
                used_at=from_iso(row["used_at"]),
                context_query=row["context_query"],
            )
            for row in rows
        ]
