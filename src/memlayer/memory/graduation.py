"""Graduation engine: usage-driven retention levels and the retention sweep.

Levels are derived from the append-only citation usage log:

    L1  used at least once
    L2  L1 and >= ``l2_min_uses`` uses within the rolling window
    L3  L2 and used from >= ``l3_min_sessions`` distinct sessions
    L4  L3 and >= ``l4_min_uses`` uses in total; never pruned

``recompute_levels`` only raises levels. Levels go down only through
``retention_sweep``, which demotes stale L1 events and deletes stale,
never-used L0 events (index first, then ledger). A demotion sticks: usage
recorded before it no longer counts towards promotion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from memlayer.config import GraduationConfig
from memlayer.memory.bounded import bounded
from memlayer.memory.db import Database, from_iso, to_iso, utcnow
from memlayer.memory.index import SimilarityIndex
from memlayer.memory.ledger import EventLedger
from memlayer.memory.models import MemoryLevel

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "graduation.last_run"
# Usage rows committed just after a sweep read may carry an earlier used_at.
_RESCAN_OVERLAP = timedelta(minutes=5)
_DELETE_CHUNK = 500


@dataclass
class GraduationReport:
    scanned: int = 0
    promoted: int = 0
    transitions: dict[str, int] = field(default_factory=dict)
    since: datetime | None = None
    dry_run: bool = False


@dataclass
class RetentionReport:
    demoted: int = 0
    deleted: int = 0
    dry_run: bool = False
    candidates: list[str] = field(default_factory=list)


def target_level(total_uses: int, window_uses: int, sessions: int, config: GraduationConfig) -> MemoryLevel:
    level = MemoryLevel.L0
    if total_uses >= 1:
        level = MemoryLevel.L1
    if level == MemoryLevel.L1 and window_uses >= config.l2_min_uses:
        level = MemoryLevel.L2
    if level == MemoryLevel.L2 and sessions >= config.l3_min_sessions:
        level = MemoryLevel.L3
    if level == MemoryLevel.L3 and total_uses >= config.l4_min_uses:
        level = MemoryLevel.L4
    return level


class GraduationEngine:
    def __init__(
        self,
        db: Database,
        ledger: EventLedger,
        index: SimilarityIndex,
        config: GraduationConfig | None = None,
        index_timeout: float = 10.0,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.index = index
        self.config = config or GraduationConfig()
        self.index_timeout = index_timeout

    def last_run(self) -> datetime | None:
        row = self.db.query_one("SELECT value FROM sweep_state WHERE key = ?", (LAST_RUN_KEY,))
        return from_iso(row["value"]) if row else None

    # ── Promotion ────────────────────────────────────────

    def recompute_levels(
        self,
        since: datetime | None = None,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> GraduationReport:
        """Re-derive levels for events used since ``since`` (default: the last run).

        With no previous run every used event is rescanned. Aggregates cover an
        event's usage history since its last demotion, so repeated runs
        converge. ``dry_run`` reports the promotions without writing them.
        """
        now = now or utcnow()
        if since is None:
            previous = self.last_run()
            since = previous - _RESCAN_OVERLAP if previous else None
        window_start = now - timedelta(days=self.config.window_days)

        params: list = [to_iso(window_start)]
        scope = ""
        if since is not None:
            scope = """
                AND c.event_id IN (
                    SELECT c2.event_id FROM citation_usages u2
                    JOIN citations c2 ON c2.citation_id = u2.citation_id
                    WHERE u2.used_at >= ?
                )
            """
            params.append(to_iso(since))

        rows = self.db.query(
            f"""
            SELECT c.event_id AS event_id,
                   COUNT(*) AS total_uses,
                   SUM(CASE WHEN u.used_at >= ? THEN 1 ELSE 0 END) AS window_uses,
                   COUNT(DISTINCT u.session_id) AS sessions,
                   COALESCE(l.level, 0) AS level
            FROM citation_usages u
            JOIN citations c ON c.citation_id = u.citation_id
            LEFT JOIN memory_levels l ON l.event_id = c.event_id
            WHERE (l.demoted_at IS NULL OR u.used_at > l.demoted_at)
            {scope}
            GROUP BY c.event_id
            """,
            params,
        )

        report = GraduationReport(scanned=len(rows), since=since, dry_run=dry_run)
        promotions = []
        for row in rows:
            current = MemoryLevel(row["level"])
            target = target_level(row["total_uses"], row["window_uses"] or 0, row["sessions"], self.config)
            if target <= current:
                continue
            promotions.append((row["event_id"], target))
            report.promoted += 1
            key = f"{current.label}->{target.label}"
            report.transitions[key] = report.transitions.get(key, 0) + 1
        if dry_run:
            return report

        stamp = to_iso(now)
        with self.db.transaction() as conn:
            for event_id, target in promotions:
                conn.execute(
                    """
                    INSERT INTO memory_levels (event_id, level, changed_at) VALUES (?, ?, ?)
                    ON CONFLICT(event_id) DO UPDATE SET level = excluded.level, changed_at = excluded.changed_at
                    WHERE memory_levels.level < excluded.level
                    """,
                    (event_id, int(target), stamp),
                )
            conn.execute(
                "INSERT INTO sweep_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (LAST_RUN_KEY, stamp),
            )

        if report.promoted:
            logger.info("Graduation: %d of %d used events promoted %s", report.promoted, report.scanned, report.transitions)
        return report

    # ── Retention ────────────────────────────────────────

    def _stale_l1(self, cutoff: str) -> list[str]:
        rows = self.db.query(
            """
            SELECT e.id FROM events e JOIN memory_levels l ON l.event_id = e.id
            WHERE l.level = 1
              AND e.timestamp < ?
              AND (e.last_accessed_at IS NULL OR e.last_accessed_at < ?)
              AND NOT EXISTS (
                  SELECT 1 FROM citation_usages u JOIN citations c ON c.citation_id = u.citation_id
                  WHERE c.event_id = e.id AND u.used_at >= ?
              )
            """,
            (cutoff, cutoff, cutoff),
        )
        return [row["id"] for row in rows]

    def _stale_l0(self, cutoff: str) -> list[str]:
        rows = self.db.query(
            """
            SELECT e.id FROM events e LEFT JOIN memory_levels l ON l.event_id = e.id
            WHERE COALESCE(l.level, 0) = 0
              AND e.timestamp < ?
              AND e.access_count = 0
              AND NOT EXISTS (
                  SELECT 1 FROM citation_usages u JOIN citations c ON c.citation_id = u.citation_id
                  WHERE c.event_id = e.id
              )
            ORDER BY e.seq
            """,
            (cutoff,),
        )
        return [row["id"] for row in rows]

    async def retention_sweep(
        self,
        max_age_days: int | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> RetentionReport:
        """Demote stale L1 events to L0 and prune stale, never-used L0 events.

        L2 and above are never touched. Vectors are removed before ledger
        rows, so an index failure leaves the ledger intact for the next run.
        """
        age = self.config.retention_days if max_age_days is None else max_age_days
        cutoff = to_iso((now or utcnow()) - timedelta(days=age))
        stale_l1 = self._stale_l1(cutoff)
        stale_l0 = self._stale_l0(cutoff)
        report = RetentionReport(dry_run=dry_run, candidates=stale_l0)
        if dry_run:
            report.demoted = len(stale_l1)
            report.deleted = len(stale_l0)
            return report

        if stale_l1:
            stamp = to_iso(now or utcnow())
            with self.db.transaction() as conn:
                conn.executemany(
                    "UPDATE memory_levels SET level = 0, changed_at = ?, demoted_at = ? "
                    "WHERE event_id = ? AND level = 1",
                    [(stamp, stamp, event_id) for event_id in stale_l1],
                )
            report.demoted = len(stale_l1)

        for start in range(0, len(stale_l0), _DELETE_CHUNK):
            chunk = stale_l0[start : start + _DELETE_CHUNK]
            await bounded(self.index.remove, chunk, timeout=self.index_timeout, operation="index remove")
            report.deleted += self.ledger.delete_events(chunk)

        logger.info(
            "Retention sweep (age %d days): %d demoted, %d deleted", age, report.demoted, report.deleted
        )
        return report
