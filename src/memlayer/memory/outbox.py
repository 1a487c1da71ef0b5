"""Embedding outbox: durable queue of events awaiting a vector, plus its drain worker.

An entry moves enqueued -> claimed -> processed. Claims are taken inside a
``BEGIN IMMEDIATE`` transaction so two workers never hold the same entry; a
claim older than ``claim_timeout`` is stale and may be re-claimed. Vectors are
upserted by event id, so re-delivery after a crash has no extra effect.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from sqlite3 import Connection
from typing import TYPE_CHECKING

from memlayer.config import OutboxConfig
from memlayer.errors import BackendUnavailable, OperationTimeout, StorageBusy
from memlayer.memory.bounded import bounded
from memlayer.memory.db import Database, from_iso, to_iso, utcnow
from memlayer.memory.embedder import Embedder
from memlayer.memory.index import SimilarityIndex
from memlayer.memory.models import OutboxEntry, VectorRecord

if TYPE_CHECKING:
    from memlayer.memory.ledger import EventLedger

logger = logging.getLogger(__name__)


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _row_to_entry(row) -> OutboxEntry:
    return OutboxEntry(
        event_id=row["event_id"],
        enqueued_at=from_iso(row["enqueued_at"]),
        claimed_by=row["claimed_by"],
        claimed_at=from_iso(row["claimed_at"]),
        processed_at=from_iso(row["processed_at"]),
        attempts=row["attempts"],
    )


class Outbox:
    """Outbox table operations. Every method is a single short transaction."""

    def __init__(self, db: Database, max_attempts: int = 5) -> None:
        self.db = db
        self.max_attempts = max_attempts

    def enqueue(self, event_id: str, conn: Connection | None = None) -> None:
        """Queue ``event_id``. Pass ``conn`` to join the caller's transaction."""
        sql = "INSERT OR IGNORE INTO outbox (event_id, enqueued_at) VALUES (?, ?)"
        params = (event_id, to_iso(utcnow()))
        if conn is not None:
            conn.execute(sql, params)
            return
        with self.db.transaction() as tx:
            tx.execute(sql, params)

    def claim_batch(
        self,
        worker_id: str,
        limit: int,
        claim_timeout: float,
        now: datetime | None = None,
    ) -> list[OutboxEntry]:
        """Atomically claim up to ``limit`` unprocessed entries.

        Returns [] when another writer holds the lock; the caller tries again
        on its next pass instead of waiting.
        """
        now = now or utcnow()
        stale_before = to_iso(now - timedelta(seconds=claim_timeout))
        try:
            with self.db.transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT event_id FROM outbox
                    WHERE processed_at IS NULL
                      AND attempts < ?
                      AND (claimed_at IS NULL OR claimed_at < ?)
                    ORDER BY enqueued_at, event_id
                    LIMIT ?
                    """,
                    (self.max_attempts, stale_before, limit),
                ).fetchall()
                ids = [row["event_id"] for row in rows]
                if not ids:
                    return []
                conn.execute(
                    f"""
                    UPDATE outbox SET claimed_by = ?, claimed_at = ?, attempts = attempts + 1
                    WHERE event_id IN ({_placeholders(len(ids))})
                    """,
                    (worker_id, to_iso(now), *ids),
                )
                claimed = conn.execute(
                    f"SELECT * FROM outbox WHERE event_id IN ({_placeholders(len(ids))}) "
                    "ORDER BY enqueued_at, event_id",
                    ids,
                ).fetchall()
        except StorageBusy:
            logger.debug("Outbox claim skipped: ledger busy")
            return []
        return [_row_to_entry(row) for row in claimed]

    def mark_processed(self, event_ids: list[str], now: datetime | None = None) -> None:
        if not event_ids:
            return
        stamp = to_iso(now or utcnow())
        marks = _placeholders(len(event_ids))
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE outbox SET processed_at = ?, claimed_by = NULL, claimed_at = NULL, "
                f"last_error = NULL WHERE event_id IN ({marks})",
                (stamp, *event_ids),
            )
            conn.execute(
                f"UPDATE events SET embedded_at = ? WHERE id IN ({marks})",
                (stamp, *event_ids),
            )

    def release(self, event_ids: list[str], worker_id: str, error: str | None = None) -> None:
        """Drop this worker's claim so the entries are immediately re-claimable."""
        if not event_ids:
            return
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE outbox SET claimed_by = NULL, claimed_at = NULL, last_error = ? "
                f"WHERE event_id IN ({_placeholders(len(event_ids))}) "
                "AND claimed_by = ? AND processed_at IS NULL",
                (error, *event_ids, worker_id),
            )

    def record_failure(self, event_ids: list[str], error: str) -> None:
        """Note the error but keep the claim; it expires after ``claim_timeout``."""
        if not event_ids:
            return
        with self.db.transaction() as conn:
            conn.execute(
                f"UPDATE outbox SET last_error = ? WHERE event_id IN ({_placeholders(len(event_ids))})",
                (error, *event_ids),
            )

    def reset_failed(self) -> int:
        """Give parked entries a fresh set of attempts. Returns how many were reset."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE outbox SET attempts = 0, claimed_by = NULL, claimed_at = NULL "
                "WHERE processed_at IS NULL AND attempts >= ?",
                (self.max_attempts,),
            )
            return cursor.rowcount

    def get(self, event_id: str) -> OutboxEntry | None:
        row = self.db.query_one("SELECT * FROM outbox WHERE event_id = ?", (event_id,))
        return _row_to_entry(row) if row else None

    def last_error(self, event_id: str) -> str | None:
        row = self.db.query_one("SELECT last_error FROM outbox WHERE event_id = ?", (event_id,))
        return row["last_error"] if row else None

    def pending_count(self) -> int:
        return self.db.scalar(
            "SELECT COUNT(*) FROM outbox WHERE processed_at IS NULL AND attempts < ?",
            (self.max_attempts,),
        )

    def failed_count(self) -> int:
        return self.db.scalar(
            "SELECT COUNT(*) FROM outbox WHERE processed_at IS NULL AND attempts >= ?",
            (self.max_attempts,),
        )


@dataclass
class DrainResult:
    claimed: int = 0
    processed: int = 0
    failed: int = 0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


class OutboxWorker:
    """Claim outbox entries, embed them and upsert vectors into the index."""

    def __init__(
        self,
        outbox: Outbox,
        ledger: EventLedger,
        embedder: Embedder,
        index: SimilarityIndex,
        config: OutboxConfig | None = None,
        embed_timeout: float = 30.0,
        worker_id: str | None = None,
    ) -> None:
        self.outbox = outbox
        self.ledger = ledger
        self.embedder = embedder
        self.index = index
        self.config = config or OutboxConfig()
        self.embed_timeout = embed_timeout
        self.worker_id = worker_id or default_worker_id()

    async def drain_batch(self, max_batch: int | None = None) -> DrainResult:
        """Process one claimed batch. Backend failures are recorded, not raised."""
        entries = self.outbox.claim_batch(
            self.worker_id,
            max_batch or self.config.batch_size,
            self.config.claim_timeout,
        )
        if not entries:
            return DrainResult()

        ids = [e.event_id for e in entries]
        events = self.ledger.get_many(ids)
        gone = [event_id for event_id in ids if event_id not in events]
        if gone:
            # Pruned by a retention sweep after enqueue: nothing to embed.
            self.outbox.mark_processed(gone)
        batch = [events[event_id] for event_id in ids if event_id in events]
        result = DrainResult(claimed=len(entries), processed=len(gone))
        if not batch:
            return result

        batch_ids = [e.id for e in batch]
        texts = [e.payload.embedding_text().strip() or e.type.value for e in batch]
        try:
            vectors = await bounded(
                self.embedder.embed_batch, texts, timeout=self.embed_timeout, operation="embed"
            )
            if len(vectors) != len(batch):
                raise BackendUnavailable(
                    f"embedding backend returned {len(vectors)} vectors for {len(batch)} texts"
                )
            now = utcnow()
            records = [
                VectorRecord(
                    event_id=event.id,
                    embedding=list(vector),
                    indexed_at=now,
                    session_id=event.session_id,
                    event_type=event.type.value,
                )
                for event, vector in zip(batch, vectors)
            ]
            await bounded(
                self.index.upsert, records, timeout=self.config.index_timeout, operation="index upsert"
            )
        except OperationTimeout as e:
            logger.warning("Outbox batch of %d released: %s", len(batch), e)
            self.outbox.release(batch_ids, self.worker_id, str(e))
            result.failed = len(batch)
            return result
        except BackendUnavailable as e:
            logger.error("Outbox batch of %d failed, claim left to expire: %s", len(batch), e)
            self.outbox.record_failure(batch_ids, str(e))
            result.failed = len(batch)
            return result
        except asyncio.CancelledError:
            self.outbox.release(batch_ids, self.worker_id, "cancelled")
            raise

        self.outbox.mark_processed(batch_ids, now)
        result.processed += len(batch)
        logger.debug("Embedded %d events", len(batch))
        return result

    async def drain_all(self, max_batch: int | None = None) -> DrainResult:
        """Drain until nothing is claimable or a batch fails."""
        total = DrainResult()
        while True:
            result = await self.drain_batch(max_batch)
            total.claimed += result.claimed
            total.processed += result.processed
            total.failed += result.failed
            if not result.claimed or result.failed:
                return total

    async def run(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Main loop: drain the outbox, sleeping ``poll_interval`` when idle."""
        logger.info("Outbox worker %s started", self.worker_id)
        while True:
            if shutdown_event and shutdown_event.is_set():
                break
            busy = False
            try:
                result = await self.drain_batch()
                busy = result.claimed > 0 and not result.failed
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Outbox drain error: %s", e)
            if busy:
                continue
            if shutdown_event:
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=self.config.poll_interval)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(self.config.poll_interval)
        logger.info("Outbox worker %s stopped.", self.worker_id)
