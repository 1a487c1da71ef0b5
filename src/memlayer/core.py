"""MemoryService — the boundary every front end talks to.

Responsibilities:
1. Write intake — validate, build the typed payload, append to the ledger
2. Read intake — progressive search, citation lookup, layer pass-throughs
3. Citations — created lazily when an event is first shown
4. Usage — opening a citation or receiving full details logs a usage row
5. Background work — outbox drain and graduation/retention sweeps

Components are built once per process by ``build_service`` and passed in
explicitly; nothing here is a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any

from memlayer.config import MemlayerConfig
from memlayer.errors import (
    BackendUnavailable,
    GenerationExhausted,
    MemlayerError,
    OperationTimeout,
    StorageUnavailable,
    ValidationError,
)
from memlayer.memory.bounded import bounded
from memlayer.memory.citations import CitationRegistry, parse_citation_id
from memlayer.memory.db import Database
from memlayer.memory.embedder import Embedder, build_embedder
from memlayer.memory.graduation import GraduationEngine, GraduationReport, RetentionReport
from memlayer.memory.index import SimilarityIndex
from memlayer.memory.insights import InsightExtractor, InsightReport
from memlayer.memory.ledger import EventLedger
from memlayer.memory.models import (
    AppendResult,
    CitedEvent,
    DetailItem,
    Event,
    EventType,
    IndexItem,
    MemoryLevel,
    MemoryStats,
    ProgressiveSearchResult,
    TimelineItem,
    build_payload,
)
from memlayer.memory.outbox import DrainResult, Outbox, OutboxWorker
from memlayer.memory.retriever import CachingRetriever, ProgressiveRetriever, SearchOptions

logger = logging.getLogger(__name__)

# Usage rows need a session; callers outside an assistant session use this one.
DEFAULT_USAGE_SESSION = "cli"


@dataclass
class SweepReport:
    graduation: GraduationReport
    retention: RetentionReport | None = None
    insights: InsightReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MemoryService:
    """Store, search and cite events."""

    def __init__(
        self,
        config: MemlayerConfig,
        db: Database,
        ledger: EventLedger,
        citations: CitationRegistry,
        outbox: Outbox,
        index: SimilarityIndex,
        retriever: ProgressiveRetriever,
        graduation: GraduationEngine,
        worker: OutboxWorker,
        insights: InsightExtractor | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.ledger = ledger
        self.citations = citations
        self.outbox = outbox
        self.index = index
        self.retriever = retriever
        self.graduation = graduation
        self.worker = worker
        self.insights = insights or InsightExtractor(ledger, config.graduation)

    # ── Write intake ─────────────────────────────────────────

    def store_event(
        self,
        session_id: str,
        event_type: EventType | str,
        content: str,
        metadata: dict | None = None,
        timestamp: datetime | None = None,
        dedupe_any_time: bool = False,
    ) -> AppendResult:
        """Append one captured interaction. Content must already be masked.

        ``dedupe_any_time`` treats any earlier identical event of the session as
        a duplicate, not only one inside the dedupe window.
        """
        event_type = EventType.parse(event_type)
        payload = build_payload(event_type, content, metadata)
        try:
            return self.ledger.append(session_id, event_type, payload, timestamp, dedupe_any_time)
        except MemlayerError as e:
            logger.error("store_event failed (%s, session %s): %s", event_type.value, session_id, e)
            raise

    def start_session(self, session_id: str, project_path: str | None = None) -> AppendResult:
        return self.store_event(session_id, EventType.SESSION_START, "", {"project_path": project_path})

    def end_session(self, session_id: str, summary: str = "") -> AppendResult:
        return self.store_event(session_id, EventType.SESSION_END, summary)

    # ── Read intake ──────────────────────────────────────────

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        caller_session: str | None = None,
    ) -> ProgressiveSearchResult:
        """Progressive search with citation ids attached.

        Events delivered with full details count as used by ``caller_session``.
        When the ledger is locked for writing, results come back with only the
        citations that already exist and ``meta.citation_error`` says why.
        """
        result = await self.retriever.smart_search(query, options)

        ids = [item.event_id for item in result.index]
        cites, error = self._cite_or_lookup(ids)
        result.index = [replace(item, citation_id=cites.get(item.event_id)) for item in result.index]
        if result.details:
            result.details, detail_error = self._attach_detail_citations(result.details)
            usage_error = self._record_usage(result.details, caller_session, query)
            error = error or detail_error or usage_error
        result.meta.citation_error = error
        return result

    async def recall(
        self,
        query: str,
        limit: int = 5,
        min_score: float = 0.3,
        session_id: str | None = None,
    ) -> list[IndexItem]:
        """Keyword-only Layer 1 for latency-sensitive callers. Bumps access counts."""
        options = SearchOptions(top_k=limit, min_score=min_score, session_id=session_id, mode="keyword")
        found = await self.retriever.search_index(query, options.validate())
        ids = [item.event_id for item in found.items]
        cites, error = self._cite_or_lookup(ids)
        if error is None:
            try:
                self.ledger.record_access(ids)
            except StorageUnavailable as e:
                logger.warning("Access counts not updated for recall: %s", e)
        return [replace(item, citation_id=cites.get(item.event_id)) for item in found.items]

    def get_timeline(self, event_ids: list[str], window_size: int | None = None) -> list[TimelineItem]:
        return self.retriever.get_timeline(event_ids, window_size)

    def get_details(
        self,
        event_ids: list[str],
        caller_session: str | None = None,
        query: str | None = None,
    ) -> list[DetailItem]:
        details, _ = self._attach_detail_citations(self.retriever.get_details(event_ids))
        self._record_usage(details, caller_session, query)
        return details

    def get_cited_event(
        self,
        citation_id: str,
        session_id: str | None = None,
        query: str | None = None,
    ) -> CitedEvent | None:
        """Resolve ``XXXXXX`` or ``mem:XXXXXX`` to its event and session neighbours."""
        parsed = parse_citation_id(citation_id)
        if parsed is None:
            return None
        event_id = self.citations.resolve(parsed)
        if event_id is None:
            return None
        event = self.ledger.get_by_id(event_id)
        if event is None:
            return None
        previous, following = self.ledger.neighbours(event)
        try:
            self.citations.log_usage(parsed, session_id or DEFAULT_USAGE_SESSION, query)
            self.ledger.record_access([event_id])
        except StorageUnavailable as e:
            logger.warning("Usage of %s not recorded: %s", parsed, e)
        return CitedEvent(
            citation_id=parsed,
            event=event,
            related_previous=previous,
            related_next=following,
        )

    async def get_stats(self) -> MemoryStats:
        try:
            vector_count = await bounded(
                self.index.count, timeout=self.config.outbox.index_timeout, operation="index count"
            )
        except (OperationTimeout, BackendUnavailable) as e:
            logger.warning("Vector count unavailable: %s", e)
            vector_count = None
        return MemoryStats(
            event_count=self.ledger.count(),
            vector_count=vector_count,
            session_count=self.ledger.session_count(),
            level_counts=self.ledger.level_counts(),
            pending_embeddings=self.outbox.pending_count(),
            failed_embeddings=self.outbox.failed_count(),
        )

    def _cite(self, event_ids: list[str]) -> dict[str, str]:
        cites: dict[str, str] = {}
        for event_id in event_ids:
            try:
                citation_id = self.citations.get_or_create(event_id)
            except GenerationExhausted as e:
                logger.error("%s", e)
                continue
            if citation_id:
                cites[event_id] = citation_id
        return cites

    def _cite_or_lookup(self, event_ids: list[str]) -> tuple[dict[str, str], str | None]:
        """Cite events; while the ledger is write-locked, return existing citations only."""
        try:
            return self._cite(event_ids), None
        except StorageUnavailable as e:
            logger.warning("Citations not created, ledger busy: %s", e)
            cites = {}
            for event_id in event_ids:
                citation_id = self.citations.lookup(event_id)
                if citation_id:
                    cites[event_id] = citation_id
            return cites, str(e)

    def _attach_detail_citations(self, details: list[DetailItem]) -> tuple[list[DetailItem], str | None]:
        cites, error = self._cite_or_lookup([d.event_id for d in details])
        return [replace(d, citation_id=cites.get(d.event_id)) for d in details], error

    def _record_usage(
        self, details: list[DetailItem], caller_session: str | None, query: str | None
    ) -> str | None:
        session = caller_session or DEFAULT_USAGE_SESSION
        try:
            for detail in details:
                if detail.citation_id:
                    self.citations.log_usage(detail.citation_id, session, query)
            self.ledger.record_access([d.event_id for d in details])
        except StorageUnavailable as e:
            logger.warning("Usage not recorded for %d details: %s", len(details), e)
            return str(e)
        return None

    # ── Browsing ─────────────────────────────────────────────

    def get_recent(
        self,
        limit: int = 20,
        session_id: str | None = None,
        event_type: EventType | str | None = None,
    ) -> list[Event]:
        """Newest events first, optionally for one session or one type."""
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        return self.ledger.list_recent(limit=limit, session_id=session_id, event_type=event_type)

    def get_session_history(self, session_id: str | None = None, limit: int = 20) -> list[dict] | list[Event]:
        """Without ``session_id``: recent sessions. With it: that session's events in order."""
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        if session_id:
            return self.ledger.list_session(session_id, limit)
        return self.ledger.list_sessions(limit)

    def get_events_by_level(self, level: MemoryLevel | int | str, limit: int = 50) -> list[Event]:
        """Events at one retention level. ``level`` may be 2, ``MemoryLevel.L2`` or ``"L2"``."""
        try:
            if isinstance(level, str):
                level = int(level.upper().removeprefix("L"))
            level = MemoryLevel(level)
        except ValueError:
            raise ValidationError(f"unknown level {level!r} (expected L0-L4)")
        return self.ledger.list_by_level(level, limit)

    def get_most_accessed(self, limit: int = 10) -> list[Event]:
        return self.ledger.most_accessed(limit)

    def rebuild_keyword_index(self) -> int:
        count = self.ledger.rebuild_keyword_index()
        if isinstance(self.retriever, CachingRetriever):
            self.retriever.invalidate()
        return count

    # ── Background work ──────────────────────────────────────

    async def process_pending_embeddings(self, max_batch: int | None = None) -> DrainResult:
        """Drain the outbox until empty or a batch fails."""
        return await self.worker.drain_all(max_batch)

    async def sweep(
        self,
        retention: bool = False,
        max_age_days: int | None = None,
        dry_run: bool = False,
        insights: bool = False,
    ) -> SweepReport:
        """Recompute levels, then optionally prune and extract insights.

        ``dry_run`` reports what each step would do without writing anything.
        """
        report = SweepReport(graduation=self.graduation.recompute_levels(dry_run=dry_run))
        if retention:
            report.retention = await self.graduation.retention_sweep(max_age_days, dry_run=dry_run)
        if insights:
            report.insights = self.insights.extract(dry_run=dry_run)
        return report

    def close(self) -> None:
        self.db.close()


def build_service(
    config: MemlayerConfig,
    embedder: Embedder | None = None,
    index: SimilarityIndex | None = None,
    cache: bool = True,
) -> MemoryService:
    """Wire all components for one process."""
    storage = config.storage
    storage.root.mkdir(parents=True, exist_ok=True)
    db = Database(storage.ledger_path, busy_timeout=storage.busy_timeout)
    outbox = Outbox(db, max_attempts=config.outbox.max_attempts)
    ledger = EventLedger(db, outbox, storage)
    citations = CitationRegistry(db)
    if index is None:
        index = SimilarityIndex(storage.index_path)
    if embedder is None:
        embedder = build_embedder(config.embedding)

    retriever_cls = CachingRetriever if cache else ProgressiveRetriever
    retriever = retriever_cls(
        ledger,
        index,
        embedder,
        config.retrieval,
        embed_timeout=config.embedding.timeout,
        index_timeout=config.outbox.index_timeout,
    )
    graduation = GraduationEngine(
        db, ledger, index, config.graduation, index_timeout=config.outbox.index_timeout
    )
    worker = OutboxWorker(
        outbox, ledger, embedder, index, config.outbox, embed_timeout=config.embedding.timeout
    )
    return MemoryService(
        config=config,
        db=db,
        ledger=ledger,
        citations=citations,
        outbox=outbox,
        index=index,
        retriever=retriever,
        graduation=graduation,
        worker=worker,
    )
