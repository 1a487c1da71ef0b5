"""Progressive retriever: index -> timeline -> details under a token budget.

Layer 1 is a ranked index of matches (vector search, or FTS keyword search on
the low-latency path and as the fallback when vector search fails). An
expansion decision over the Layer-1 scores picks which ids get a Layer-2
timeline and which get Layer-3 details. The budget is spent additively:
fixed per-item costs for Layers 1 and 2, content-size estimates for Layer 3.

``ProgressiveRetriever`` holds no per-query state. ``CachingRetriever`` layers
TTL caches over the three layer methods; cached results are never
invalidated by writes and expire on their own.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace

from memlayer.config import RetrievalConfig
from memlayer.errors import BackendUnavailable, MemlayerError, OperationTimeout, ValidationError
from memlayer.memory.bounded import bounded
from memlayer.memory.cache import TTLCache
from memlayer.memory.embedder import Embedder
from memlayer.memory.extract import estimate_tokens, extract_files, extract_tools, has_code, summarize
from memlayer.memory.index import SimilarityIndex
from memlayer.memory.ledger import EventLedger
from memlayer.memory.models import (
    DetailItem,
    DetailMetadata,
    Event,
    EventType,
    IndexItem,
    ProgressiveSearchResult,
    SearchMeta,
    TimelineItem,
)

logger = logging.getLogger(__name__)

SUMMARY_CHARS = 200
PREVIEW_CHARS = 100

NO_RESULTS = "no-results"
HIGH_CONFIDENCE_SINGLE = "high-confidence-single"
CLEAR_WINNER = "clear-winner"
AMBIGUOUS_MULTIPLE_HIGH = "ambiguous-multiple-high"
LOW_CONFIDENCE = "low-confidence"

_EPSILON = 1e-9


@dataclass(frozen=True)
class SearchOptions:
    """Per-query overrides. ``None`` falls back to ``RetrievalConfig``. Hashable."""

    top_k: int | None = None
    min_score: float | None = None
    session_id: str | None = None
    event_type: str | None = None
    max_total_tokens: int | None = None
    window_size: int | None = None
    mode: str = "vector"

    def validate(self) -> SearchOptions:
        if self.top_k is not None and self.top_k <= 0:
            raise ValidationError("top_k must be positive")
        if self.min_score is not None and not 0.0 <= self.min_score <= 1.0:
            raise ValidationError("min_score must be within [0, 1]")
        if self.max_total_tokens is not None and self.max_total_tokens < 0:
            raise ValidationError("max_total_tokens must not be negative")
        if self.window_size is not None and self.window_size < 0:
            raise ValidationError("window_size must not be negative")
        if self.mode not in ("vector", "keyword"):
            raise ValidationError(f"unknown search mode {self.mode!r}")
        if self.event_type is not None:
            return replace(self, event_type=EventType.parse(self.event_type).value)
        return self


@dataclass(frozen=True)
class ExpansionDecision:
    reason: str
    timeline_ids: tuple[str, ...] = ()
    detail_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class IndexResult:
    items: tuple[IndexItem, ...]
    total_matches: int
    degraded: str | None = None


def decide_expansion(ranked: list[tuple[str, float]], config: RetrievalConfig) -> ExpansionDecision:
    """Pick what to expand from ranked ``(event_id, score)`` pairs, best first.

    Rules are checked in order; the first match wins.
    """
    if not ranked:
        return ExpansionDecision(NO_RESULTS)

    top_id, top_score = ranked[0]
    if len(ranked) == 1 and top_score >= config.high_confidence_threshold:
        return ExpansionDecision(HIGH_CONFIDENCE_SINGLE, (top_id,), (top_id,))

    if len(ranked) >= 2:
        gap = top_score - ranked[1][1]
        if top_score >= config.clear_winner_threshold and gap + _EPSILON >= config.score_gap_threshold:
            return ExpansionDecision(CLEAR_WINNER, (top_id,), (top_id,))

    high = [event_id for event_id, score in ranked if score >= config.ambiguous_threshold]
    if len(high) >= 3:
        return ExpansionDecision(AMBIGUOUS_MULTIPLE_HIGH, tuple(high[: config.max_auto_expand]))

    return ExpansionDecision(LOW_CONFIDENCE)


class ProgressiveRetriever:
    def __init__(
        self,
        ledger: EventLedger,
        index: SimilarityIndex,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        embed_timeout: float = 30.0,
        index_timeout: float = 10.0,
    ) -> None:
        self.ledger = ledger
        self.index = index
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.embed_timeout = embed_timeout
        self.index_timeout = index_timeout

    # ── Layer 1: index ───────────────────────────────────

    async def search_index(self, query: str, options: SearchOptions) -> IndexResult:
        top_k = options.top_k or self.config.top_k
        min_score = self.config.min_score if options.min_score is None else options.min_score

        degraded = None
        if options.mode == "keyword":
            scored = self._keyword(query, top_k, options)
        else:
            try:
                scored = await self._vector(query, top_k, options)
            except (OperationTimeout, BackendUnavailable) as e:
                logger.warning("Vector search unavailable, falling back to keyword search: %s", e)
                degraded = f"keyword-fallback: {e}"
                scored = self._keyword(query, top_k, options)

        items = tuple(
            IndexItem(
                event_id=event.id,
                summary=summarize(event.text, SUMMARY_CHARS),
                score=round(score, 4),
                type=event.type,
                timestamp=event.timestamp,
                session_id=event.session_id,
            )
            for event, score in scored
            if score >= min_score
        )
        return IndexResult(items=items, total_matches=len(items), degraded=degraded)

    def _keyword(self, query: str, top_k: int, options: SearchOptions) -> list[tuple[Event, float]]:
        return self.ledger.keyword_search(
            query, limit=top_k, session_id=options.session_id, event_type=options.event_type
        )

    async def _vector(self, query: str, top_k: int, options: SearchOptions) -> list[tuple[Event, float]]:
        vectors = await bounded(
            self.embedder.embed_batch, [query], timeout=self.embed_timeout, operation="embed query"
        )
        matches = await bounded(
            self.index.search,
            vectors[0],
            top_k,
            options.session_id,
            options.event_type,
            timeout=self.index_timeout,
            operation="index search",
        )
        events = self.ledger.get_many([m.event_id for m in matches])
        # The index may briefly hold vectors for events a retention sweep removed.
        return [(events[m.event_id], m.score) for m in matches if m.event_id in events]

    # ── Layer 2: timeline ────────────────────────────────

    def get_timeline(self, target_ids: list[str], window_size: int | None = None) -> list[TimelineItem]:
        """Events around each target in its session, merged without duplicates."""
        window = self.config.window_size if window_size is None else window_size
        targets = set(target_ids)
        seen: set[str] = set()
        timeline: list[TimelineItem] = []
        for target_id in target_ids:
            event = self.ledger.get_by_id(target_id)
            if event is None:
                continue
            surrounding = self.ledger.find_surrounding(
                event.session_id, event.timestamp, window, seq=event.seq
            )
            for item in surrounding:
                if item.id in seen:
                    continue
                seen.add(item.id)
                timeline.append(
                    TimelineItem(
                        event_id=item.id,
                        timestamp=item.timestamp,
                        type=item.type,
                        preview=summarize(item.text, PREVIEW_CHARS),
                        is_target=item.id in targets,
                        session_id=item.session_id,
                    )
                )
        return timeline

    # ── Layer 3: details ─────────────────────────────────

    def estimate_detail_tokens(self, event: Event) -> int:
        return estimate_tokens(event.text, self.config.chars_per_token)

    def get_details(self, event_ids: list[str]) -> list[DetailItem]:
        events = self.ledger.get_many(event_ids)
        details = []
        for event_id in event_ids:
            event = events.get(event_id)
            if event is None:
                continue
            previous, following = self.ledger.neighbours(event)
            text = event.text
            details.append(
                DetailItem(
                    event_id=event.id,
                    type=event.type,
                    timestamp=event.timestamp,
                    session_id=event.session_id,
                    content=text,
                    payload=asdict(event.payload),
                    level=event.level,
                    metadata=DetailMetadata(
                        token_count=self.estimate_detail_tokens(event),
                        has_code=has_code(text),
                        files=extract_files(text),
                        tools=extract_tools(text),
                    ),
                    previous_id=previous.id if previous else None,
                    next_id=following.id if following else None,
                )
            )
        return details

    # ── Orchestration ────────────────────────────────────

    async def smart_search(self, query: str, options: SearchOptions | None = None) -> ProgressiveSearchResult:
        """Layer 1 always; Layers 2 and 3 as the expansion decision and budget allow."""
        if not query or not query.strip():
            raise ValidationError("query must not be empty")
        options = (options or SearchOptions()).validate()
        cfg = self.config
        budget = cfg.max_total_tokens if options.max_total_tokens is None else options.max_total_tokens

        found = await self.search_index(query, options)
        decision = decide_expansion([(i.event_id, i.score) for i in found.items], cfg)

        per_item = max(cfg.layer1_per_item, 1)
        items = list(found.items[: budget // per_item])
        used = len(items) * cfg.layer1_per_item
        kept = {i.event_id for i in items}
        meta = SearchMeta(
            total_matches=found.total_matches,
            expanded_count=0,
            estimated_tokens=used,
            expansion_reason=decision.reason,
            degraded=found.degraded,
        )
        result = ProgressiveSearchResult(index=items, meta=meta)

        timeline_ids = [i for i in decision.timeline_ids if i in kept]
        detail_ids = [i for i in decision.detail_ids if i in kept]
        expanded: set[str] = set()

        if timeline_ids:
            try:
                full = await asyncio.to_thread(self.get_timeline, timeline_ids, options.window_size)
            except MemlayerError as e:
                logger.warning("Timeline expansion failed: %s", e)
                meta.expansion_error = f"timeline: {e}"
            else:
                selected = _fit_timeline(full, budget - used, cfg.layer2_per_item)
                result.timeline = [t for t in full if t.event_id in selected]
                used += len(result.timeline) * cfg.layer2_per_item
                expanded.update(t.event_id for t in result.timeline if t.is_target)

        if detail_ids:
            try:
                result.details, used = await asyncio.to_thread(self._expand_details, detail_ids, used, budget)
            except MemlayerError as e:
                logger.warning("Detail expansion failed: %s", e)
                meta.expansion_error = f"details: {e}"
            else:
                expanded.update(d.event_id for d in result.details)

        meta.expanded_count = len(expanded)
        meta.estimated_tokens = used
        return result

    def _expand_details(self, detail_ids: list[str], used: int, budget: int) -> tuple[list[DetailItem], int]:
        """Details for the ids that fit the budget, in order. Returns them and the new total."""
        events = self.ledger.get_many(detail_ids)
        chosen = []
        for event_id in detail_ids:
            event = events.get(event_id)
            if event is None:
                continue
            cost = self.estimate_detail_tokens(event)
            if used + cost > budget:
                break
            chosen.append(event_id)
            used += cost
        return (self.get_details(chosen) if chosen else []), used


def _fit_timeline(timeline: list[TimelineItem], remaining: int, per_item: int) -> set[str]:
    """Ids that fit the remaining budget, targets first, then context in order."""
    if per_item <= 0:
        return {t.event_id for t in timeline}
    slots = max(remaining, 0) // per_item
    ordered = [t for t in timeline if t.is_target] + [t for t in timeline if not t.is_target]
    return {t.event_id for t in ordered[:slots]}


@dataclass
class _LayerCaches:
    index: TTLCache
    timeline: TTLCache
    details: TTLCache
    hits: dict[str, int] = field(default_factory=lambda: {"index": 0, "timeline": 0, "details": 0})


class CachingRetriever(ProgressiveRetriever):
    """ProgressiveRetriever with per-layer TTL caches (Layer 1 shortest, Layer 3 longest)."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        cfg = self.config
        self.caches = _LayerCaches(
            index=TTLCache(cfg.layer1_ttl, cfg.cache_size),
            timeline=TTLCache(cfg.layer2_ttl, cfg.cache_size),
            details=TTLCache(cfg.layer3_ttl, cfg.cache_size),
        )

    async def search_index(self, query: str, options: SearchOptions) -> IndexResult:
        key = (query, options)
        cached = self.caches.index.get(key)
        if cached is not None:
            self.caches.hits["index"] += 1
            return cached
        result = await super().search_index(query, options)
        # Degraded results are not cached.
        if result.degraded is None:
            self.caches.index.set(key, result)
        return result

    def get_timeline(self, target_ids: list[str], window_size: int | None = None) -> list[TimelineItem]:
        key = (tuple(target_ids), window_size)
        cached = self.caches.timeline.get(key)
        if cached is not None:
            self.caches.hits["timeline"] += 1
            return list(cached)
        timeline = super().get_timeline(target_ids, window_size)
        self.caches.timeline.set(key, tuple(timeline))
        return timeline

    def get_details(self, event_ids: list[str]) -> list[DetailItem]:
        key = tuple(event_ids)
        cached = self.caches.details.get(key)
        if cached is not None:
            self.caches.hits["details"] += 1
            return list(cached)
        details = super().get_details(event_ids)
        self.caches.details.set(key, tuple(details))
        return details

    def invalidate(self) -> None:
        self.caches.index.invalidate()
        self.caches.timeline.invalidate()
        self.caches.details.invalidate()
