"""Tests for the MemoryService boundary operations."""

import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from memlayer.core import DEFAULT_USAGE_SESSION, MemoryService, build_service
from memlayer.errors import StorageUnavailable, ValidationError
from memlayer.memory.insights import INSIGHT_SESSION
from memlayer.memory.models import EventType, MemoryLevel
from memlayer.memory.retriever import HIGH_CONFIDENCE_SINGLE, SearchOptions

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

PROMPT = "schema design for X"
RESPONSE = "use an event-sourced table"
QUERY = "schema design"


@pytest.fixture
def conversation(service: MemoryService, embedder):
    embedder.vectors.update({
        PROMPT: embedder._pad([0.6, 0.0, 0.8]),
        RESPONSE: embedder._pad([1.0, 0.1]),
        QUERY: embedder._pad([1.0, 0.12]),
    })
    prompt = service.store_event("A", "prompt", PROMPT, timestamp=T0)
    response = service.store_event("A", "response", RESPONSE, timestamp=T0 + timedelta(seconds=5))
    return prompt.event_id, response.event_id


class TestStoreEvent:
    def test_store_prompt(self, service: MemoryService):
        result = service.store_event("s1", "prompt", "hello there")
        assert not result.is_duplicate
        assert service.ledger.get_by_id(result.event_id).text == "hello there"

    def test_duplicate_returns_existing_id(self, service: MemoryService):
        first = service.store_event("s1", "prompt", "hello there", timestamp=T0)
        second = service.store_event("s1", "prompt", "Hello  there", timestamp=T0 + timedelta(seconds=30))
        assert second.is_duplicate
        assert second.event_id == first.event_id

    def test_validation(self, service: MemoryService):
        with pytest.raises(ValidationError):
            service.store_event("s1", "prompt", "   ")
        with pytest.raises(ValidationError):
            service.store_event("s1", "unknown-type", "text")
        with pytest.raises(ValidationError):
            service.store_event("s1", "tool-observation", "output")
        with pytest.raises(ValidationError):
            service.store_event("", "prompt", "text")
        with pytest.raises(ValidationError):
            service.store_event("s1", "insight", "a pattern", {"confidence": 2})
        assert service.ledger.count() == 0

    def test_malformed_metadata(self, service: MemoryService):
        with pytest.raises(ValidationError):
            service.store_event("s1", "tool-observation", "ok", {"tool_name": "Bash", "duration_ms": "fast"})
        with pytest.raises(ValidationError):
            service.store_event("s1", "insight", "a pattern", {"source_event_ids": "abc123"})
        with pytest.raises(ValidationError):
            service.store_event("s1", "insight", "a pattern", {"source_event_ids": ["abc", 7]})
        result = service.store_event("s1", "insight", "a pattern", {"source_event_ids": ["abc", "def"]})
        assert service.ledger.get_by_id(result.event_id).payload.source_event_ids == ("abc", "def")

    def test_tool_observation(self, service: MemoryService):
        result = service.store_event(
            "s1",
            EventType.TOOL_OBSERVATION,
            "3 passed",
            {
                "tool_name": "Bash",
                "tool_input": {"command": "pytest"},
                "tool_metadata": {"command": "pytest", "exit_code": 0},
                "duration_ms": 1200,
            },
        )
        event = service.ledger.get_by_id(result.event_id)
        assert event.payload.tool_name == "Bash"
        assert event.payload.metadata.exit_code == 0
        assert event.payload.duration_ms == 1200
        assert "Tool: Bash" in event.payload.embedding_text()

    def test_session_lifecycle(self, service: MemoryService):
        service.start_session("s1", project_path="/work/repo")
        service.store_event("s1", "prompt", "hello")
        service.end_session("s1", summary="Said hello")
        sessions = service.ledger.list_sessions()
        assert sessions[0]["project_path"] == "/work/repo"
        assert sessions[0]["summary"] == "Said hello"

    def test_storage_failure_propagates(self, service: MemoryService, monkeypatch):
        def broken(*args, **kwargs):
            raise StorageUnavailable("disk full")

        monkeypatch.setattr(service.ledger, "append", broken)
        with pytest.raises(StorageUnavailable):
            service.store_event("s1", "prompt", "hello")


class TestSearchEndToEnd:
    @pytest.mark.asyncio
    async def test_prompt_response_cycle(self, service: MemoryService, conversation):
        prompt_id, response_id = conversation
        drained = await service.process_pending_embeddings()
        assert drained.processed == 2

        result = await service.search(QUERY, caller_session="B")
        assert [item.event_id for item in result.index] == [response_id]
        top = result.index[0]
        assert top.score > 0.8
        assert result.meta.expansion_reason == HIGH_CONFIDENCE_SINGLE
        assert re.fullmatch(r"[A-Za-z0-9]{6}", top.citation_id)
        assert result.details[0].citation_id == top.citation_id
        assert [t.event_id for t in result.timeline] == [prompt_id, response_id]

        cited = service.get_cited_event(f"mem:{top.citation_id}", session_id="B")
        assert cited.event.id == response_id
        assert cited.event.text == RESPONSE
        assert cited.related_previous.id == prompt_id
        assert cited.related_next is None

    @pytest.mark.asyncio
    async def test_search_logs_usage_for_details(self, service: MemoryService, conversation):
        _, response_id = conversation
        await service.process_pending_embeddings()
        result = await service.search(QUERY, caller_session="B")

        usages = service.citations.usages(result.index[0].citation_id)
        assert [(u.session_id, u.context_query) for u in usages] == [("B", QUERY)]
        assert service.ledger.get_by_id(response_id).access_count == 1

    @pytest.mark.asyncio
    async def test_undrained_events_not_found_by_vector(self, service: MemoryService, conversation):
        result = await service.search(QUERY)
        assert result.index == []

    @pytest.mark.asyncio
    async def test_keyword_search(self, service: MemoryService, conversation):
        _, response_id = conversation
        result = await service.search("event-sourced", SearchOptions(mode="keyword"))
        assert [item.event_id for item in result.index] == [response_id]
        assert result.index[0].citation_id

    @pytest.mark.asyncio
    async def test_empty_query(self, service: MemoryService):
        with pytest.raises(ValidationError):
            await service.search("")

    @pytest.mark.asyncio
    async def test_recall(self, service: MemoryService, conversation):
        _, response_id = conversation
        items = await service.recall("event sourced table")
        assert [i.event_id for i in items] == [response_id]
        assert items[0].citation_id
        assert service.ledger.get_by_id(response_id).access_count == 1


class TestCitations:
    def test_unknown_citation(self, service: MemoryService):
        assert service.get_cited_event("mem:zzzzzz") is None
        assert service.get_cited_event("garbage") is None

    @pytest.mark.asyncio
    async def test_cite_logs_usage(self, service: MemoryService, conversation):
        await service.process_pending_embeddings()
        result = await service.search(QUERY, SearchOptions(max_total_tokens=50))
        cid = result.index[0].citation_id

        service.get_cited_event(cid)
        service.get_cited_event(cid, session_id="C", query="why events?")
        sessions = [u.session_id for u in service.citations.usages(cid)]
        assert sessions == [DEFAULT_USAGE_SESSION, "C"]

    @pytest.mark.asyncio
    async def test_citation_stable_across_searches(self, service: MemoryService, conversation):
        await service.process_pending_embeddings()
        first = await service.search(QUERY)
        service.retriever.invalidate()
        second = await service.search(QUERY)
        assert first.index[0].citation_id == second.index[0].citation_id

    def test_get_details_records_usage(self, service: MemoryService, conversation):
        prompt_id, _ = conversation
        details = service.get_details([prompt_id], caller_session="B", query="q")
        assert details[0].citation_id
        assert len(service.citations.usages(details[0].citation_id)) == 1


class TestStats:
    @pytest.mark.asyncio
    async def test_stats(self, service: MemoryService, conversation):
        stats = await service.get_stats()
        assert stats.event_count == 2
        assert stats.vector_count == 0
        assert stats.pending_embeddings == 2
        assert stats.session_count == 1
        assert stats.level_counts["L0"] == 2

        await service.process_pending_embeddings()
        stats = await service.get_stats()
        assert stats.vector_count == 2
        assert stats.pending_embeddings == 0

    @pytest.mark.asyncio
    async def test_stats_without_index(self, service: MemoryService, index, conversation):
        index.fail_with = RuntimeError("index offline")
        stats = await service.get_stats()
        assert stats.vector_count is None
        assert stats.event_count == 2
        assert "vector_count" in stats.to_dict()


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_graduates_cited_events(self, service: MemoryService, conversation):
        prompt_id, _ = conversation
        details = service.get_details([prompt_id], caller_session="B")
        for session in ("C", "D"):
            service.get_cited_event(details[0].citation_id, session_id=session)

        report = await service.sweep()
        assert report.retention is None
        assert report.insights is None
        assert report.graduation.promoted == 1
        assert service.ledger.get_by_id(prompt_id).level.label == "L3"

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, service: MemoryService, conversation):
        prompt_id, _ = conversation
        details = service.get_details([prompt_id], caller_session="B")
        service.get_cited_event(details[0].citation_id, session_id="C")

        report = await service.sweep(retention=True, dry_run=True, insights=True)
        assert report.graduation.dry_run
        assert report.graduation.promoted == 1
        assert report.retention.dry_run
        assert report.insights.dry_run
        assert service.ledger.get_by_id(prompt_id).level == MemoryLevel.L0
        assert service.graduation.last_run() is None

        await service.sweep()
        assert service.ledger.get_by_id(prompt_id).level == MemoryLevel.L1

    @pytest.mark.asyncio
    async def test_sweep_extracts_insights_once(self, service: MemoryService):
        service.store_event("A", "prompt", "run the full test suite")
        service.store_event("B", "prompt", "Run the full  test suite")
        service.store_event("B", "prompt", "I prefer tabs over spaces in this repo")
        service.store_event("B", "prompt", "what does this function return?")

        report = await service.sweep(insights=True)
        assert report.insights.scanned == 4
        assert report.insights.patterns == 1
        assert report.insights.preferences == 1
        assert len(report.insights.stored) == 2

        insights = service.ledger.list_recent(event_type=EventType.INSIGHT)
        assert {e.session_id for e in insights} == {INSIGHT_SESSION}
        by_type = {e.payload.insight_type: e.payload for e in insights}
        assert by_type["pattern"].text == "Repeated topic: run the full test suite"
        assert len(by_type["pattern"].source_event_ids) == 2
        assert by_type["preference"].text.startswith("User preference: I prefer tabs")
        assert service.outbox.pending_count() == 6

        again = await service.sweep(insights=True)
        assert again.insights.stored == []
        assert len(service.ledger.list_recent(event_type=EventType.INSIGHT)) == 2


class TestBrowsing:
    def test_recent_and_session_history(self, service: MemoryService, conversation):
        prompt_id, response_id = conversation
        service.start_session("B", project_path="/work/repo")

        assert [e.id for e in service.get_recent(session_id="A")] == [response_id, prompt_id]
        assert [e.id for e in service.get_recent(limit=1, event_type="prompt")] == [prompt_id]
        assert [e.id for e in service.get_session_history("A")] == [prompt_id, response_id]
        assert [s["session_id"] for s in service.get_session_history()] == ["B"]
        with pytest.raises(ValidationError):
            service.get_recent(limit=0)

    def test_events_by_level(self, service: MemoryService, conversation):
        prompt_id, response_id = conversation
        service.ledger.set_level(prompt_id, MemoryLevel.L2)

        assert [e.id for e in service.get_events_by_level("L2")] == [prompt_id]
        assert [e.id for e in service.get_events_by_level(2)] == [prompt_id]
        assert [e.id for e in service.get_events_by_level(MemoryLevel.L0)] == [response_id]
        for bad in ("L9", "high", 7):
            with pytest.raises(ValidationError):
                service.get_events_by_level(bad)

    def test_most_accessed(self, service: MemoryService, conversation):
        prompt_id, _ = conversation
        assert service.get_most_accessed() == []
        service.get_details([prompt_id])
        assert [e.id for e in service.get_most_accessed()] == [prompt_id]

    def test_rebuild_keyword_index(self, service: MemoryService, conversation):
        assert service.rebuild_keyword_index() == 2


@contextmanager
def write_locked(path):
    """Hold the ledger's write lock from a second connection."""
    holder = sqlite3.connect(str(path), isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        yield
    finally:
        holder.execute("ROLLBACK")
        holder.close()


class TestLockedLedger:
    @pytest.fixture
    def busy_service(self, config, embedder, index):
        config.storage.busy_timeout = 0.1
        svc = build_service(config, embedder=embedder, index=index)
        yield svc
        svc.close()

    @pytest.fixture
    def events(self, busy_service: MemoryService):
        cited = busy_service.store_event("A", "response", "use an event sourced table").event_id
        fresh = busy_service.store_event("A", "response", "an event sourced audit log").event_id
        return cited, fresh, busy_service.citations.get_or_create(cited)

    @pytest.mark.asyncio
    async def test_search_returns_results(self, busy_service: MemoryService, config, events):
        cited, fresh, citation_id = events
        with write_locked(config.storage.ledger_path):
            result = await busy_service.search("event sourced", SearchOptions(mode="keyword", min_score=0.0))

        assert {i.event_id: i.citation_id for i in result.index} == {cited: citation_id, fresh: None}
        assert result.meta.citation_error
        assert result.to_dict()["meta"]["citation_error"]

    @pytest.mark.asyncio
    async def test_recall_returns_results(self, busy_service: MemoryService, config, events):
        cited, fresh, citation_id = events
        with write_locked(config.storage.ledger_path):
            items = await busy_service.recall("event sourced", min_score=0.0)

        assert {i.event_id: i.citation_id for i in items} == {cited: citation_id, fresh: None}
        assert busy_service.ledger.get_by_id(cited).access_count == 0

    def test_cite_while_locked(self, busy_service: MemoryService, config, events):
        cited, _, citation_id = events
        with write_locked(config.storage.ledger_path):
            found = busy_service.get_cited_event(citation_id)
        assert found.event.id == cited
        assert busy_service.citations.usages(citation_id) == []

    @pytest.mark.asyncio
    async def test_unlocked_search_has_no_error(self, busy_service: MemoryService, events):
        result = await busy_service.search("event sourced", SearchOptions(mode="keyword", min_score=0.0))
        assert result.meta.citation_error is None
        assert all(i.citation_id for i in result.index)
