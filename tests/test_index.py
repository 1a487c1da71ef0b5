"""Tests for the ChromaDB-backed similarity index."""

import pytest

from memlayer.memory.db import utcnow
from memlayer.memory.index import SimilarityIndex
from memlayer.memory.models import VectorRecord

pytest.importorskip("chromadb")


def _record(event_id, vector, session="s1", event_type="prompt"):
    return VectorRecord(
        event_id=event_id,
        embedding=vector,
        indexed_at=utcnow(),
        session_id=session,
        event_type=event_type,
    )


@pytest.fixture
def chroma_index(tmp_path):
    return SimilarityIndex(tmp_path / "index")


class TestSimilarityIndex:
    def test_empty_search(self, chroma_index):
        assert chroma_index.search([1.0, 0.0, 0.0], top_k=5) == []
        assert chroma_index.count() == 0

    def test_ranked_by_cosine(self, chroma_index):
        chroma_index.upsert([
            _record("a", [1.0, 0.0, 0.0]),
            _record("b", [0.7, 0.7, 0.0]),
            _record("c", [0.0, 0.0, 1.0]),
        ])
        matches = chroma_index.search([1.0, 0.0, 0.0], top_k=3)
        assert [m.event_id for m in matches] == ["a", "b", "c"]
        assert matches[0].score == pytest.approx(1.0, abs=1e-3)
        assert matches[1].score == pytest.approx(0.7071, abs=1e-3)
        assert all(0.0 <= m.score <= 1.0 for m in matches)

    def test_top_k_larger_than_collection(self, chroma_index):
        chroma_index.upsert([_record("a", [1.0, 0.0])])
        assert len(chroma_index.search([1.0, 0.0], top_k=10)) == 1

    def test_upsert_is_idempotent(self, chroma_index):
        chroma_index.upsert([_record("a", [1.0, 0.0])])
        chroma_index.upsert([_record("a", [0.0, 1.0])])
        assert chroma_index.count() == 1
        assert chroma_index.search([0.0, 1.0], top_k=1)[0].score == pytest.approx(1.0, abs=1e-3)

    def test_filters(self, chroma_index):
        chroma_index.upsert([
            _record("a", [1.0, 0.0], session="s1", event_type="prompt"),
            _record("b", [1.0, 0.1], session="s2", event_type="prompt"),
            _record("c", [1.0, 0.2], session="s2", event_type="response"),
        ])
        assert [m.event_id for m in chroma_index.search([1.0, 0.0], 5, session_id="s2")] == ["b", "c"]
        only = chroma_index.search([1.0, 0.0], 5, session_id="s2", event_type="response")
        assert [m.event_id for m in only] == ["c"]

    def test_remove_and_has(self, chroma_index):
        chroma_index.upsert([_record("a", [1.0, 0.0]), _record("b", [0.0, 1.0])])
        assert chroma_index.has("a")
        chroma_index.remove(["a"])
        assert not chroma_index.has("a")
        assert chroma_index.count() == 1

    def test_persists_across_instances(self, tmp_path):
        SimilarityIndex(tmp_path / "index").upsert([_record("a", [1.0, 0.0])])
        assert SimilarityIndex(tmp_path / "index").count() == 1
