"""Shared fixtures: a deterministic embedder and an in-memory similarity index."""

from __future__ import annotations

import math
from pathlib import Path

import pytest

from memlayer.config import MemlayerConfig, StorageConfig
from memlayer.core import MemoryService, build_service
from memlayer.memory.citations import CitationRegistry
from memlayer.memory.db import Database
from memlayer.memory.index import VectorMatch
from memlayer.memory.ledger import EventLedger
from memlayer.memory.models import VectorRecord
from memlayer.memory.outbox import Outbox

DIM = 64
EXPLICIT_DIMS = 16


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


def cosine(a: list[float], b: list[float]) -> float:
    na, nb = _norm(a), _norm(b)
    if not na or not nb:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (na * nb)


class StubEmbedder:
    """Explicit vectors for known texts; every other text gets its own orthogonal axis."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = {text: self._pad(v) for text, v in (vectors or {}).items()}
        self._axes: dict[str, int] = {}
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    @property
    def name(self) -> str:
        return "stub"

    @staticmethod
    def _pad(vector: list[float]) -> list[float]:
        assert len(vector) <= EXPLICIT_DIMS
        return list(vector) + [0.0] * (DIM - len(vector))

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return self.vectors[text]
        axis = self._axes.setdefault(text, EXPLICIT_DIMS + len(self._axes) % (DIM - EXPLICIT_DIMS))
        vector = [0.0] * DIM
        vector[axis] = 1.0
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector_for(t) for t in texts]


class FakeIndex:
    """In-memory stand-in for SimilarityIndex with the same interface."""

    def __init__(self) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.upserts = 0
        self.fail_with: Exception | None = None

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def upsert(self, records: list[VectorRecord]) -> None:
        self._check()
        for record in records:
            self.records[record.event_id] = record
            self.upserts += 1

    def search(self, embedding, top_k, session_id=None, event_type=None) -> list[VectorMatch]:
        self._check()
        matches = [
            VectorMatch(event_id, min(max(cosine(embedding, r.embedding), 0.0), 1.0))
            for event_id, r in self.records.items()
            if (not session_id or r.session_id == session_id)
            and (not event_type or r.event_type == event_type)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:top_k]

    def remove(self, event_ids: list[str]) -> None:
        self._check()
        for event_id in event_ids:
            self.records.pop(event_id, None)

    def has(self, event_id: str) -> bool:
        return event_id in self.records

    def count(self) -> int:
        self._check()
        return len(self.records)


@pytest.fixture
def config(tmp_path: Path) -> MemlayerConfig:
    return MemlayerConfig(storage=StorageConfig(root=tmp_path / "memlayer"))


@pytest.fixture
def db(config: MemlayerConfig):
    database = Database(config.storage.ledger_path)
    yield database
    database.close()


@pytest.fixture
def outbox(db: Database) -> Outbox:
    return Outbox(db)


@pytest.fixture
def ledger(db: Database, outbox: Outbox, config: MemlayerConfig) -> EventLedger:
    return EventLedger(db, outbox, config.storage)


@pytest.fixture
def citations(db: Database) -> CitationRegistry:
    return CitationRegistry(db)


@pytest.fixture
def embedder() -> StubEmbedder:
    return StubEmbedder()


@pytest.fixture
def index() -> FakeIndex:
    return FakeIndex()


@pytest.fixture
def service(config: MemlayerConfig, embedder: StubEmbedder, index: FakeIndex):
    svc: MemoryService = build_service(config, embedder=embedder, index=index)
    yield svc
    svc.close()
