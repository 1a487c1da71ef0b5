"""Similarity index on a persistent ChromaDB collection.

One record per embedded event, keyed by event id, so re-delivered outbox
entries overwrite rather than duplicate. Vectors are supplied by the outbox
worker; the collection has no embedding function of its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from memlayer.memory.db import to_iso
from memlayer.memory.models import VectorRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VectorMatch:
    event_id: str
    score: float


class SimilarityIndex:
    """Cosine-space nearest-neighbour search over event embeddings."""

    def __init__(self, path: Path, collection: str = "events") -> None:
        self.path = path
        self.collection_name = collection
        self._collection: Any = None

    @property
    def collection(self) -> Any:
        if self._collection is None:
            # Deferred: hook processes that never touch vectors skip the chromadb import.
            import chromadb
            from chromadb.config import Settings

            self.path.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=str(self.path),
                settings=Settings(anonymized_telemetry=False),
            )
            self._collection = client.get_or_create_collection(
                name=self.collection_name,
                embedding_function=None,
                metadata={"hnsw:space": "cosine"},
            )
            logger.debug("Opened index %s (%d vectors)", self.path, self._collection.count())
        return self._collection

    def upsert(self, records: list[VectorRecord]) -> None:
        if not records:
            return
        self.collection.upsert(
            ids=[r.event_id for r in records],
            embeddings=[list(r.embedding) for r in records],
            metadatas=[
                {
                    "session_id": r.session_id,
                    "event_type": r.event_type,
                    "indexed_at": to_iso(r.indexed_at),
                }
                for r in records
            ],
        )

    def search(
        self,
        embedding: list[float],
        top_k: int,
        session_id: str | None = None,
        event_type: str | None = None,
    ) -> list[VectorMatch]:
        """Ranked matches, best first. Score is ``1 - cosine distance`` clamped to [0, 1]."""
        total = self.collection.count()
        if total == 0 or top_k <= 0:
            return []

        clauses: list[dict] = []
        if session_id:
            clauses.append({"session_id": session_id})
        if event_type:
            clauses.append({"event_type": event_type})
        where: dict | None = None
        if len(clauses) == 1:
            where = clauses[0]
        elif clauses:
            where = {"$and": clauses}

        results = self.collection.query(
            query_embeddings=[list(embedding)],
            n_results=min(top_k, total),
            where=where,
            include=["distances"],
        )
        ids = results["ids"][0] if results["ids"] else []
        distances = results["distances"][0] if results.get("distances") else [1.0] * len(ids)
        matches = [
            VectorMatch(event_id=event_id, score=min(max(1.0 - float(distance), 0.0), 1.0))
            for event_id, distance in zip(ids, distances)
        ]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    def remove(self, event_ids: list[str]) -> None:
        if event_ids:
            self.collection.delete(ids=list(event_ids))

    def has(self, event_id: str) -> bool:
        return bool(self.collection.get(ids=[event_id], include=[])["ids"])

    def count(self) -> int:
        return self.collection.count()
