"""Embedding backends used by the outbox worker and vector search."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from memlayer.config import EmbeddingConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Protocol that all embedding backends must implement."""

    @property
    def name(self) -> str: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in order. Blocking."""
        ...


@dataclass
class SentenceTransformerEmbedder:
    """Local sentence-transformers model. Loaded on first use."""

    model_name: str = "all-MiniLM-L6-v2"
    device: str = "cpu"
    batch_size: int = 32
    _model: Any = field(default=None, init=False, repr=False)

    @property
    def name(self) -> str:
        return f"local:{self.model_name}"

    def _load(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s on %s", self.model_name, self.device)
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._load().encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [v.tolist() for v in vectors]


@dataclass
class OpenAIEmbedder:
    """OpenAI embeddings API. Reads OPENAI_API_KEY from the environment."""

    model: str = "text-embedding-3-small"
    timeout: float = 30.0

    def __post_init__(self) -> None:
        try:
            import openai

            self._client = openai.OpenAI(timeout=self.timeout)
        except ImportError:
            raise ImportError(
                "openai package required. Install with: uv pip install 'memlayer[openai]'"
            )

    @property
    def name(self) -> str:
        return f"openai:{self.model}"

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        response = self._client.embeddings.create(model=self.model, input=texts)
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]


def build_embedder(config: EmbeddingConfig) -> Embedder:
    """Create the configured embedding backend."""
    if config.provider == "local":
        return SentenceTransformerEmbedder(
            model_name=config.model,
            device=config.device,
            batch_size=config.batch_size,
        )
    if config.provider == "openai":
        return OpenAIEmbedder(model=config.openai_model, timeout=config.timeout)
    raise ValueError(f"Unknown embedding provider: {config.provider!r}")
