"""Embedder backed by sentence-transformers models."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sentence_transformers import SentenceTransformer

from domain.interfaces import Embedder

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SentenceTransformersConfig:
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    device: str = "cpu"
    normalize_embeddings: bool = True
    batch_size: int = 16
    query_prefix: str | None = None
    passage_prefix: str | None = None


class SentenceTransformersEmbedder(Embedder):
    """Encodes chunks and queries with a local SentenceTransformer model."""

    def __init__(self, config: SentenceTransformersConfig | None = None) -> None:
        self._config = config or SentenceTransformersConfig()
        logger.info("Loading sentence-transformers model %s", self._config.model_name)
        self._model = SentenceTransformer(self._config.model_name, device=self._config.device)
        self._dimension = int(self._model.get_sentence_embedding_dimension())

    @property
    def model_id(self) -> str:
        return self._config.model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    def _encode(self, texts: list[str], batch_size: int) -> list[list[float]]:
        embeddings = self._model.encode(
            texts,
            batch_size=batch_size,
            normalize_embeddings=self._config.normalize_embeddings,
            show_progress_bar=False,
        )
        return embeddings.tolist()

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        prefix = self._config.passage_prefix or ""
        logger.debug("Encoding %d chunks with %s", len(texts), self._config.model_name)
        return self._encode([f"{prefix}{text}" for text in texts], self._config.batch_size)

    def embed_query(self, text: str) -> list[float]:
        prefix = self._config.query_prefix or ""
        return self._encode([f"{prefix}{text}"], 1)[0]


__all__ = ["SentenceTransformersEmbedder", "SentenceTransformersConfig"]
