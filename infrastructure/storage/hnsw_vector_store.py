"""ANN vector store on top of hnswlib."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Sequence

import hnswlib
import numpy as np

from domain.entities import Chunk, RetrievalFilters, SearchResult
from domain.interfaces import VectorStore
from infrastructure.storage.in_memory_vector_store import chunk_result

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HnswConfig:
    dimension: int
    max_elements: int = 100_000
    ef_construction: int = 200
    M: int = 16
    ef_search: int = 50


class HnswVectorStore(VectorStore):
    """Cosine-space hnswlib index with chunk filters applied during the search."""

    def __init__(self, config: HnswConfig) -> None:
        self._config = config
        self._index = hnswlib.Index(space="cosine", dim=config.dimension)
        self._index.init_index(
            max_elements=config.max_elements,
            ef_construction=config.ef_construction,
            M=config.M,
        )
        self._index.set_ef(config.ef_search)
        self._chunks: dict[int, Chunk] = {}
        self._labels: dict[str, int] = {}
        self._next_label = 0
        self._lock = threading.Lock()

    def add(self, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> None:
        if not chunks:
            return
        vectors = np.array(embeddings, dtype="float32")
        if vectors.ndim != 2 or vectors.shape != (len(chunks), self._config.dimension):
            raise ValueError(
                f"Expected {len(chunks)} embeddings of dimension {self._config.dimension}, got {vectors.shape}"
            )
        with self._lock:
            for chunk in chunks:
                self._drop_chunk(chunk.id)
            labels = list(range(self._next_label, self._next_label + len(chunks)))
            self._next_label += len(chunks)
            needed = self._index.get_current_count() + len(chunks)
            if needed > self._index.get_max_elements():
                new_size = max(needed, self._index.get_max_elements() * 2)
                logger.info("Resizing HNSW index to %d elements", new_size)
                self._index.resize_index(new_size)
            self._index.add_items(vectors, labels)
            for label, chunk in zip(labels, chunks):
                self._chunks[label] = chunk
                self._labels[chunk.id] = label

    def remove_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [chunk.id for chunk in self._chunks.values() if chunk.document_id == document_id]
            for chunk_id in doomed:
                self._drop_chunk(chunk_id)
        return len(doomed)

    def query(
        self,
        embedding: Sequence[float],
        filters: RetrievalFilters | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        with self._lock:
            if filters is None:
                allowed = set(self._chunks)
            else:
                allowed = {label for label, chunk in self._chunks.items() if filters.matches(chunk)}
            k = min(top_k, len(allowed))
            if k <= 0:
                return []
            self._index.set_ef(max(self._config.ef_search, k))
            vector = np.array([embedding], dtype="float32")
            labels, distances = self._index.knn_query(vector, k=k, filter=lambda label: label in allowed)
            chunks = dict(self._chunks)

        results: list[SearchResult] = []
        for label, distance in zip(labels[0].tolist(), distances[0].tolist()):
            score = 1.0 - float(distance)
            if score < min_score or label not in chunks:
                continue
            results.append(chunk_result(chunks[label], score))
        return results

    def _drop_chunk(self, chunk_id: str) -> None:
        label = self._labels.pop(chunk_id, None)
        if label is None:
            return
        self._chunks.pop(label, None)
        self._index.mark_deleted(label)


__all__ = ["HnswVectorStore", "HnswConfig"]
