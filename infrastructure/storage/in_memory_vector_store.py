"""Brute-force vector store kept in memory."""
from __future__ import annotations

import heapq
import threading
from typing import Sequence

from domain.entities import Chunk, RetrievalFilters, SearchResult, SourceType
from domain.interfaces import VectorStore


def chunk_result(chunk: Chunk, score: float) -> SearchResult:
    return SearchResult(
        source_type=SourceType.DOCUMENT,
        id=chunk.id,
        title=str(chunk.metadata.get("title") or chunk.document_id),
        snippet=chunk.content,
        relevance_score=min(1.0, max(0.0, score)),
        document_id=chunk.document_id,
        chunk_id=chunk.id,
        semantic_score=score,
        token_count=chunk.token_count,
        metadata=dict(chunk.metadata),
    )


class InMemoryVectorStore(VectorStore):
    """Keeps embeddings in Python lists and scans them on every query."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Chunk, list[float]]] = {}
        self._lock = threading.Lock()

    def add(self, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")
        with self._lock:
            for chunk, embedding in zip(chunks, embeddings):
                self._entries[chunk.id] = (chunk, list(embedding))

    def remove_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [cid for cid, (chunk, _) in self._entries.items() if chunk.document_id == document_id]
            for chunk_id in doomed:
                del self._entries[chunk_id]
        return len(doomed)

    def query(
        self,
        embedding: Sequence[float],
        filters: RetrievalFilters | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        with self._lock:
            entries = list(self._entries.values())
        scored: list[tuple[float, str, Chunk]] = []
        for chunk, vector in entries:
            if filters is not None and not filters.matches(chunk):
                continue
            score = self._cosine_similarity(embedding, vector)
            if score < min_score:
                continue
            heapq.heappush(scored, (score, chunk.id, chunk))
            if len(scored) > top_k:
                heapq.heappop(scored)
        ranked = sorted(scored, key=lambda item: (-item[0], item[1]))
        return [chunk_result(chunk, score) for score, _, chunk in ranked]

    @staticmethod
    def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        numerator = sum(x * y for x, y in zip(a, b))
        denom_a = sum(x * x for x in a) ** 0.5 or 1.0
        denom_b = sum(x * x for x in b) ** 0.5 or 1.0
        return numerator / (denom_a * denom_b)


__all__ = ["InMemoryVectorStore", "chunk_result"]
