"""Incremental BM25 keyword index over document chunks."""
from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from application.services.text_similarity import tokenize
from domain.entities import Chunk, RetrievalFilters, SearchResult, SourceType

logger = logging.getLogger(__name__)

K1 = 1.2
B = 0.75


@dataclass(slots=True)
class _IndexedChunk:
    chunk: Chunk
    term_frequencies: dict[str, int]
    length: int


@dataclass(slots=True)
class _State:
    chunks: dict[str, _IndexedChunk] = field(default_factory=dict)
    postings: dict[str, frozenset[str]] = field(default_factory=dict)
    by_document: dict[str, frozenset[str]] = field(default_factory=dict)
    total_length: int = 0
    non_empty: int = 0

    @property
    def average_length(self) -> float:
        if self.non_empty == 0:
            return 0.0
        return self.total_length / self.non_empty


@dataclass(slots=True)
class KeywordIndexStats:
    total_chunks: int
    total_documents: int
    total_terms: int
    average_chunk_length: float


class KeywordIndex:
    """BM25 inverted index with copy-on-write snapshots.

    Writers build a new snapshot under a lock and publish it with a single
    assignment, so searches always see a consistent index without locking.
    """

    def __init__(self, *, k1: float = K1, b: float = B) -> None:
        self._k1 = k1
        self._b = b
        self._state = _State()
        self._write_lock = threading.Lock()

    def index(self, chunk: Chunk) -> None:
        self.index_many([chunk])

    def index_many(self, chunks: Iterable[Chunk]) -> int:
        batch = list(chunks)
        if not batch:
            return 0
        with self._write_lock:
            state = self._copy_state(self._state)
            for chunk in batch:
                self._drop_chunk(state, chunk.id)
                self._add_chunk(state, chunk)
            self._state = state
        logger.debug("Indexed %d chunks, index size %d", len(batch), len(state.chunks))
        return len(batch)

    def remove(self, document_id: str) -> int:
        with self._write_lock:
            chunk_ids = self._state.by_document.get(document_id)
            if not chunk_ids:
                return 0
            state = self._copy_state(self._state)
            for chunk_id in chunk_ids:
                self._drop_chunk(state, chunk_id)
            self._state = state
        logger.debug("Removed %d chunks of document %s from keyword index", len(chunk_ids), document_id)
        return len(chunk_ids)

    def clear(self) -> None:
        with self._write_lock:
            self._state = _State()

    def stats(self) -> KeywordIndexStats:
        state = self._state
        return KeywordIndexStats(
            total_chunks=len(state.chunks),
            total_documents=len(state.by_document),
            total_terms=len(state.postings),
            average_chunk_length=state.average_length,
        )

    def search(
        self,
        query: str,
        filters: RetrievalFilters | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        state = self._state
        terms = tokenize(query)
        if not terms or not state.chunks or top_k <= 0:
            return []

        candidate_ids: set[str] = set()
        for term in set(terms):
            candidate_ids.update(state.postings.get(term, ()))
        if filters is not None:
            candidate_ids = {cid for cid in candidate_ids if filters.matches(state.chunks[cid].chunk)}
        if not candidate_ids:
            return []

        total = len(state.chunks)
        average_length = state.average_length or 1.0
        idf = {term: self._idf(total, len(state.postings.get(term, ()))) for term in set(terms)}

        scored: list[tuple[float, _IndexedChunk]] = []
        for chunk_id in candidate_ids:
            entry = state.chunks[chunk_id]
            score = 0.0
            for term in terms:
                tf = entry.term_frequencies.get(term, 0)
                if tf == 0:
                    continue
                norm = 1 - self._b + self._b * entry.length / average_length
                score += idf[term] * (tf * (self._k1 + 1)) / (tf + self._k1 * norm)
            if score > 0 and score >= min_score:
                scored.append((score, entry))

        scored.sort(key=lambda item: (-item[0], item[1].chunk.id))
        top = scored[:top_k]
        if not top:
            return []
        best = top[0][0]
        return [self._to_result(entry, score, best) for score, entry in top]

    @staticmethod
    def _idf(total: int, document_frequency: int) -> float:
        return math.log((total - document_frequency + 0.5) / (document_frequency + 0.5) + 1)

    @staticmethod
    def _copy_state(state: _State) -> _State:
        return _State(
            chunks=dict(state.chunks),
            postings=dict(state.postings),
            by_document=dict(state.by_document),
            total_length=state.total_length,
            non_empty=state.non_empty,
        )

    @staticmethod
    def _add_chunk(state: _State, chunk: Chunk) -> None:
        terms = tokenize(chunk.content)
        entry = _IndexedChunk(chunk=chunk, term_frequencies=dict(Counter(terms)), length=len(terms))
        state.chunks[chunk.id] = entry
        for term in entry.term_frequencies:
            state.postings[term] = state.postings.get(term, frozenset()) | {chunk.id}
        state.by_document[chunk.document_id] = state.by_document.get(chunk.document_id, frozenset()) | {chunk.id}
        if entry.length > 0:
            state.total_length += entry.length
            state.non_empty += 1

    @staticmethod
    def _drop_chunk(state: _State, chunk_id: str) -> None:
        entry = state.chunks.pop(chunk_id, None)
        if entry is None:
            return
        for term in entry.term_frequencies:
            remaining = state.postings.get(term, frozenset()) - {chunk_id}
            if remaining:
                state.postings[term] = remaining
            else:
                state.postings.pop(term, None)
        document_id = entry.chunk.document_id
        siblings = state.by_document.get(document_id, frozenset()) - {chunk_id}
        if siblings:
            state.by_document[document_id] = siblings
        else:
            state.by_document.pop(document_id, None)
        if entry.length > 0:
            state.total_length -= entry.length
            state.non_empty -= 1

    @staticmethod
    def _to_result(entry: _IndexedChunk, score: float, best: float) -> SearchResult:
        chunk = entry.chunk
        metadata = dict(chunk.metadata)
        metadata["bm25_score"] = score
        return SearchResult(
            source_type=SourceType.DOCUMENT,
            id=chunk.id,
            title=str(chunk.metadata.get("title") or chunk.document_id),
            snippet=chunk.content,
            relevance_score=score / best if best > 0 else 0.0,
            document_id=chunk.document_id,
            chunk_id=chunk.id,
            keyword_score=score,
            token_count=chunk.token_count,
            metadata=metadata,
        )


__all__ = ["KeywordIndex", "KeywordIndexStats", "K1", "B"]
