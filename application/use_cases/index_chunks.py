"""Use case for adding chunks to, and removing documents from, the search indexes."""
from __future__ import annotations

import logging
from typing import Sequence

from application.services.bm25_index import KeywordIndex
from application.services.degradation import VECTOR
from application.services.similarity_cache import InvalidationScope, SimilarityCache
from domain.entities import Chunk
from domain.errors import BackendUnavailable
from domain.interfaces import Embedder, VectorStore

logger = logging.getLogger(__name__)


def index_chunks(
    chunks: Sequence[Chunk],
    *,
    keyword_index: KeywordIndex,
    embedder: Embedder | None = None,
    vector_store: VectorStore | None = None,
    cache: SimilarityCache | None = None,
) -> int:
    """Index chunks for keyword and vector search and drop stale cached contexts.

    Keyword indexing happens first and is kept when embedding fails; the
    failure is then reported as :class:`BackendUnavailable`.
    """
    if not chunks:
        return 0
    keyword_index.index_many(chunks)
    if cache is not None:
        for document_id in {chunk.document_id for chunk in chunks}:
            cache.invalidate(InvalidationScope(document_id=document_id))
        cache.invalidate_for_chunks(chunks)

    if embedder is None or vector_store is None:
        return len(chunks)
    try:
        embeddings = embedder.embed_texts([chunk.content for chunk in chunks])
        vector_store.add(chunks, embeddings)
    except Exception as exc:
        logger.exception("Vector indexing failed for %d chunks", len(chunks))
        raise BackendUnavailable(VECTOR, f"vector indexing failed: {exc}") from exc
    return len(chunks)


def remove_document(
    document_id: str,
    *,
    keyword_index: KeywordIndex,
    vector_store: VectorStore | None = None,
    cache: SimilarityCache | None = None,
) -> int:
    """Remove every chunk of a document from both indexes."""
    removed = keyword_index.remove(document_id)
    if vector_store is not None:
        removed = max(removed, vector_store.remove_document(document_id))
    if cache is not None:
        cache.invalidate(InvalidationScope(document_id=document_id))
    return removed


__all__ = ["index_chunks", "remove_document"]
