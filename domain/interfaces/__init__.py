"""Abstract interfaces for the collaborators of the retrieval engine."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from domain.entities import (
    Chunk,
    DocumentMetadata,
    RetrievalFilters,
    SearchResult,
    WebSearchFilters,
)


class Embedder(ABC):
    """Turns text (chunks or queries) into vector embeddings."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Return the stable identifier for this embedding model."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension for this model."""

    @abstractmethod
    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a sequence of texts into dense vectors."""

    @abstractmethod
    def embed_query(self, text: str) -> list[float]:
        """Embed a user query for retrieval."""


class VectorStore(ABC):
    """Stores chunk embeddings and answers filtered similarity queries."""

    @abstractmethod
    def add(self, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> None:
        """Store embeddings for the provided chunks."""

    @abstractmethod
    def remove_document(self, document_id: str) -> int:
        """Drop every chunk of a document and return how many were removed."""

    @abstractmethod
    def query(
        self,
        embedding: Sequence[float],
        filters: RetrievalFilters | None = None,
        top_k: int = 10,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        """Return the best matching chunks for the query embedding."""


class WebSearchProvider(ABC):
    """Live web search backend."""

    @abstractmethod
    def search(
        self,
        query: str,
        filters: WebSearchFilters | None = None,
        max_results: int = 10,
    ) -> list[SearchResult]:
        """Return web results for the query."""


class CorpusStore(ABC):
    """Read access to document metadata used for prioritization."""

    @abstractmethod
    def get_metadata(self, document_id: str) -> DocumentMetadata | None:
        """Return metadata for a document, if known."""


class CrossEncoderScorer(ABC):
    """Scores (query, passage) pairs jointly."""

    @abstractmethod
    def score(self, query: str, passages: Sequence[str]) -> list[float]:
        """Return one raw relevance score per passage."""


class TokenCounter(ABC):
    """Counts tokens the way the downstream model will."""

    @abstractmethod
    def count(self, text: str) -> int:
        """Return the number of tokens in ``text``."""


class RerankingStrategy(ABC):
    """A pluggable way of rescoring retrieved results."""

    @abstractmethod
    def score(self, query: str, results: Sequence[SearchResult]) -> list[float]:
        """Return a score in [0, 1] for every result, in input order."""


__all__ = [
    "Embedder",
    "VectorStore",
    "WebSearchProvider",
    "CorpusStore",
    "CrossEncoderScorer",
    "RerankingStrategy",
    "TokenCounter",
]
