"""Domain entities for the ContextFusion retrieval engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    """Origin of an evidence snippet."""

    DOCUMENT = "document"
    WEB = "web"


class QueryComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class DegradationLevel(str, Enum):
    """Severity of backend failures observed while serving a request."""

    NONE = "none"
    PARTIAL = "partial"
    SEVERE = "severe"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _DEGRADATION_ORDER.index(self)


_DEGRADATION_ORDER = [
    DegradationLevel.NONE,
    DegradationLevel.PARTIAL,
    DegradationLevel.SEVERE,
    DegradationLevel.CRITICAL,
]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class RerankStrategy(str, Enum):
    NONE = "none"
    SCORE_BASED = "score-based"
    CROSS_ENCODER = "cross-encoder"
    HYBRID = "hybrid"


@dataclass(slots=True)
class Chunk:
    """A slice of a corpus document that is indexed for retrieval."""

    id: str
    document_id: str
    content: str
    owner_id: str | None = None
    topic_id: str | None = None
    token_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DocumentMetadata:
    """Descriptive attributes of a corpus document kept by the corpus store."""

    document_id: str
    title: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    file_size: int | None = None
    file_type: str | None = None


@dataclass(slots=True)
class SearchResult:
    """A single evidence snippet produced by a retrieval stage.

    Later stages never mutate a result they received; they return updated
    copies with new score fields.
    """

    source_type: SourceType
    id: str
    title: str = ""
    snippet: str = ""
    relevance_score: float = 0.0
    url: str | None = None
    document_id: str | None = None
    chunk_id: str | None = None
    authority_score: float | None = None
    freshness_score: float | None = None
    priority_score: float | None = None
    weight: float | None = None
    semantic_score: float | None = None
    keyword_score: float | None = None
    rank_delta: int | None = None
    token_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def fusion_key(self) -> tuple[str | None, str]:
        return (self.document_id, self.chunk_id or self.id)


@dataclass(slots=True)
class RetrievalFilters:
    """Scoping applied to document-side retrieval before scoring."""

    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: list[str] | None = None

    def matches(self, chunk: Chunk) -> bool:
        if self.owner_id is not None and chunk.owner_id != self.owner_id:
            return False
        if self.topic_id is not None and chunk.topic_id != self.topic_id:
            return False
        if self.document_ids is not None and chunk.document_id not in self.document_ids:
            return False
        return True


@dataclass(slots=True)
class WebSearchFilters:
    topic: str | None = None
    time_range: str | None = None
    country: str | None = None
    domains: list[str] | None = None


@dataclass(frozen=True, slots=True)
class TokenBudget:
    """Token allowance for the assembled context of one query."""

    total_available: int
    reserved_for_system_and_history: int
    remaining_for_context: int

    @classmethod
    def compute(cls, total_available: int, reserved_for_system_and_history: int = 0) -> "TokenBudget":
        remaining = max(0, total_available - reserved_for_system_and_history)
        return cls(
            total_available=total_available,
            reserved_for_system_and_history=reserved_for_system_and_history,
            remaining_for_context=remaining,
        )


@dataclass(slots=True)
class TokenUsage:
    document: int = 0
    web: int = 0

    @property
    def total(self) -> int:
        return self.document + self.web


@dataclass(slots=True)
class ContextLimits:
    """Maximum number of document chunks and web results for one context."""

    document_chunks: int
    web_results: int


@dataclass(slots=True)
class RAGContext:
    """Evidence assembled for a single query."""

    document_results: list[SearchResult] = field(default_factory=list)
    web_results: list[SearchResult] = field(default_factory=list)
    degraded: bool = False
    degradation_level: DegradationLevel = DegradationLevel.NONE
    partial: bool = False
    reason: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    limits: ContextLimits | None = None
    from_cache: bool = False


@dataclass(slots=True)
class RetrievalOptions:
    """Caller options for a single context retrieval."""

    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: list[str] | None = None
    enable_keyword: bool = True
    enable_semantic: bool = True
    enable_web: bool = True
    enable_cache: bool = True
    enable_dedup: bool = True
    enable_rerank: bool = False
    enable_diversity: bool = True
    token_budget: TokenBudget | None = None
    web_filters: WebSearchFilters | None = None
    rerank_strategy: RerankStrategy | None = None
    prioritization_preset: str | None = None
    cache_ttl: float | None = None

    def filters(self) -> RetrievalFilters:
        return RetrievalFilters(
            owner_id=self.owner_id,
            topic_id=self.topic_id,
            document_ids=list(self.document_ids) if self.document_ids is not None else None,
        )


__all__ = [
    "SourceType",
    "QueryComplexity",
    "DegradationLevel",
    "CircuitState",
    "RerankStrategy",
    "Chunk",
    "DocumentMetadata",
    "SearchResult",
    "RetrievalFilters",
    "WebSearchFilters",
    "TokenBudget",
    "TokenUsage",
    "ContextLimits",
    "RAGContext",
    "RetrievalOptions",
]
