"""In-memory cache of assembled contexts with exact and embedding-similarity lookup."""
from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Sequence

import numpy as np

from domain.entities import (
    Chunk,
    ContextLimits,
    DegradationLevel,
    RAGContext,
    RetrievalOptions,
    SearchResult,
    SourceType,
    TokenUsage,
    WebSearchFilters,
)
from domain.errors import CacheError

logger = logging.getLogger(__name__)

QUERY_PREFIX_LENGTH = 200
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class CacheConfig:
    max_entries: int = 1000
    similarity_threshold: float = 0.85
    early_exit_similarity: float = 0.95
    max_scan_keys: int = 1000
    batch_size: int = 50
    web_only_ttl: float = 15 * 60
    document_only_ttl: float = 60 * 60
    mixed_ttl: float = 30 * 60


@dataclass(frozen=True, slots=True)
class CacheScope:
    """Everything that makes two queries' contexts interchangeable, except the query text."""

    owner_id: str | None = None
    topic_id: str | None = None
    document_ids: tuple[str, ...] | None = None
    flags: str = ""
    token_budget: int | None = None
    web_filters: str = ""
    includes_documents: bool = True

    @classmethod
    def from_options(cls, options: RetrievalOptions) -> "CacheScope":
        flags = "".join(
            "1" if flag else "0"
            for flag in (
                options.enable_keyword,
                options.enable_semantic,
                options.enable_web,
                options.enable_dedup,
                options.enable_rerank,
                options.enable_diversity,
            )
        )
        extras = [
            options.rerank_strategy.value if options.rerank_strategy else "",
            options.prioritization_preset or "",
        ]
        document_ids = tuple(sorted(options.document_ids)) if options.document_ids is not None else None
        return cls(
            owner_id=options.owner_id,
            topic_id=options.topic_id,
            document_ids=document_ids,
            flags=":".join([flags, *extras]),
            token_budget=options.token_budget.remaining_for_context if options.token_budget else None,
            web_filters=web_filter_fingerprint(options.web_filters) if options.enable_web else "",
            includes_documents=options.enable_keyword or options.enable_semantic,
        )

    def fingerprint(self) -> str:
        payload = json.dumps(
            [self.owner_id, self.topic_id, self.document_ids, self.flags, self.token_budget, self.web_filters],
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


def web_filter_fingerprint(filters: WebSearchFilters | None) -> str:
    """Canonical form of the web filters; empty when nothing narrows the search."""
    if filters is None:
        return ""
    domains = sorted({domain.strip().lower() for domain in filters.domains or [] if domain.strip()})
    parts = [
        (filters.topic or "").strip().lower(),
        (filters.time_range or "").strip().lower(),
        (filters.country or "").strip().lower(),
        ",".join(domains),
    ]
    if not any(parts):
        return ""
    return "|".join(parts)


@dataclass(frozen=True, slots=True)
class InvalidationScope:
    owner_id: str | None = None
    topic_id: str | None = None
    document_id: str | None = None

    def is_empty(self) -> bool:
        return self.owner_id is None and self.topic_id is None and self.document_id is None

    def matches(self, entry: CacheEntry) -> bool:
        if self.is_empty():
            return False
        scope = entry.scope
        if self.owner_id is not None and scope.owner_id != self.owner_id:
            return False
        if self.topic_id is not None and scope.topic_id != self.topic_id:
            return False
        if self.document_id is not None:
            in_scope = scope.document_ids is not None and self.document_id in scope.document_ids
            return in_scope or self.document_id in entry.document_ids
        return True


@dataclass(slots=True)
class CacheEntry:
    key: str
    scope: CacheScope
    payload: str
    embedding: np.ndarray | None
    created_at: float
    ttl: float
    document_ids: frozenset[str] = field(default_factory=frozenset)

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def could_include(self, chunk: Chunk) -> bool:
        """Whether a search under this entry's scope would have matched ``chunk``."""
        scope = self.scope
        if not scope.includes_documents:
            return False
        if scope.owner_id is not None and scope.owner_id != chunk.owner_id:
            return False
        if scope.topic_id is not None and scope.topic_id != chunk.topic_id:
            return False
        if scope.document_ids is not None and chunk.document_id not in scope.document_ids:
            return False
        return True


@dataclass(slots=True)
class CacheStats:
    entries: int = 0
    hits: int = 0
    misses: int = 0
    similarity_hits: int = 0
    sets: int = 0
    errors: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def normalize_query(query: str) -> str:
    return _WHITESPACE.sub(" ", query.strip().lower())[:QUERY_PREFIX_LENGTH]


def build_key(query: str, scope: CacheScope) -> str:
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()[:32]
    return f"rag:{scope.fingerprint()}:{digest}"


def context_to_payload(context: RAGContext) -> str:
    data = asdict(context)
    return json.dumps(data, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, (SourceType, DegradationLevel)):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def context_from_payload(payload: str) -> RAGContext:
    data = json.loads(payload)
    limits = data.get("limits")
    return RAGContext(
        document_results=[_result_from_dict(item) for item in data.get("document_results", [])],
        web_results=[_result_from_dict(item) for item in data.get("web_results", [])],
        degraded=data.get("degraded", False),
        degradation_level=DegradationLevel(data.get("degradation_level", DegradationLevel.NONE.value)),
        partial=data.get("partial", False),
        reason=data.get("reason"),
        token_usage=TokenUsage(**data.get("token_usage", {})),
        limits=ContextLimits(**limits) if limits else None,
        from_cache=data.get("from_cache", False),
    )


def _result_from_dict(item: dict[str, Any]) -> SearchResult:
    values = dict(item)
    values["source_type"] = SourceType(values["source_type"])
    return SearchResult(**values)


class SimilarityCache:
    """Bounded TTL cache keyed by scope and query, with a similarity fallback.

    Entries are stored serialized and every hit returns a fresh copy. Any
    internal failure is counted and reported as a miss.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CacheConfig()
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def ttl_for(self, options: RetrievalOptions) -> float:
        if options.cache_ttl is not None:
            return options.cache_ttl
        documents = options.enable_keyword or options.enable_semantic
        if options.enable_web and not documents:
            return self._config.web_only_ttl
        if documents and not options.enable_web:
            return self._config.document_only_ttl
        return self._config.mixed_ttl

    def get(self, key: str) -> RAGContext | None:
        try:
            with self._lock:
                entry = self._live_entry(key)
                if entry is None:
                    self._stats.misses += 1
                    return None
            context = self._restore(entry.payload)
            with self._lock:
                self._stats.hits += 1
            return context
        except Exception:
            self._record_error("get")
            return None

    def get_similar(
        self,
        embedding: Sequence[float],
        scope: CacheScope,
        threshold: float | None = None,
    ) -> RAGContext | None:
        """Return the context of the most similar cached query in the same scope.

        Only hits are counted here; the exact lookup that precedes it already
        recorded the miss for the query.
        """
        limit = self._config.similarity_threshold if threshold is None else threshold
        try:
            query = _unit(np.asarray(embedding, dtype="float32"))
            with self._lock:
                now = self._clock()
                candidates = [
                    entry
                    for entry in list(self._entries.values())[-self._config.max_scan_keys :]
                    if entry.embedding is not None
                    and entry.scope == scope
                    and not entry.expired(now)
                    and entry.embedding.shape == query.shape
                ]
            best_score = -1.0
            best: CacheEntry | None = None
            for start in range(0, len(candidates), self._config.batch_size):
                batch = candidates[start : start + self._config.batch_size]
                scores = np.stack([entry.embedding for entry in batch]) @ query
                index = int(np.argmax(scores))
                if float(scores[index]) > best_score:
                    best_score = float(scores[index])
                    best = batch[index]
                if best_score >= self._config.early_exit_similarity:
                    break
            if best is None or best_score < limit:
                return None
            context = self._restore(best.payload)
            with self._lock:
                self._stats.hits += 1
                self._stats.similarity_hits += 1
            logger.debug("Similarity cache hit %.3f for key %s", best_score, best.key)
            return context
        except Exception:
            self._record_error("get_similar", miss=False)
            return None

    def set(
        self,
        key: str,
        context: RAGContext,
        *,
        scope: CacheScope,
        ttl: float,
        embedding: Sequence[float] | None = None,
    ) -> bool:
        try:
            payload = context_to_payload(context)
            vector = _unit(np.asarray(embedding, dtype="float32")) if embedding is not None else None
            document_ids = frozenset(
                result.document_id for result in context.document_results if result.document_id
            )
            entry = CacheEntry(
                key=key,
                scope=scope,
                payload=payload,
                embedding=vector,
                created_at=self._clock(),
                ttl=ttl,
                document_ids=document_ids,
            )
            with self._lock:
                self._entries.pop(key, None)
                self._entries[key] = entry
                self._stats.sets += 1
                while len(self._entries) > self._config.max_entries:
                    self._entries.popitem(last=False)
                    self._stats.evictions += 1
            return True
        except Exception:
            self._record_error("set", miss=False)
            return False

    def invalidate(self, scope: InvalidationScope) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if scope.matches(entry)]
            for key in doomed:
                del self._entries[key]
            self._stats.invalidations += len(doomed)
        logger.info("Invalidated %d cached contexts for %s", len(doomed), scope)
        return len(doomed)

    def invalidate_for_chunks(self, chunks: Sequence[Chunk]) -> int:
        """Drop every entry whose search scope would now also match one of ``chunks``."""
        with self._lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if any(entry.could_include(chunk) for chunk in chunks)
            ]
            for key in doomed:
                del self._entries[key]
            self._stats.invalidations += len(doomed)
        if doomed:
            logger.info("Invalidated %d cached contexts after indexing %d chunks", len(doomed), len(chunks))
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return replace(self._stats, entries=len(self._entries))

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    @staticmethod
    def _restore(payload: str) -> RAGContext:
        try:
            context = context_from_payload(payload)
        except (ValueError, TypeError, KeyError) as exc:
            raise CacheError("Corrupt cache payload") from exc
        context.from_cache = True
        return context

    def _record_error(self, operation: str, *, miss: bool = True) -> None:
        with self._lock:
            self._stats.errors += 1
            if miss:
                self._stats.misses += 1
        logger.warning("Cache %s failed, treating as miss", operation, exc_info=True)


def _unit(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0:
        return vector
    return vector / norm


__all__ = [
    "CacheConfig",
    "CacheScope",
    "InvalidationScope",
    "CacheEntry",
    "CacheStats",
    "SimilarityCache",
    "build_key",
    "web_filter_fingerprint",
    "normalize_query",
    "context_to_payload",
    "context_from_payload",
]
