"""Removal of duplicate and near-duplicate web results under a time budget."""
from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Literal, Sequence

from application.services.text_similarity import term_frequency_cosine, text_jaccard
from domain.entities import SearchResult

logger = logging.getLogger(__name__)

SimilarityMethod = Literal["jaccard", "cosine"]

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://")
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class DedupThresholds:
    content: float = 0.85
    title: float = 0.90


@dataclass(slots=True)
class DeduplicationConfig:
    thresholds: DedupThresholds | None = None
    preserve_highest_score: bool = True
    max_processing_time_ms: float = 150.0
    window: int = 20
    similarity: SimilarityMethod = "jaccard"


@dataclass(slots=True)
class DeduplicationStats:
    original_count: int = 0
    remaining_count: int = 0
    url_duplicates: int = 0
    content_duplicates: int = 0
    similar_duplicates: int = 0
    processing_time_ms: float = 0.0
    budget_exhausted: bool = False

    @property
    def removed(self) -> int:
        return self.original_count - self.remaining_count


def normalize_url(url: str) -> str:
    """Lowercase, drop scheme, leading ``www.`` and trailing slash; keep the query."""
    normalized = _SCHEME.sub("", url.strip().lower())
    if normalized.startswith("www."):
        normalized = normalized[4:]
    path, sep, query = normalized.partition("?")
    path = path.split("#", 1)[0].rstrip("/")
    return f"{path}{sep}{query}"


def content_hash(text: str) -> str | None:
    normalized = _WHITESPACE.sub(" ", text.lower()).strip()
    if not normalized:
        return None
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


_SIMILARITY: dict[SimilarityMethod, Callable[[str, str], float]] = {
    "jaccard": lambda a, b: text_jaccard(a, b, min_length=2),
    "cosine": lambda a, b: term_frequency_cosine(a, b, min_length=2),
}


class _Budget:
    def __init__(self, limit_ms: float, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._start = clock()
        self._limit = limit_ms / 1000.0

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self._start) * 1000.0

    def exhausted(self) -> bool:
        return self._clock() - self._start > self._limit


def deduplicate_with_stats(
    results: Sequence[SearchResult],
    config: DeduplicationConfig | None = None,
    *,
    clock: Callable[[], float] = time.perf_counter,
) -> tuple[list[SearchResult], DeduplicationStats]:
    """Run the URL, content-hash and similarity passes, cheapest first.

    Candidates are visited best score first, so the kept representative of
    every duplicate group is its highest-scored member. Survivors keep their
    input order. When the time budget runs out the unprocessed remainder is
    appended untouched.
    """
    cfg = config or DeduplicationConfig()
    thresholds = cfg.thresholds or DedupThresholds()
    similarity = _SIMILARITY.get(cfg.similarity)
    if similarity is None:
        raise ValueError(f"Unknown similarity method '{cfg.similarity}'")

    stats = DeduplicationStats(original_count=len(results))
    budget = _Budget(cfg.max_processing_time_ms, clock)
    if cfg.preserve_highest_score:
        order = sorted(range(len(results)), key=lambda i: (-results[i].relevance_score, i))
    else:
        order = list(range(len(results)))

    # pass 1: normalized URL
    seen_urls: set[str] = set()
    after_url: list[int] = []
    for index in order:
        url = results[index].url
        key = normalize_url(url) if url else None
        if key is not None and key in seen_urls:
            stats.url_duplicates += 1
            continue
        if key is not None:
            seen_urls.add(key)
        after_url.append(index)

    survivors = after_url
    pending: list[int] = []
    if budget.exhausted():
        stats.budget_exhausted = True
    else:
        # pass 2: exact content
        seen_hashes: set[str] = set()
        after_hash: list[int] = []
        for index in survivors:
            digest = content_hash(results[index].snippet)
            if digest is not None and digest in seen_hashes:
                stats.content_duplicates += 1
                continue
            if digest is not None:
                seen_hashes.add(digest)
            after_hash.append(index)
        survivors = after_hash

        if budget.exhausted():
            stats.budget_exhausted = True
        else:
            # pass 3: near duplicates against the first kept items
            kept: list[int] = []
            for position, index in enumerate(survivors):
                if budget.exhausted():
                    stats.budget_exhausted = True
                    pending = survivors[position:]
                    break
                candidate = results[index]
                if any(
                    _is_similar(candidate, results[other], thresholds, similarity)
                    for other in kept[: cfg.window]
                ):
                    stats.similar_duplicates += 1
                    continue
                kept.append(index)
            survivors = kept

    keep = set(survivors) | set(pending)
    output = [result for i, result in enumerate(results) if i in keep]
    stats.remaining_count = len(output)
    stats.processing_time_ms = budget.elapsed_ms
    if stats.budget_exhausted:
        logger.warning(
            "Web deduplication exceeded %.0f ms budget, returning partial work", cfg.max_processing_time_ms
        )
    logger.debug(
        "Deduplicated %d web results to %d in %.1f ms",
        stats.original_count,
        stats.remaining_count,
        stats.processing_time_ms,
    )
    return output, stats


def _is_similar(
    candidate: SearchResult,
    kept: SearchResult,
    thresholds: DedupThresholds,
    similarity: Callable[[str, str], float],
) -> bool:
    if candidate.title and kept.title and similarity(candidate.title, kept.title) >= thresholds.title:
        return True
    if candidate.snippet and kept.snippet:
        return similarity(candidate.snippet, kept.snippet) >= thresholds.content
    return False


def deduplicate(
    results: Sequence[SearchResult],
    config: DeduplicationConfig | None = None,
    *,
    clock: Callable[[], float] = time.perf_counter,
) -> list[SearchResult]:
    return deduplicate_with_stats(results, config, clock=clock)[0]


__all__ = [
    "DedupThresholds",
    "DeduplicationConfig",
    "DeduplicationStats",
    "normalize_url",
    "content_hash",
    "deduplicate",
    "deduplicate_with_stats",
]
