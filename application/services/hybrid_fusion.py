"""Weighted fusion of semantic and keyword result lists."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Literal, Sequence

from domain.entities import SearchResult

logger = logging.getLogger(__name__)

Side = Literal["semantic", "keyword"]


@dataclass(slots=True)
class FusionWeights:
    semantic: float = 0.6
    keyword: float = 0.4

    def normalized(self) -> "FusionWeights":
        if self.semantic < 0 or self.keyword < 0:
            raise ValueError("Fusion weights must be non-negative")
        total = self.semantic + self.keyword
        if total <= 0:
            raise ValueError("At least one fusion weight must be positive")
        if math.isclose(total, 1.0, abs_tol=1e-9):
            return self
        logger.warning(
            "Fusion weights %.3f/%.3f do not sum to 1, normalizing", self.semantic, self.keyword
        )
        return FusionWeights(semantic=self.semantic / total, keyword=self.keyword / total)


@dataclass(slots=True)
class FusionMetrics:
    semantic_mean: float
    keyword_mean: float
    hybrid_mean: float
    improvement_over_semantic: float
    improvement_over_keyword: float


@dataclass(slots=True)
class _Candidate:
    base: SearchResult
    rank: tuple[int, int]
    semantic: float | None = None
    keyword: float | None = None


def _normalized_scores(results: Sequence[SearchResult]) -> list[float]:
    best = max((result.relevance_score for result in results), default=0.0)
    if best <= 0:
        return [0.0 for _ in results]
    return [max(0.0, result.relevance_score) / best for result in results]


def fuse(
    semantic_results: Sequence[SearchResult],
    keyword_results: Sequence[SearchResult],
    weights: FusionWeights | None = None,
) -> list[SearchResult]:
    """Merge both lists by (document_id, chunk_id) into one ranked list.

    Each side is scaled by its own best score. Items found by both sides get
    the weighted sum; items found by one side keep that side's weighted score.
    Ties go to the item with the lower original rank, semantic side first.
    """
    w = (weights or FusionWeights()).normalized()
    candidates: dict[tuple[str | None, str], _Candidate] = {}

    for index, (result, score) in enumerate(zip(semantic_results, _normalized_scores(semantic_results))):
        key = result.fusion_key
        existing = candidates.get(key)
        if existing is None:
            candidates[key] = _Candidate(base=result, rank=(index, 0), semantic=score)
        elif existing.semantic is None or score > existing.semantic:
            existing.semantic = score

    for index, (result, score) in enumerate(zip(keyword_results, _normalized_scores(keyword_results))):
        key = result.fusion_key
        existing = candidates.get(key)
        if existing is None:
            candidates[key] = _Candidate(base=result, rank=(index, 1), keyword=score)
            continue
        if existing.keyword is None or score > existing.keyword:
            existing.keyword = score
        existing.rank = min(existing.rank, (index, 1))
        existing.base = replace(existing.base, metadata={**result.metadata, **existing.base.metadata})

    fused: list[tuple[float, tuple[int, int], SearchResult]] = []
    for candidate in candidates.values():
        combined = (candidate.semantic or 0.0) * w.semantic + (candidate.keyword or 0.0) * w.keyword
        if candidate.semantic is not None and candidate.keyword is not None:
            source = "both"
        elif candidate.semantic is not None:
            source = "semantic"
        else:
            source = "keyword"
        result = replace(
            candidate.base,
            relevance_score=combined,
            semantic_score=candidate.semantic,
            keyword_score=candidate.keyword,
            metadata={**candidate.base.metadata, "fusion_source": source},
        )
        fused.append((combined, candidate.rank, result))

    fused.sort(key=lambda item: (-item[0], item[1]))
    logger.debug(
        "Fused %d semantic and %d keyword results into %d",
        len(semantic_results),
        len(keyword_results),
        len(fused),
    )
    return [result for _, _, result in fused]


def pass_through(results: Sequence[SearchResult], side: Side) -> list[SearchResult]:
    """Single-side path used when the other side is disabled or failed."""
    output: list[SearchResult] = []
    for result, score in zip(results, _normalized_scores(results)):
        output.append(
            replace(
                result,
                relevance_score=score,
                semantic_score=score if side == "semantic" else None,
                keyword_score=score if side == "keyword" else None,
                metadata={**result.metadata, "fusion_source": side},
            )
        )
    output.sort(key=lambda result: -result.relevance_score)
    return output


def precision_metrics(
    semantic_results: Sequence[SearchResult],
    keyword_results: Sequence[SearchResult],
    fused_results: Sequence[SearchResult],
    k: int = 5,
) -> FusionMetrics:
    """Compare the top-k mean scores of each list against the fused one."""

    def top_mean(scores: list[float]) -> float:
        top = sorted(scores, reverse=True)[:k]
        return sum(top) / len(top) if top else 0.0

    semantic_mean = top_mean(_normalized_scores(semantic_results))
    keyword_mean = top_mean(_normalized_scores(keyword_results))
    hybrid_mean = top_mean([result.relevance_score for result in fused_results])

    def improvement(baseline: float) -> float:
        if baseline <= 0:
            return 0.0
        return (hybrid_mean - baseline) / baseline * 100

    return FusionMetrics(
        semantic_mean=semantic_mean,
        keyword_mean=keyword_mean,
        hybrid_mean=hybrid_mean,
        improvement_over_semantic=improvement(semantic_mean),
        improvement_over_keyword=improvement(keyword_mean),
    )


__all__ = ["FusionWeights", "FusionMetrics", "fuse", "pass_through", "precision_metrics"]
