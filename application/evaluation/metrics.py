"""Ranking quality metrics for reranking and fusion regression checks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from domain.entities import SearchResult


def precision_at_k(ranked_ids: Sequence[str], relevant_ids: set[str], k: int) -> float:
    top = list(ranked_ids[: max(0, k)])
    if not top:
        return 0.0
    return sum(1 for doc_id in top if doc_id in relevant_ids) / len(top)


def recall_at_k(ranked_ids: Sequence[str], relevant_ids: set[str], k: int) -> float:
    if not relevant_ids:
        return 0.0
    found = {doc_id for doc_id in ranked_ids[: max(0, k)] if doc_id in relevant_ids}
    return len(found) / len(relevant_ids)


def mrr_at_k(ranked_ids: Sequence[str], relevant_ids: set[str], k: int) -> float:
    for rank, doc_id in enumerate(ranked_ids[: max(0, k)], start=1):
        if doc_id in relevant_ids:
            return 1.0 / rank
    return 0.0


def mean_abs_rank_delta(results: Sequence[SearchResult]) -> float:
    deltas = [abs(result.rank_delta) for result in results if result.rank_delta is not None]
    if not deltas:
        return 0.0
    return sum(deltas) / len(deltas)


def mean_top_score(results: Sequence[SearchResult], k: int = 5) -> float:
    top = [result.relevance_score for result in results[:k]]
    return sum(top) / len(top) if top else 0.0


@dataclass(slots=True)
class RerankReport:
    precision_before: float
    precision_after: float
    mean_score_before: float
    mean_score_after: float
    mean_rank_change: float

    @property
    def precision_improvement(self) -> float:
        return self.precision_after - self.precision_before


def rerank_report(
    before: Sequence[SearchResult],
    after: Sequence[SearchResult],
    relevant_ids: set[str],
    k: int = 5,
) -> RerankReport:
    """Compare a ranking before and after reranking against known relevant ids."""
    return RerankReport(
        precision_before=precision_at_k([result.id for result in before], relevant_ids, k),
        precision_after=precision_at_k([result.id for result in after], relevant_ids, k),
        mean_score_before=mean_top_score(before, k),
        mean_score_after=mean_top_score(after, k),
        mean_rank_change=mean_abs_rank_delta(after),
    )


__all__ = [
    "precision_at_k",
    "recall_at_k",
    "mrr_at_k",
    "mean_abs_rank_delta",
    "mean_top_score",
    "RerankReport",
    "rerank_report",
]
