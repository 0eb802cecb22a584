"""Maximal Marginal Relevance selection to reduce redundant evidence."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Sequence

import numpy as np

from application.services.text_similarity import text_jaccard
from domain.entities import SearchResult
from domain.interfaces import Embedder

logger = logging.getLogger(__name__)

SimilarityFn = Callable[[SearchResult, SearchResult], float]


@dataclass(slots=True)
class DiversityConfig:
    lambda_: float = 0.7
    max_results: int = 10


def jaccard_similarity(left: SearchResult, right: SearchResult) -> float:
    return text_jaccard(left.snippet, right.snippet)


class EmbeddingSimilarity:
    """Cosine similarity between snippet embeddings, computed lazily once per snippet."""

    def __init__(self, embedder: Embedder) -> None:
        self._embedder = embedder
        self._vectors: dict[str, np.ndarray] = {}

    def prepare(self, results: Sequence[SearchResult]) -> None:
        missing = [result.snippet for result in results if result.snippet not in self._vectors]
        if not missing:
            return
        for text, vector in zip(missing, self._embedder.embed_texts(missing)):
            array = np.asarray(vector, dtype="float32")
            norm = float(np.linalg.norm(array))
            self._vectors[text] = array / norm if norm > 0 else array

    def __call__(self, left: SearchResult, right: SearchResult) -> float:
        self.prepare([left, right])
        return float(np.dot(self._vectors[left.snippet], self._vectors[right.snippet]))


def diversify(
    results: Sequence[SearchResult],
    lambda_: float = 0.7,
    max_results: int = 10,
    similarity: SimilarityFn = jaccard_similarity,
) -> list[SearchResult]:
    """Pick up to ``max_results`` items balancing relevance and novelty.

    The first pick is always the most relevant item. Every following pick
    maximizes ``lambda * relevance - (1 - lambda) * max_similarity_to_selected``.
    """
    if max_results <= 0 or not results:
        return []
    lam = min(1.0, max(0.0, lambda_))
    if isinstance(similarity, EmbeddingSimilarity):
        similarity.prepare(results)

    remaining = sorted(results, key=lambda result: -result.relevance_score)
    first = remaining.pop(0)
    selected = [replace(first, metadata={**first.metadata, "mmr_score": first.relevance_score})]
    max_similarity = [similarity(candidate, first) for candidate in remaining]

    while remaining and len(selected) < max_results:
        best_index = 0
        best_score = float("-inf")
        for index, candidate in enumerate(remaining):
            score = lam * candidate.relevance_score - (1 - lam) * max_similarity[index]
            if score > best_score:
                best_index = index
                best_score = score
        chosen = remaining.pop(best_index)
        max_similarity.pop(best_index)
        selected.append(replace(chosen, metadata={**chosen.metadata, "mmr_score": best_score}))
        for index, candidate in enumerate(remaining):
            max_similarity[index] = max(max_similarity[index], similarity(candidate, chosen))

    logger.debug("Diversity filter kept %d of %d results (lambda=%.2f)", len(selected), len(results), lam)
    return selected


def diversity_metric(results: Sequence[SearchResult], similarity: SimilarityFn = jaccard_similarity) -> float:
    """1 minus the mean pairwise similarity; 1.0 for fewer than two results."""
    if len(results) <= 1:
        return 1.0
    total = 0.0
    pairs = 0
    for i in range(len(results)):
        for j in range(i + 1, len(results)):
            total += similarity(results[i], results[j])
            pairs += 1
    return 1.0 - total / pairs


__all__ = [
    "DiversityConfig",
    "EmbeddingSimilarity",
    "jaccard_similarity",
    "diversify",
    "diversity_metric",
]
