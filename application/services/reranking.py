"""Second-pass reranking of fused document results."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from domain.entities import RerankStrategy, SearchResult
from domain.interfaces import CrossEncoderScorer, RerankingStrategy

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScoreWeights:
    semantic: float = 0.4
    keyword: float = 0.3
    length: float = 0.2
    position: float = 0.1


@dataclass(slots=True)
class RerankingConfig:
    top_k: int = 20
    max_results: int = 10
    min_score: float = 0.3
    strategy: RerankStrategy = RerankStrategy.SCORE_BASED
    weights: ScoreWeights | None = None
    cross_encoder_weight: float = 0.7


def length_score(text: str) -> float:
    """1.0 for snippets up to 100 characters, decaying logarithmically after."""
    return 1.0 / (1.0 + math.log10(max(1.0, len(text) / 100)))


def _sigmoid(value: float) -> float:
    if value >= 0:
        return 1.0 / (1.0 + math.exp(-value))
    exp = math.exp(value)
    return exp / (1.0 + exp)


class PassThroughStrategy(RerankingStrategy):
    """Keeps the current relevance scores."""

    def score(self, query: str, results: Sequence[SearchResult]) -> list[float]:
        return [result.relevance_score for result in results]


class ScoreBasedStrategy(RerankingStrategy):
    """Blend of semantic, keyword, length and position signals."""

    def __init__(self, weights: ScoreWeights | None = None) -> None:
        self._weights = weights or ScoreWeights()

    def score(self, query: str, results: Sequence[SearchResult]) -> list[float]:
        total = len(results)
        w = self._weights
        scores: list[float] = []
        for index, result in enumerate(results):
            semantic = result.semantic_score
            keyword = result.keyword_score
            if semantic is None and keyword is None:
                semantic = keyword = result.relevance_score
            value = (
                w.semantic * (semantic or 0.0)
                + w.keyword * (keyword or 0.0)
                + w.length * length_score(result.snippet)
                + w.position * (1.0 - index / total)
            )
            scores.append(min(1.0, max(0.0, value)))
        return scores


class CrossEncoderStrategy(RerankingStrategy):
    """Joint query/passage scoring by an external cross-encoder model."""

    def __init__(self, scorer: CrossEncoderScorer) -> None:
        self._scorer = scorer

    def score(self, query: str, results: Sequence[SearchResult]) -> list[float]:
        raw = self._scorer.score(query, [result.snippet for result in results])
        if len(raw) != len(results):
            raise RuntimeError(f"Cross-encoder returned {len(raw)} scores for {len(results)} passages")
        return [_sigmoid(float(value)) for value in raw]


class HybridStrategy(RerankingStrategy):
    """Cross-encoder blended with score-based, falling back to the latter."""

    def __init__(
        self,
        cross_encoder: CrossEncoderStrategy | None,
        score_based: ScoreBasedStrategy | None = None,
        cross_encoder_weight: float = 0.7,
    ) -> None:
        self._cross_encoder = cross_encoder
        self._score_based = score_based or ScoreBasedStrategy()
        self._cross_weight = cross_encoder_weight

    def score(self, query: str, results: Sequence[SearchResult]) -> list[float]:
        base = self._score_based.score(query, results)
        if self._cross_encoder is None:
            return base
        try:
            cross = self._cross_encoder.score(query, results)
        except Exception:
            logger.warning("Cross-encoder scoring failed, using score-based reranking", exc_info=True)
            return base
        return [self._cross_weight * c + (1 - self._cross_weight) * s for c, s in zip(cross, base)]


StrategyFactory = Callable[[RerankingConfig, CrossEncoderScorer | None], RerankingStrategy]


def _cross_encoder_factory(config: RerankingConfig, scorer: CrossEncoderScorer | None) -> RerankingStrategy:
    if scorer is None:
        raise ValueError("Cross-encoder reranking requires a cross-encoder scorer")
    return CrossEncoderStrategy(scorer)


def _hybrid_factory(config: RerankingConfig, scorer: CrossEncoderScorer | None) -> RerankingStrategy:
    return HybridStrategy(
        CrossEncoderStrategy(scorer) if scorer is not None else None,
        ScoreBasedStrategy(config.weights),
        config.cross_encoder_weight,
    )


_STRATEGY_FACTORIES: dict[RerankStrategy, StrategyFactory] = {
    RerankStrategy.NONE: lambda config, scorer: PassThroughStrategy(),
    RerankStrategy.SCORE_BASED: lambda config, scorer: ScoreBasedStrategy(config.weights),
    RerankStrategy.CROSS_ENCODER: _cross_encoder_factory,
    RerankStrategy.HYBRID: _hybrid_factory,
}


def build_strategy(
    strategy: RerankStrategy | str,
    config: RerankingConfig | None = None,
    scorer: CrossEncoderScorer | None = None,
) -> RerankingStrategy:
    cfg = config or RerankingConfig()
    try:
        factory = _STRATEGY_FACTORIES[RerankStrategy(strategy)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown rerank strategy '{strategy}'") from exc
    return factory(cfg, scorer)


def rerank(
    query: str,
    results: Sequence[SearchResult],
    strategy: RerankingStrategy,
    *,
    top_k: int = 20,
    max_results: int = 10,
    min_score: float = 0.3,
) -> list[SearchResult]:
    """Rescore the first ``top_k`` results and return the best ``max_results``.

    Each output carries ``rank_delta`` (original index minus new index) and
    its pre-rerank score in ``metadata["original_score"]``. A failing
    strategy returns the input unchanged.
    """
    candidates = list(results[: max(0, top_k)])
    if not candidates:
        return []
    try:
        scores = strategy.score(query, candidates)
    except Exception:
        logger.exception("Reranking failed, keeping original order")
        return list(results)

    order = sorted(range(len(candidates)), key=lambda i: (-scores[i], i))
    reranked: list[SearchResult] = []
    for new_index, original_index in enumerate(order):
        score = scores[original_index]
        if score < min_score:
            continue
        original = candidates[original_index]
        reranked.append(
            replace(
                original,
                relevance_score=score,
                rank_delta=original_index - new_index,
                metadata={**original.metadata, "original_score": original.relevance_score},
            )
        )
        if len(reranked) >= max_results:
            break
    logger.debug("Reranked %d results into %d", len(candidates), len(reranked))
    return reranked


__all__ = [
    "ScoreWeights",
    "RerankingConfig",
    "length_score",
    "PassThroughStrategy",
    "ScoreBasedStrategy",
    "CrossEncoderStrategy",
    "HybridStrategy",
    "build_strategy",
    "rerank",
]
