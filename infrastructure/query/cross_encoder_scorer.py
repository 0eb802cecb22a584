"""Cross-encoder relevance scoring via sentence-transformers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from sentence_transformers import CrossEncoder

from domain.interfaces import CrossEncoderScorer

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CrossEncoderConfig:
    model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2"
    device: str = "cpu"
    batch_size: int = 16
    max_length: int = 512


class SentenceTransformersCrossEncoder(CrossEncoderScorer):
    def __init__(self, config: CrossEncoderConfig | None = None) -> None:
        self._config = config or CrossEncoderConfig()
        logger.info("Loading cross-encoder %s", self._config.model_name)
        self._model = CrossEncoder(
            self._config.model_name,
            device=self._config.device,
            max_length=self._config.max_length,
        )

    def score(self, query: str, passages: Sequence[str]) -> list[float]:
        if not passages:
            return []
        scores = self._model.predict(
            [(query, passage) for passage in passages],
            batch_size=self._config.batch_size,
            show_progress_bar=False,
        )
        return [float(value) for value in scores]


__all__ = ["SentenceTransformersCrossEncoder", "CrossEncoderConfig"]
