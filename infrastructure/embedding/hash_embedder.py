"""Deterministic word-hashing embedder for demos and tests."""
from __future__ import annotations

import hashlib
import math
from collections import Counter
from typing import Sequence

from application.services.text_similarity import tokenize
from domain.interfaces import Embedder


class HashEmbedder(Embedder):
    """Averages hashed word vectors, so texts sharing words get similar embeddings."""

    def __init__(self, dimension: int = 64) -> None:
        self._dimension = dimension
        self._model_id = f"hash-words-{dimension}"

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def dimension(self) -> int:
        return self._dimension

    def _word_vector(self, word: str) -> list[float]:
        digest = hashlib.sha256(word.encode("utf-8")).digest()
        return [digest[i % len(digest)] / 255.0 - 0.5 for i in range(self._dimension)]

    def _embed(self, text: str) -> list[float]:
        counts = Counter(tokenize(text))
        vector = [0.0] * self._dimension
        for word, count in counts.items():
            for idx, value in enumerate(self._word_vector(word)):
                vector[idx] += value * count
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed(text)


__all__ = ["HashEmbedder"]
