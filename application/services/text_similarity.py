"""Tokenization and lexical similarity helpers shared by ranking stages."""
from __future__ import annotations

import math
import re
from collections import Counter
from typing import Iterable

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, replace punctuation by spaces and split on whitespace."""
    return _NON_WORD.sub(" ", text.lower()).split()


def word_set(text: str, min_length: int = 0) -> set[str]:
    return {token for token in tokenize(text) if len(token) > min_length}


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    a = set(left)
    b = set(right)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def text_jaccard(left: str, right: str, min_length: int = 0) -> float:
    return jaccard(word_set(left, min_length), word_set(right, min_length))


def term_frequency_cosine(left: str, right: str, min_length: int = 0) -> float:
    a = Counter(token for token in tokenize(left) if len(token) > min_length)
    b = Counter(token for token in tokenize(right) if len(token) > min_length)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    dot = sum(count * b[term] for term, count in a.items())
    norm_a = math.sqrt(sum(count * count for count in a.values()))
    norm_b = math.sqrt(sum(count * count for count in b.values()))
    return dot / (norm_a * norm_b)


__all__ = ["tokenize", "word_set", "jaccard", "text_jaccard", "term_frequency_cosine"]
