"""Query complexity analysis and token-budgeted document/web quotas."""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum

from domain.entities import ContextLimits, QueryComplexity, TokenBudget
from domain.interfaces import TokenCounter

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

COMPLEXITY_MULTIPLIERS: dict[QueryComplexity, float] = {
    QueryComplexity.SIMPLE: 0.7,
    QueryComplexity.MODERATE: 1.0,
    QueryComplexity.COMPLEX: 1.3,
}

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from up about into through during
    is are was were be been being have has had do does did will would could should
    may might must can this that these those i you he she it we they what which who
    when where why how all each every both few more most other some such no nor not
    only own same so than too very just
    """.split()
)


class QueryType(str, Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"
    EXPLORATORY = "exploratory"
    UNKNOWN = "unknown"


_QUERY_TYPE_PATTERNS: list[tuple[QueryType, re.Pattern[str]]] = [
    (QueryType.PROCEDURAL, re.compile(r"^(how (to|do|can|should)|steps?|guide|tutorial|install|configure|set ?up)\b")),
    (QueryType.FACTUAL, re.compile(r"^(who|when|where|which|what (is|are|was|were) the|how (many|much|old|long))\b")),
    (QueryType.CONCEPTUAL, re.compile(r"^(why|what (is|are|does)|explain|define|describe|meaning of)\b")),
    (
        QueryType.EXPLORATORY,
        re.compile(r"\b(compare|comparison|versus|vs\.?|differences?|pros and cons|alternatives?|overview|trends?|impact)\b"),
    ),
]


@dataclass(slots=True)
class QueryAnalysis:
    length: int
    word_count: int
    keywords: list[str] = field(default_factory=list)
    query_type: QueryType = QueryType.UNKNOWN
    complexity: QueryComplexity = QueryComplexity.MODERATE
    complexity_score: float = 0.5


@dataclass(slots=True)
class LimitBounds:
    min_documents: int = 3
    max_documents: int = 20
    min_web: int = 2
    max_web: int = 10

    def validate(self) -> None:
        if self.min_documents < 1 or self.min_web < 1:
            raise ValueError("Minimum limits must be at least 1")
        if self.max_documents < self.min_documents or self.max_web < self.min_web:
            raise ValueError("Maximum limits must not be below minimum limits")


@dataclass(slots=True)
class LimitConfig:
    bounds: LimitBounds = field(default_factory=LimitBounds)
    document_ratio: float = 0.6
    tokens_per_document: int = 300
    tokens_per_web: int = 400


def estimate_tokens(text: str, counter: TokenCounter | None = None) -> int:
    """Token count of ``text``, roughly four characters per token without a counter."""
    if not text:
        return 0
    if counter is not None:
        return counter.count(text)
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


class HeuristicTokenCounter(TokenCounter):
    def count(self, text: str) -> int:
        return estimate_tokens(text)


def detect_query_type(query: str) -> QueryType:
    lowered = query.strip().lower()
    for query_type, pattern in _QUERY_TYPE_PATTERNS:
        if pattern.search(lowered):
            return query_type
    return QueryType.UNKNOWN


def analyze_query_complexity(query: str) -> QueryAnalysis:
    """Classify a query as simple, moderate or complex.

    Short factual questions with few keywords are simple, long or
    keyword-heavy exploratory/conceptual questions are complex.
    """
    text = query.strip()
    words = re.findall(r"\w+", text.lower())
    keywords = [word for word in words if len(word) > 2 and word not in STOP_WORDS]
    query_type = detect_query_type(text)
    length = len(text)

    if length < 50 and len(keywords) <= 2 and query_type is QueryType.FACTUAL:
        complexity = QueryComplexity.SIMPLE
    elif (length > 150 or len(keywords) > 5) and query_type in (QueryType.EXPLORATORY, QueryType.CONCEPTUAL):
        complexity = QueryComplexity.COMPLEX
    else:
        complexity = QueryComplexity.MODERATE

    score = min(1.0, length / 300 * 0.5 + min(len(keywords), 10) / 10 * 0.5)
    return QueryAnalysis(
        length=length,
        word_count=len(words),
        keywords=keywords,
        query_type=query_type,
        complexity=complexity,
        complexity_score=score,
    )


def calculate_limits(
    budget: TokenBudget,
    complexity: QueryComplexity,
    config: LimitConfig | None = None,
) -> ContextLimits:
    """Size the document and web quotas from the remaining token budget.

    Result counts are always clamped into the configured bounds, so an
    exhausted budget yields the minimums.
    """
    cfg = config or LimitConfig()
    bounds = cfg.bounds
    bounds.validate()
    ratio = min(1.0, max(0.0, cfg.document_ratio))

    if budget.remaining_for_context <= 0:
        logger.warning("Token budget exhausted, using minimum limits")
        return ContextLimits(document_chunks=bounds.min_documents, web_results=bounds.min_web)

    average = cfg.tokens_per_document * ratio + cfg.tokens_per_web * (1 - ratio)
    max_items = math.floor(budget.remaining_for_context / average) if average > 0 else 0
    multiplier = COMPLEXITY_MULTIPLIERS[complexity]
    documents = math.floor(max_items * ratio * multiplier)
    web = math.floor(max_items * (1 - ratio) * multiplier)

    limits = ContextLimits(
        document_chunks=min(bounds.max_documents, max(bounds.min_documents, documents)),
        web_results=min(bounds.max_web, max(bounds.min_web, web)),
    )
    logger.debug(
        "Limits for %d tokens (%s): %d documents, %d web",
        budget.remaining_for_context,
        complexity.value,
        limits.document_chunks,
        limits.web_results,
    )
    return limits


__all__ = [
    "QueryType",
    "QueryAnalysis",
    "LimitBounds",
    "LimitConfig",
    "COMPLEXITY_MULTIPLIERS",
    "estimate_tokens",
    "HeuristicTokenCounter",
    "detect_query_type",
    "analyze_query_complexity",
    "calculate_limits",
]
