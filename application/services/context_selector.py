"""Packing prioritized evidence into the token budget."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

from application.services.dynamic_limits import estimate_tokens
from domain.entities import ContextLimits, RAGContext, SearchResult, SourceType, TokenBudget, TokenUsage
from domain.interfaces import TokenCounter

logger = logging.getLogger(__name__)


def result_tokens(result: SearchResult, counter: TokenCounter | None = None) -> int:
    if result.token_count > 0:
        return result.token_count
    return estimate_tokens(result.snippet, counter)


def _priority(result: SearchResult) -> float:
    if result.priority_score is not None:
        return result.priority_score
    return result.relevance_score


def select_context(
    documents: Sequence[SearchResult],
    web: Sequence[SearchResult],
    limits: ContextLimits,
    budget: TokenBudget,
    counter: TokenCounter | None = None,
) -> RAGContext:
    """Fill the context in priority order without exceeding the budget.

    Each list is first cut to its limit. Items that do not fit in the
    remaining tokens are skipped so smaller ones further down may still fit.
    """
    candidates = [
        *documents[: limits.document_chunks],
        *web[: limits.web_results],
    ]
    candidates.sort(key=lambda result: -_priority(result))

    remaining = budget.remaining_for_context
    usage = TokenUsage()
    selected_documents: list[SearchResult] = []
    selected_web: list[SearchResult] = []
    skipped = 0
    for result in candidates:
        tokens = result_tokens(result, counter)
        if tokens > remaining:
            skipped += 1
            continue
        remaining -= tokens
        counted = replace(result, token_count=tokens)
        if result.source_type is SourceType.DOCUMENT:
            usage.document += tokens
            selected_documents.append(counted)
        else:
            usage.web += tokens
            selected_web.append(counted)

    if skipped:
        logger.debug("Skipped %d results that did not fit the token budget", skipped)
    return RAGContext(
        document_results=selected_documents,
        web_results=selected_web,
        token_usage=usage,
        limits=limits,
    )


__all__ = ["select_context", "result_tokens"]
