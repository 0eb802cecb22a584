"""Ordering and weighting of document and web evidence."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from application.services.domain_authority import DomainAuthority
from domain.entities import RAGContext, SearchResult, SourceType
from domain.interfaces import CorpusStore

logger = logging.getLogger(__name__)

DOCUMENT_AUTHORITY = 0.9
DOCUMENT_NEUTRAL_FRESHNESS = 0.7
UNKNOWN_FRESHNESS = 0.5
MIN_WEIGHT = 0.3


@dataclass(slots=True)
class PrioritizationRules:
    document_weight: float = 0.6
    web_weight: float = 0.4
    relevance_weight: float = 0.4
    authority_weight: float = 0.3
    recency_weight: float = 0.2
    prefer_documents: bool = True
    prefer_authoritative: bool = True
    prefer_recent: bool = True
    recent_boost: float = 1.2
    high_authority_threshold: float = 0.7
    high_authority_boost: float = 1.3


PRESETS: dict[str, PrioritizationRules] = {
    "documents-first": PrioritizationRules(document_weight=0.8, web_weight=0.2),
    "web-first": PrioritizationRules(document_weight=0.3, web_weight=0.7, prefer_documents=False),
    "balanced": PrioritizationRules(document_weight=0.5, web_weight=0.5),
    "authority-first": PrioritizationRules(
        authority_weight=0.5, relevance_weight=0.3, high_authority_boost=1.5
    ),
    "recent-first": PrioritizationRules(recency_weight=0.4, relevance_weight=0.3, recent_boost=1.5),
}


def rules_for_preset(name: str) -> PrioritizationRules:
    try:
        preset = PRESETS[name]
    except KeyError as exc:
        raise ValueError(f"Unknown prioritization preset '{name}'") from exc
    return replace(preset)


def freshness_score(published: datetime | None, now: datetime) -> float:
    """Step decay over the age of a source, floored at 0.3 after a year."""
    if published is None:
        return UNKNOWN_FRESHNESS
    if published.tzinfo is None:
        published = published.replace(tzinfo=timezone.utc)
    days = (now - published).total_seconds() / 86400
    if days < 0:
        return UNKNOWN_FRESHNESS
    if days <= 7:
        return 1.0
    if days <= 30:
        return 0.9
    if days <= 90:
        return 0.8
    if days <= 365:
        return 0.7
    return max(0.3, 1.0 - (days - 365) / 365)


def parse_published(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable published date %r", value)
        return None


class SourcePrioritizer:
    """Scores every result by relevance, authority and freshness.

    Document results take their authority from the corpus and freshness
    from the corpus store, web results from the domain authority table and
    their published date.
    """

    def __init__(
        self,
        *,
        corpus_store: CorpusStore | None = None,
        authority: DomainAuthority | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._corpus_store = corpus_store
        self._authority = authority or DomainAuthority()
        self._clock = clock

    def prioritize(self, context: RAGContext, rules: PrioritizationRules | None = None) -> RAGContext:
        active = rules or PrioritizationRules()
        now = self._clock()
        documents = self._score_all(context.document_results, active, now)
        web = self._score_all(context.web_results, active, now)
        return replace(context, document_results=documents, web_results=web)

    def _score_all(
        self,
        results: Sequence[SearchResult],
        rules: PrioritizationRules,
        now: datetime,
    ) -> list[SearchResult]:
        scored = [self._score(result, rules, now) for result in results]
        max_priority = max((result.priority_score or 0.0 for result in scored), default=0.0)
        weighted = []
        for result in scored:
            ratio = (result.priority_score or 0.0) / max_priority if max_priority > 0 else 0.0
            weighted.append(replace(result, weight=max(MIN_WEIGHT, ratio)))
        weighted.sort(key=lambda result: -(result.priority_score or 0.0))
        return weighted

    def _score(self, result: SearchResult, rules: PrioritizationRules, now: datetime) -> SearchResult:
        if result.source_type is SourceType.DOCUMENT:
            authority = DOCUMENT_AUTHORITY
            freshness = self._document_freshness(result, now)
            balance = rules.document_weight
        else:
            authority = self._authority.score(result.url)
            freshness = freshness_score(parse_published(result.metadata.get("published_date")), now)
            balance = rules.web_weight

        priority = (
            result.relevance_score * rules.relevance_weight
            + authority * rules.authority_weight
            + freshness * rules.recency_weight
        )
        if rules.prefer_recent and freshness >= 0.8:
            priority *= rules.recent_boost
        if rules.prefer_authoritative and authority >= rules.high_authority_threshold:
            priority *= rules.high_authority_boost
        priority = min(1.0, max(0.0, priority * balance))
        return replace(result, authority_score=authority, freshness_score=freshness, priority_score=priority)

    def _document_freshness(self, result: SearchResult, now: datetime) -> float:
        if self._corpus_store is None or result.document_id is None:
            return DOCUMENT_NEUTRAL_FRESHNESS
        metadata = self._corpus_store.get_metadata(result.document_id)
        if metadata is None or metadata.published_at is None:
            return DOCUMENT_NEUTRAL_FRESHNESS
        return freshness_score(metadata.published_at, now)


__all__ = [
    "PrioritizationRules",
    "PRESETS",
    "SourcePrioritizer",
    "rules_for_preset",
    "freshness_score",
    "parse_published",
]
