"""Web search backend backed by the Tavily search API."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from application.services.degradation import WEB
from domain.entities import SearchResult, SourceType, WebSearchFilters
from domain.errors import BackendError, BackendTimeout, BackendUnavailable, RateLimited
from domain.interfaces import WebSearchProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TavilyConfig:
    api_key: str | None = None
    url: str = "https://api.tavily.com/search"
    search_depth: str = "basic"
    timeout: float = 8.0
    deadline: float | None = None
    max_retries: int = 2
    retry_delay: float = 0.5
    backoff: float = 2.0


class TavilySearchProvider(WebSearchProvider):
    """Calls the Tavily REST API and maps HTTP failures onto backend errors.

    Rate limits and server errors are retried with exponential backoff;
    other client errors fail immediately. With a ``deadline`` set, every
    attempt and backoff wait fits inside it and no retry starts once it has
    passed.
    """

    def __init__(
        self,
        config: TavilyConfig | None = None,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or TavilyConfig()
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> TavilyConfig:
        return self._config

    def search(
        self,
        query: str,
        filters: WebSearchFilters | None = None,
        max_results: int = 10,
    ) -> list[SearchResult]:
        payload = self._build_payload(query, filters, max_results)
        data = self._post_with_retry(payload)
        results = [self._to_result(item) for item in data.get("results", []) if item.get("url")]
        logger.debug("Tavily returned %d results", len(results))
        return results[:max_results]

    def close(self) -> None:
        self._session.close()

    def _api_key(self) -> str:
        api_key = self._config.api_key or os.getenv("TAVILY_API_KEY")
        if not api_key:
            raise BackendUnavailable(WEB, "Missing Tavily API key", retryable=False)
        return api_key

    def _build_payload(self, query: str, filters: WebSearchFilters | None, max_results: int) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "query": query,
            "max_results": max_results,
            "search_depth": self._config.search_depth,
        }
        if filters is not None:
            if filters.topic:
                payload["topic"] = filters.topic
            if filters.time_range:
                payload["time_range"] = filters.time_range
            if filters.country:
                payload["country"] = filters.country
            if filters.domains:
                payload["include_domains"] = list(filters.domains)
        return payload

    def _post_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        started = self._clock()
        delay = self._config.retry_delay
        last_error: BackendError | None = None
        for attempt in range(self._config.max_retries + 1):
            try:
                return self._post(payload, self._attempt_timeout(started))
            except (RateLimited, BackendUnavailable) as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                if attempt == self._config.max_retries:
                    break
                wait = exc.retry_after if isinstance(exc, RateLimited) and exc.retry_after else delay
                remaining = self._remaining(started)
                if remaining is not None and wait >= remaining:
                    logger.info("Tavily attempt %d failed (%s), no time left to retry", attempt + 1, exc)
                    break
                logger.info("Tavily attempt %d failed (%s), retrying in %.2fs", attempt + 1, exc, wait)
                self._sleep(wait)
                delay *= self._config.backoff
        raise last_error  # type: ignore[misc]

    def _remaining(self, started: float) -> float | None:
        if self._config.deadline is None:
            return None
        return self._config.deadline - (self._clock() - started)

    def _attempt_timeout(self, started: float) -> float:
        remaining = self._remaining(started)
        if remaining is None:
            return self._config.timeout
        return max(0.0, min(self._config.timeout, remaining))

    def _post(self, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key()}"}
        try:
            response = self._session.post(self._config.url, json=payload, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise BackendTimeout(WEB, f"Tavily request timed out after {timeout:.1f}s") from exc
        except requests.RequestException as exc:
            raise BackendUnavailable(WEB, f"Tavily request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(WEB, "Tavily rate limit reached", retry_after=_retry_after(response))
        if response.status_code >= 500:
            raise BackendUnavailable(WEB, f"Tavily server error {response.status_code}")
        if response.status_code >= 400:
            raise BackendUnavailable(
                WEB, f"Tavily rejected the request with {response.status_code}", retryable=False
            )
        return response.json()

    @staticmethod
    def _to_result(item: dict[str, Any]) -> SearchResult:
        url = str(item["url"])
        score = float(item.get("score") or 0.0)
        metadata: dict[str, Any] = {}
        if item.get("published_date"):
            metadata["published_date"] = item["published_date"]
        return SearchResult(
            source_type=SourceType.WEB,
            id=url,
            url=url,
            title=str(item.get("title") or ""),
            snippet=str(item.get("content") or ""),
            relevance_score=min(1.0, max(0.0, score)),
            metadata=metadata,
        )


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


__all__ = ["TavilySearchProvider", "TavilyConfig"]
