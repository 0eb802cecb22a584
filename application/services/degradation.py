"""Degradation state of a request and the circuit breakers feeding it."""
from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from application.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitStatus
from domain.entities import DegradationLevel
from domain.errors import BackendTimeout, BackendUnavailable, RateLimited

logger = logging.getLogger(__name__)

KEYWORD = "keyword"
VECTOR = "vector"
WEB = "web"
EMBEDDING = "embedding"
BACKENDS = (KEYWORD, VECTOR, WEB, EMBEDDING)


def classify_failure(error: BaseException) -> DegradationLevel:
    """Rate limits and unknown errors are partial; outages and timeouts severe."""
    if isinstance(error, RateLimited):
        return DegradationLevel.PARTIAL
    if isinstance(error, (BackendTimeout, BackendUnavailable, TimeoutError)):
        return DegradationLevel.SEVERE
    return DegradationLevel.PARTIAL


class DegradationTracker:
    """Monotonic degradation level for a single request."""

    def __init__(self) -> None:
        self._level = DegradationLevel.NONE
        self._backend_levels: dict[str, DegradationLevel] = {}
        self._reasons: list[str] = []

    @property
    def level(self) -> DegradationLevel:
        return self._level

    @property
    def degraded(self) -> bool:
        return self._level is not DegradationLevel.NONE

    @property
    def reason(self) -> str | None:
        return "; ".join(self._reasons) or None

    @property
    def failed_backends(self) -> list[str]:
        return list(self._backend_levels)

    def backend_level(self, backend: str) -> DegradationLevel:
        return self._backend_levels.get(backend, DegradationLevel.NONE)

    def record_failure(self, backend: str, error: BaseException) -> DegradationLevel:
        level = classify_failure(error)
        current = self._backend_levels.get(backend, DegradationLevel.NONE)
        if level.rank > current.rank:
            self._backend_levels[backend] = level
        self._reasons.append(f"{backend} {level.value}: {error or type(error).__name__}")
        self._escalate(level)
        logger.warning("Backend %s degraded to %s: %s", backend, level.value, error)
        return level

    def mark_critical(self, reason: str) -> None:
        self._reasons.append(reason)
        self._escalate(DegradationLevel.CRITICAL)

    def _escalate(self, level: DegradationLevel) -> None:
        if level.rank > self._level.rank:
            self._level = level


class DegradationManager:
    """Owns one circuit breaker per backend and hands out request trackers."""

    def __init__(
        self,
        backends: Iterable[str] = BACKENDS,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._breakers = {name: CircuitBreaker(name, config, clock=clock) for name in backends}

    def breaker(self, backend: str) -> CircuitBreaker:
        try:
            return self._breakers[backend]
        except KeyError as exc:
            raise ValueError(f"Unknown backend '{backend}'") from exc

    def start_request(self) -> DegradationTracker:
        return DegradationTracker()

    def status(self) -> dict[str, CircuitStatus]:
        return {name: breaker.status() for name, breaker in self._breakers.items()}

    def reset(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


__all__ = [
    "KEYWORD",
    "VECTOR",
    "WEB",
    "EMBEDDING",
    "BACKENDS",
    "classify_failure",
    "DegradationTracker",
    "DegradationManager",
]
