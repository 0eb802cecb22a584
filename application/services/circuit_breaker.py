"""Per-backend circuit breaker."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from domain.entities import CircuitState

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitoring_window: float = 60.0
    half_open_max_calls: int = 3


@dataclass(slots=True)
class CircuitStatus:
    name: str
    state: CircuitState
    recent_failures: int
    opened_at: float | None


class CircuitBreaker:
    """Opens after ``failure_threshold`` failures inside the monitoring window.

    An open circuit rejects calls until ``reset_timeout`` has passed, then
    lets up to ``half_open_max_calls`` trial calls through. A successful
    trial closes the circuit, a failed one opens it again.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float | None = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def allow_request(self) -> bool:
        with self._lock:
            self._refresh(self._clock())
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and self._half_open_calls < self._config.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit %s closed after successful trial call", self.name)
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            if self._state is CircuitState.HALF_OPEN:
                self._open(now)
                return
            self._failures.append(now)
            self._trim(now)
            if self._state is CircuitState.CLOSED and len(self._failures) >= self._config.failure_threshold:
                self._open(now)

    def status(self) -> CircuitStatus:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._trim(now)
            return CircuitStatus(
                name=self.name,
                state=self._state,
                recent_failures=len(self._failures),
                opened_at=self._opened_at,
            )

    def reset(self) -> None:
        self.record_success()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._half_open_calls = 0
        logger.warning("Circuit %s opened after %d failures", self.name, len(self._failures))

    def _refresh(self, now: float) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self._config.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0
            logger.info("Circuit %s half-open, allowing trial calls", self.name)

    def _trim(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self._config.monitoring_window:
            self._failures.popleft()


__all__ = ["CircuitBreaker", "CircuitBreakerConfig", "CircuitStatus"]
