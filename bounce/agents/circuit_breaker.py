"""Deterministic circuit breaker guarding one adapter's spawns."""

import logging
import time
from collections.abc import Callable

from bounce.agents.base import HEALTHY, PROBING, UNHEALTHY, CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """healthy -> unhealthy after max_failures consecutive failures.

    While unhealthy, requests are refused until cooldown_sec has passed
    since the last failure; the next request is then let through as a
    probe. A successful probe closes the breaker, a failed one reopens it
    and restarts the cooldown. The same sequence of calls and timestamps
    always gives the same transitions.
    """

    def __init__(
        self,
        name: str,
        max_failures: int = 3,
        cooldown_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_failures = max(1, max_failures)
        self.cooldown_sec = cooldown_sec
        self._clock = clock
        self._health = HEALTHY
        self._failure_count = 0
        self._last_failure_time: float | None = None

    @property
    def health(self) -> str:
        return self._health

    def remaining_sec(self, now: float | None = None) -> float:
        if self._health != UNHEALTHY or self._last_failure_time is None:
            return 0.0
        now = self._clock() if now is None else now
        return max(0.0, self.cooldown_sec - (now - self._last_failure_time))

    def allow_request(self, now: float | None = None) -> bool:
        if self._health != UNHEALTHY:
            return True
        if self.remaining_sec(now) > 0:
            return False
        self._health = PROBING
        logger.info("Circuit %s: cooldown over, probing", self.name)
        return True

    def record_success(self) -> None:
        if self._health != HEALTHY:
            logger.info("Circuit %s: closed", self.name)
        self._health = HEALTHY
        self._failure_count = 0
        self._last_failure_time = None

    def record_failure(self, now: float | None = None) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock() if now is None else now
        if self._health == PROBING or self._failure_count >= self.max_failures:
            if self._health != UNHEALTHY:
                logger.warning(
                    "Circuit %s: open after %d failures, cooldown %.1fs",
                    self.name, self._failure_count, self.cooldown_sec,
                )
            self._health = UNHEALTHY

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            health=self._health,
            failure_count=self._failure_count,
            last_failure_time=self._last_failure_time,
            cooldown_sec=self.cooldown_sec,
            max_failures=self.max_failures,
        )
