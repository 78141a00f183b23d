"""
Circuit Breaker for per-source failure management.

Stops requests to a source after sustained failures and probes recovery once
the reset timeout has elapsed. Transitions:

    CLOSED    -> OPEN       failure_count reaches failure_threshold
    OPEN      -> HALF_OPEN  first admission check after reset_timeout
    HALF_OPEN -> CLOSED     HALF_OPEN_SUCCESS_QUORUM consecutive successes
    HALF_OPEN -> OPEN       any failure
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from dexsync.config.config import CircuitBreakerConfig
from dexsync.observability.metrics import gauge

logger = logging.getLogger(__name__)

# Fixed regardless of configuration.
HALF_OPEN_SUCCESS_QUORUM = 3


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, blocking requests
    HALF_OPEN = "half_open"  # Testing if the source recovered


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass(frozen=True)
class BreakerState:
    """Point-in-time snapshot of a breaker."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_at: Optional[float]


class CircuitBreaker:
    """
    Circuit breaker guarding one crawl source.

    ``is_open()`` is the only admission gate. State is mutated only through
    ``record_success``/``record_failure`` and every access holds the lock.
    """

    def __init__(
        self,
        source: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or CircuitBreakerConfig()
        self.source = source
        self.failure_threshold = config.failure_threshold
        self.reset_timeout = config.reset_timeout_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: Optional[float] = None

        self._lock = asyncio.Lock()
        self._publish_state()

    def _publish_state(self) -> None:
        gauge("circuit_breaker_state", _STATE_GAUGE[self._state], {"source": self.source})

    def _transition(self, new_state: CircuitState) -> None:
        logger.info(f"Circuit breaker for {self.source}: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._publish_state()

    async def is_open(self) -> bool:
        """Return True if calls must fail fast right now."""
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if self._last_failure_at is not None and self._clock() - self._last_failure_at >= self.reset_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                    self._success_count = 0
                    return False
                return True
            return False

    async def record_success(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                logger.debug(f"Circuit breaker for {self.source}: probe success {self._success_count}")
                if self._success_count >= HALF_OPEN_SUCCESS_QUORUM:
                    self._transition(CircuitState.CLOSED)
                    self._failure_count = 0
                    self._success_count = 0
            elif self._state is CircuitState.CLOSED:
                self._failure_count = max(0, self._failure_count - 1)

    async def record_failure(self) -> None:
        async with self._lock:
            self._last_failure_at = self._clock()

            if self._state is CircuitState.HALF_OPEN:
                self._success_count = 0
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.failure_threshold:
                    logger.warning(f"Circuit breaker for {self.source} opening after {self._failure_count} failures")
                    self._transition(CircuitState.OPEN)

    def get_state(self) -> BreakerState:
        return BreakerState(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_at=self._last_failure_at,
        )

    async def reset(self) -> None:
        """Manually return the breaker to CLOSED."""
        async with self._lock:
            logger.info(f"Circuit breaker for {self.source} manually reset")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_at = None
            self._publish_state()


class CircuitBreakerManager:
    """Holds one breaker per source."""

    def __init__(
        self, config: Optional[CircuitBreakerConfig] = None, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, source: str) -> CircuitBreaker:
        breaker = self._breakers.get(source)
        if breaker is None:
            breaker = CircuitBreaker(source, self.config, clock=self._clock)
            self._breakers[source] = breaker
        return breaker

    def get_all_states(self) -> Dict[str, BreakerState]:
        return {source: breaker.get_state() for source, breaker in self._breakers.items()}
