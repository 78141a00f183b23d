"""
Per-source rate limiting.

A token bucket bounds the short-term rate and burst, a rolling burst window
keeps at most ``burst_limit`` admissions inside any ``burst_limit /
requests_per_second`` interval, and a rolling 60 second window caps
``requests_per_minute``. All state for one source is guarded by a single
asyncio.Lock so concurrent callers cannot double-spend tokens.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from dexsync.config.config import Config, RateLimitConfig
from dexsync.observability.metrics import observe

logger = logging.getLogger(__name__)

MINUTE_WINDOW = 60.0

# Float slack when comparing a timestamp against a window edge we just slept to.
_CLOCK_TOLERANCE = 1e-9

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class RateLimiterStats:
    source: str
    tokens: float
    requests_per_second: float
    burst_limit: int
    requests_per_minute: int
    requests_last_minute: int
    total_admitted: int
    total_wait_seconds: float


class RateLimiter:
    """
    Token bucket with a burst ceiling plus rolling window caps for one source.

    Tokens refill continuously: ``tokens = min(burst, tokens + elapsed * rps)``.
    An admission costs one token. A caller arriving with less than one token
    waits ``1 / rps`` seconds, refills from the actually elapsed time and
    proceeds; tokens are clamped at zero.
    """

    def __init__(
        self,
        source: str,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        config = config or RateLimitConfig()
        self.source = source
        self.requests_per_second = config.requests_per_second
        self.requests_per_minute = config.requests_per_minute
        self.burst_limit = config.burst_limit

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._tokens = float(self.burst_limit)
        self._last_refill = clock()
        self._timestamps: Deque[float] = deque()

        self._total_admitted = 0
        self._total_wait = 0.0

        logger.debug(
            f"Rate limiter for {source}: {self.requests_per_second} rps, "
            f"{self.requests_per_minute} rpm, burst {self.burst_limit}"
        )

    @property
    def burst_window(self) -> float:
        return self.burst_limit / self.requests_per_second

    def _refill(self) -> float:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.burst_limit), self._tokens + elapsed * self.requests_per_second)
        self._last_refill = now
        return now

    def _prune(self, now: float) -> None:
        horizon = max(MINUTE_WINDOW, self.burst_window)
        while self._timestamps and now - self._timestamps[0] >= horizon - _CLOCK_TOLERANCE:
            self._timestamps.popleft()

    def _window_delay(self, now: float) -> float:
        """Seconds until both rolling windows have room for one more admission."""
        delay = 0.0

        minute_hits = [ts for ts in self._timestamps if now - ts < MINUTE_WINDOW - _CLOCK_TOLERANCE]
        if len(minute_hits) >= self.requests_per_minute:
            oldest = minute_hits[len(minute_hits) - self.requests_per_minute]
            delay = max(delay, oldest + MINUTE_WINDOW - now)

        window = self.burst_window
        burst_hits = [ts for ts in self._timestamps if now - ts < window - _CLOCK_TOLERANCE]
        if len(burst_hits) >= self.burst_limit:
            oldest = burst_hits[len(burst_hits) - self.burst_limit]
            delay = max(delay, oldest + window - now)

        return delay

    async def acquire(self) -> float:
        """
        Wait until a request may be issued and record the admission.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            waited = 0.0
            self._refill()

            if self._tokens < 1.0:
                delay = 1.0 / self.requests_per_second
                await self._sleep(delay)
                waited += delay
                self._refill()

            while True:
                now = self._clock()
                self._prune(now)
                delay = self._window_delay(now)
                if delay <= _CLOCK_TOLERANCE:
                    break
                logger.debug(f"Rolling window full for {self.source}, waiting {delay:.3f}s")
                await self._sleep(delay)
                waited += delay

            now = self._refill()
            self._tokens = max(0.0, self._tokens - 1.0)
            self._timestamps.append(now)
            self._total_admitted += 1
            self._total_wait += waited

        observe("rate_limiter_wait_seconds", waited, {"source": self.source})
        return waited

    async def apply_crawl_delay(self, seconds: float) -> None:
        """Tighten the limiter so requests are at least ``seconds`` apart."""
        if seconds <= 0:
            return
        async with self._lock:
            rps = 1.0 / seconds
            if rps < self.requests_per_second:
                logger.info(f"Applying robots.txt crawl-delay of {seconds}s to {self.source}")
                self.requests_per_second = rps
                self.burst_limit = 1
                self._tokens = min(self._tokens, 1.0)

    def get_stats(self) -> RateLimiterStats:
        now = self._clock()
        return RateLimiterStats(
            source=self.source,
            tokens=self._tokens,
            requests_per_second=self.requests_per_second,
            burst_limit=self.burst_limit,
            requests_per_minute=self.requests_per_minute,
            requests_last_minute=sum(1 for ts in self._timestamps if now - ts < MINUTE_WINDOW),
            total_admitted=self._total_admitted,
            total_wait_seconds=self._total_wait,
        )


class RateLimiterRegistry:
    """One :class:`RateLimiter` per source, built lazily from configuration."""

    def __init__(self, config: Config, *, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, RateLimiter] = {}

    def get(self, source: str) -> RateLimiter:
        limiter = self._limiters.get(source)
        if limiter is None:
            limiter = RateLimiter(source, self.config.rate_limit_for(source), clock=self._clock, sleep=self._sleep)
            self._limiters[source] = limiter
        return limiter

    def get_all_stats(self) -> Dict[str, RateLimiterStats]:
        return {source: limiter.get_stats() for source, limiter in self._limiters.items()}
