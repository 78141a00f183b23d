"""
HTTP fetching as an ordered pipeline of middleware stages.

Each stage is an async callable ``stage(request, call_next)`` that may act
before and after delegating to the rest of the chain. The innermost handler
is the single fetch primitive that talks to aiohttp. The crawler composes

    RetryStage -> RateLimitStage -> fetch primitive

so every attempt, including retries, consumes one rate limiter admission.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

import aiohttp
import structlog

from dexsync.config.config import Config, RetryConfig
from dexsync.crawler.rate_limiter import RateLimiterRegistry
from dexsync.errors import NetworkError
from dexsync.observability.metrics import increment, observe

logger = structlog.get_logger(__name__)


@dataclass
class FetchRequest:
    """One logical fetch travelling through the stage chain."""

    url: str
    source: str
    timeout: Optional[float] = None
    attempt: int = 0
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CrawlerResponse:
    """Response from HTTP crawling with timing and attempt information."""

    status: int
    headers: Dict[str, str]
    body: bytes
    start_ts: float
    end_ts: float
    attempts: int
    url: str
    final_url: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")


Handler = Callable[[FetchRequest], Awaitable[CrawlerResponse]]


class Stage(Protocol):
    async def __call__(self, request: FetchRequest, call_next: Handler) -> CrawlerResponse: ...


def build_pipeline(stages: Sequence[Stage], primitive: Handler) -> Handler:
    """Compose ``stages`` (outermost first) around ``primitive``."""
    handler = primitive
    for stage in reversed(stages):
        handler = _bind(stage, handler)
    return handler


def _bind(stage: Stage, call_next: Handler) -> Handler:
    async def handler(request: FetchRequest) -> CrawlerResponse:
        return await stage(request, call_next)

    return handler


class RateLimitStage:
    """Wait for the source's limiter before every attempt."""

    def __init__(self, limiters: RateLimiterRegistry) -> None:
        self.limiters = limiters

    async def __call__(self, request: FetchRequest, call_next: Handler) -> CrawlerResponse:
        waited = await self.limiters.get(request.source).acquire()
        if waited > 0:
            logger.debug("Rate limited", source=request.source, url=request.url, waited=round(waited, 3))
        return await call_next(request)


class RetryStage:
    """
    Retry with exponential backoff on retryable statuses and transport errors.

    Delay for attempt ``n`` (1-based) is ``base_delay * 2 ** (n - 1)`` with
    +/-20% jitter, capped at ``max_delay``. Non-retryable responses are
    returned as-is; exhausting the attempts raises :class:`NetworkError`.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = lambda: random.uniform(0.8, 1.2),
    ) -> None:
        self.config = config or RetryConfig()
        self.retryable = frozenset(self.config.retryable_status_codes)
        self._sleep = sleep
        self._jitter = jitter

    def backoff_delay(self, attempt: int) -> float:
        delay = self.config.base_delay * (2 ** (attempt - 1)) * self._jitter()
        return min(delay, self.config.max_delay)

    async def __call__(self, request: FetchRequest, call_next: Handler) -> CrawlerResponse:
        max_attempts = self.config.max_retries + 1
        last_error: Optional[NetworkError] = None

        for attempt in range(1, max_attempts + 1):
            request.attempt = attempt
            try:
                response = await call_next(request)
            except NetworkError as e:
                last_error = e
                reason: Any = str(e)
            else:
                if response.status not in self.retryable:
                    response.attempts = attempt
                    return response
                last_error = NetworkError(
                    f"Retryable status {response.status}", url=request.url, status=response.status, attempts=attempt
                )
                reason = response.status

            if attempt < max_attempts:
                delay = self.backoff_delay(attempt)
                logger.info(
                    "Retrying request",
                    url=request.url,
                    source=request.source,
                    reason=reason,
                    attempt=attempt,
                    delay=round(delay, 3),
                )
                await self._sleep(delay)

        assert last_error is not None
        last_error.attempts = max_attempts
        logger.warning("Retries exhausted", url=request.url, source=request.source, attempts=max_attempts)
        raise last_error


class HttpClient:
    """aiohttp-backed fetch primitive wrapped in the retry and rate limit stages."""

    def __init__(
        self,
        config: Config,
        limiters: RateLimiterRegistry,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        retry_stage: Optional[RetryStage] = None,
    ) -> None:
        self.config = config
        self.crawler_config = config.crawler
        self.limiters = limiters
        self.session = session
        self._owns_session = session is None
        self.stages: list[Stage] = [retry_stage or RetryStage(self.crawler_config.retry), RateLimitStage(limiters)]
        self._handler = build_pipeline(self.stages, self._perform_request)

    async def initialize(self) -> None:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.crawler_config.timeout)
            self.session = aiohttp.ClientSession(
                timeout=timeout, headers={"User-Agent": self.crawler_config.user_agent}
            )
            self._owns_session = True
            logger.info("HTTP client session initialized", user_agent=self.crawler_config.user_agent)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> HttpClient:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _perform_request(self, request: FetchRequest) -> CrawlerResponse:
        """The fetch primitive: one GET, no retries, no throttling."""
        if self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")

        timeout = aiohttp.ClientTimeout(total=request.timeout or self.crawler_config.timeout)
        headers = {"User-Agent": self.crawler_config.user_agent, **request.headers}
        start = time.time()
        try:
            async with self.session.get(request.url, timeout=timeout, headers=headers) as response:
                body = await response.read()
                result = CrawlerResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=body,
                    start_ts=start,
                    end_ts=time.time(),
                    attempts=request.attempt,
                    url=request.url,
                    final_url=str(response.url),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            increment("crawler_responses_total", labels={"status_class": "error"})
            raise NetworkError(f"{type(e).__name__}: {e}", url=request.url) from e

        increment("crawler_responses_total", labels={"status_class": f"{result.status // 100}xx"})
        return result

    async def fetch(self, url: str, source: str, *, timeout: Optional[float] = None) -> CrawlerResponse:
        """
        Fetch URL through the stage pipeline.

        Raises:
            NetworkError: when retries are exhausted or the transport fails
        """
        start = time.time()
        try:
            return await self._handler(FetchRequest(url=url, source=source, timeout=timeout))
        finally:
            observe("crawler_fetch_latency_seconds", time.time() - start)
