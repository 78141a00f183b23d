"""
Crawl orchestration.

For every target the crawler consults, in order: robots.txt, the response
cache, the source's circuit breaker, the rate-limited retrying fetch
pipeline and finally the source parser. Batches run in bounded windows and
every target's outcome is recorded independently.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import structlog

from dexsync.config.config import Config
from dexsync.crawler.circuit_breaker import CircuitBreakerManager
from dexsync.crawler.http_client import HttpClient
from dexsync.crawler.parsers import ParserRegistry
from dexsync.crawler.rate_limiter import RateLimiterRegistry
from dexsync.crawler.response_cache import ResponseCache
from dexsync.crawler.robots import RobotsCache
from dexsync.errors import CircuitOpenError, DexSyncError, NetworkError, ParserError, RobotsDisallowed
from dexsync.observability.metrics import increment

logger = structlog.get_logger(__name__)


@dataclass
class CrawlTarget:
    url: str
    source: str
    entity_id: int
    last_fetched_at: Optional[float] = None


@dataclass
class CrawlOutcome:
    target: CrawlTarget
    success: bool
    fields: Dict[str, Any] = field(default_factory=dict)
    from_cache: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0

    @property
    def skipped(self) -> bool:
        return self.error_type in (RobotsDisallowed.__name__, CircuitOpenError.__name__)


@dataclass
class BatchReport:
    """Aggregated result of a batch crawl."""

    outcomes: List[CrawlOutcome] = field(default_factory=list)
    aborted: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def succeeded(self) -> List[CrawlOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failures(self) -> List[CrawlOutcome]:
        return [o for o in self.outcomes if not o.success]

    def errors_by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for outcome in self.failures:
            key = outcome.error_type or "Unknown"
            counts[key] = counts.get(key, 0) + 1
        return counts

    def summary(self) -> Dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "failed": len(self.failures),
            "from_cache": sum(1 for o in self.outcomes if o.from_cache),
            "errors": self.errors_by_type(),
            "aborted": self.aborted,
        }


class Crawler:
    """Composes robots compliance, caching, circuit breaking and rate-limited fetching."""

    def __init__(
        self,
        config: Config,
        http_client: HttpClient,
        parsers: ParserRegistry,
        *,
        robots: Optional[RobotsCache] = None,
        cache: Optional[ResponseCache] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        limiters: Optional[RateLimiterRegistry] = None,
    ) -> None:
        self.config = config
        self.crawler_config = config.crawler
        self.http_client = http_client
        self.parsers = parsers
        self.robots = robots
        self.cache = cache if cache is not None else (
            ResponseCache(self.crawler_config.cache) if self.crawler_config.cache.enabled else None
        )
        self.breakers = breakers or CircuitBreakerManager(self.crawler_config.circuit_breaker)
        self.limiters = limiters or http_client.limiters
        self._crawl_delays_applied: set[str] = set()

    def plan_targets(
        self,
        entities: Mapping[int, Optional[str]],
        sources: Optional[Sequence[str]] = None,
    ) -> List[CrawlTarget]:
        """
        Build targets for each (entity, source) pair the source can address.

        Args:
            entities: entity id -> known name (None when not yet known)
            sources: source names, defaults to every registered parser
        """
        targets: List[CrawlTarget] = []
        for source in sources or self.parsers.names():
            parser = self.parsers.get(source)
            for entity_id, name in sorted(entities.items()):
                url = parser.build_url(entity_id, name)
                if url is None:
                    logger.debug("Source cannot address entity yet", source=source, entity_id=entity_id)
                    continue
                targets.append(CrawlTarget(url=url, source=source, entity_id=entity_id))
        return targets

    async def _check_robots(self, target: CrawlTarget) -> None:
        if self.robots is None or not self.crawler_config.respect_robots:
            return
        if not await self.robots.is_allowed(target.url):
            raise RobotsDisallowed(target.url, self.crawler_config.user_agent)
        if target.source not in self._crawl_delays_applied:
            self._crawl_delays_applied.add(target.source)
            delay = await self.robots.crawl_delay(target.url)
            if delay > 0:
                await self.limiters.get(target.source).apply_crawl_delay(delay)

    @staticmethod
    def _parse(parser: Any, target: CrawlTarget, payload: Any) -> Dict[str, Any]:
        try:
            return parser.parse(payload)
        except ParserError:
            raise
        except Exception as e:
            raise ParserError(f"{target.source} parser failed on {target.url}: {type(e).__name__}: {e}") from e

    async def crawl_target(self, target: CrawlTarget) -> CrawlOutcome:
        """
        Crawl a single target.

        Raises:
            RobotsDisallowed: robots.txt forbids the URL
            CircuitOpenError: the source breaker is open
            NetworkError: the fetch failed after retries or returned an error status
            ParserError: the payload could not be parsed
        """
        parser = self.parsers.get(target.source)

        await self._check_robots(target)

        if self.cache is not None:
            cached = self.cache.get(target.url)
            if cached is not None:
                fields = self._parse(parser, target, cached)
                return CrawlOutcome(target=target, success=True, fields=fields, from_cache=True)

        breaker = self.breakers.get(target.source)
        if await breaker.is_open():
            raise CircuitOpenError(target.source)

        try:
            response = await self.http_client.fetch(target.url, target.source)
            if not response.ok:
                raise NetworkError(
                    f"HTTP {response.status}", url=target.url, status=response.status, attempts=response.attempts
                )
            fields = self._parse(parser, target, response.body)
        except NetworkError:
            await breaker.record_failure()
            raise
        except ParserError:
            # The source answered; only its content was unusable.
            await breaker.record_success()
            raise

        await breaker.record_success()
        if self.cache is not None:
            self.cache.set(target.url, response.body)
        target.last_fetched_at = time.time()
        return CrawlOutcome(target=target, success=True, fields=fields, attempts=response.attempts)

    async def _crawl_isolated(self, target: CrawlTarget) -> CrawlOutcome:
        try:
            outcome = await self.crawl_target(target)
        except DexSyncError as e:
            logger.info(
                "Crawl target failed",
                url=target.url,
                source=target.source,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = CrawlOutcome(
                target=target,
                success=False,
                error=str(e),
                error_type=type(e).__name__,
                attempts=getattr(e, "attempts", 0),
            )
        except Exception as e:
            logger.error(
                "Unexpected crawl error",
                url=target.url,
                source=target.source,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            outcome = CrawlOutcome(target=target, success=False, error=str(e), error_type=type(e).__name__)
        increment(
            "crawler_requests_total",
            labels={"source": target.source, "outcome": "success" if outcome.success else outcome.error_type},
        )
        return outcome

    async def crawl_batch(
        self,
        targets: Iterable[CrawlTarget],
        *,
        abort_event: Optional[asyncio.Event] = None,
        concurrency: Optional[int] = None,
    ) -> BatchReport:
        """
        Crawl targets in windows of ``concurrency`` and aggregate the outcomes.

        The abort flag is checked before every target is started; targets
        already in flight are allowed to finish.
        """
        width = concurrency or self.crawler_config.batch_concurrency
        pending = list(targets)
        report = BatchReport()
        logger.info("Starting crawl batch", targets=len(pending), window=width)

        for offset in range(0, len(pending), width):
            window: List[asyncio.Task[CrawlOutcome]] = []
            for target in pending[offset : offset + width]:
                if abort_event is not None and abort_event.is_set():
                    report.aborted = True
                    break
                window.append(asyncio.create_task(self._crawl_isolated(target)))
            if window:
                report.outcomes.extend(await asyncio.gather(*window))
            if report.aborted:
                logger.warning("Crawl batch aborted", completed=len(report.outcomes), total=len(pending))
                break

        report.finished_at = time.time()
        logger.info("Crawl batch finished", **report.summary())
        return report
