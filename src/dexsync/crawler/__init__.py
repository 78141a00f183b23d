"""Respectful crawling: rate limiting, circuit breaking, robots.txt and caching."""

from .circuit_breaker import HALF_OPEN_SUCCESS_QUORUM, BreakerState, CircuitBreaker, CircuitBreakerManager, CircuitState
from .crawler import BatchReport, Crawler, CrawlOutcome, CrawlTarget
from .http_client import CrawlerResponse, FetchRequest, HttpClient, RateLimitStage, RetryStage, build_pipeline
from .parsers import HtmlSelectorParser, JsonFieldParser, ParserRegistry, SourceParser
from .rate_limiter import RateLimiter, RateLimiterRegistry
from .response_cache import CacheEntry, ResponseCache, cache_key
from .robots import RobotsCache, RobotsRules, parse_robots

__all__ = [
    "HALF_OPEN_SUCCESS_QUORUM",
    "BatchReport",
    "BreakerState",
    "CacheEntry",
    "CircuitBreaker",
    "CircuitBreakerManager",
    "CircuitState",
    "CrawlOutcome",
    "CrawlTarget",
    "Crawler",
    "CrawlerResponse",
    "FetchRequest",
    "HtmlSelectorParser",
    "HttpClient",
    "JsonFieldParser",
    "ParserRegistry",
    "RateLimitStage",
    "RateLimiter",
    "RateLimiterRegistry",
    "ResponseCache",
    "RetryStage",
    "RobotsCache",
    "RobotsRules",
    "SourceParser",
    "build_pipeline",
    "cache_key",
    "parse_robots",
]
