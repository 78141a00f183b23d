"""Crawler orchestration: robots, cache, circuit breaking and batch isolation."""

import asyncio
import json

import pytest
import pytest_asyncio
from aioresponses import aioresponses
from yarl import URL

from dexsync.crawler import Crawler, CrawlTarget
from dexsync.crawler.circuit_breaker import CircuitState
from dexsync.crawler.http_client import HttpClient
from dexsync.crawler.parsers import ParserRegistry
from dexsync.crawler.rate_limiter import RateLimiterRegistry
from dexsync.crawler.robots import RobotsCache
from dexsync.errors import CircuitOpenError, NetworkError, ParserError, RobotsDisallowed

API_URL = "https://dex.example.com/api/species/25"
ROBOTS_URL = "https://dex.example.com/robots.txt"
PIKACHU = json.dumps({"name": "Pikachu", "types": ["electric"], "capture": {"rate": 190}})
WIKI_URL = "https://wiki.example.com/wiki/Pikachu"


class ExplodingParser:
    """Parser whose parse step fails with a non-library error."""

    name = "wiki"

    def build_url(self, entity_id, name=None):
        return WIKI_URL if name else None

    def parse(self, payload):
        raise KeyError("missing")


@pytest_asyncio.fixture
async def crawler(config):
    http_client = HttpClient(config, RateLimiterRegistry(config))
    await http_client.initialize()
    robots = RobotsCache(http_client.session, config.crawler.user_agent)
    yield Crawler(config, http_client, ParserRegistry.from_config(config.sources), robots=robots)
    await http_client.close()


def target(entity_id=25, source="dexapi", url=API_URL):
    return CrawlTarget(url=url, source=source, entity_id=entity_id)


def request_count(mocked, url):
    return len(mocked.requests.get(("GET", URL(url)), []))


@pytest.mark.unit
class TestCrawler:
    def test_plan_targets_skips_unaddressable(self, crawler):
        targets = crawler.plan_targets({1: None, 25: "Pikachu"})

        urls = sorted(t.url for t in targets)
        assert urls == [
            "https://dex.example.com/api/species/1",
            "https://dex.example.com/api/species/25",
            "https://wiki.example.com/wiki/Pikachu",
        ]

    @pytest.mark.asyncio
    async def test_success_then_cache_hit(self, crawler):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)
            m.get(API_URL, status=200, body=PIKACHU)

            first = await crawler.crawl_target(target())
            second = await crawler.crawl_target(target())

            assert request_count(m, API_URL) == 1

        assert first.success and not first.from_cache
        assert first.fields["name"] == "Pikachu"
        assert first.fields["catch_rate"] == 190
        assert second.from_cache
        assert second.fields == first.fields

    @pytest.mark.asyncio
    async def test_robots_disallow_skips_fetch(self, crawler):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body="User-agent: *\nDisallow: /api/\n")

            with pytest.raises(RobotsDisallowed):
                await crawler.crawl_target(target())

            assert request_count(m, API_URL) == 0

    @pytest.mark.asyncio
    async def test_open_breaker_fails_fast(self, crawler):
        breaker = crawler.breakers.get("dexapi")
        for _ in range(crawler.crawler_config.circuit_breaker.failure_threshold):
            await breaker.record_failure()

        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)

            with pytest.raises(CircuitOpenError):
                await crawler.crawl_target(target())

            assert request_count(m, API_URL) == 0

    @pytest.mark.asyncio
    async def test_error_status_counts_against_breaker(self, crawler):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)
            m.get(API_URL, status=404)

            with pytest.raises(NetworkError) as exc_info:
                await crawler.crawl_target(target())

        assert exc_info.value.status == 404
        state = crawler.breakers.get("dexapi").get_state()
        assert state.state is CircuitState.CLOSED
        assert state.failure_count == 1

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, crawler):
        good = target()
        bad = target(entity_id=4, url="https://dex.example.com/api/species/4")
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)
            m.get(API_URL, status=200, body=PIKACHU)
            m.get(bad.url, status=404)

            report = await crawler.crawl_batch([good, bad])

        assert len(report.succeeded) == 1
        assert report.succeeded[0].target.entity_id == 25
        assert report.errors_by_type() == {"NetworkError": 1}
        assert report.summary()["failed"] == 1

    @pytest.mark.asyncio
    async def test_skipped_outcomes(self, crawler):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body="User-agent: *\nDisallow: /\n")

            report = await crawler.crawl_batch([target()])

        assert report.failures[0].skipped

    @pytest.mark.asyncio
    async def test_abort_before_start(self, crawler):
        abort = asyncio.Event()
        abort.set()

        report = await crawler.crawl_batch([target()], abort_event=abort)

        assert report.aborted
        assert report.outcomes == []

    @pytest.mark.asyncio
    async def test_parser_bug_is_a_parser_error(self, crawler):
        crawler.parsers.register(ExplodingParser())
        with aioresponses() as m:
            m.get("https://wiki.example.com/robots.txt", status=404)
            m.get(WIKI_URL, status=200, body="<html></html>")

            with pytest.raises(ParserError) as exc_info:
                await crawler.crawl_target(target(source="wiki", url=WIKI_URL))

        assert isinstance(exc_info.value.__cause__, KeyError)
        assert crawler.breakers.get("wiki").get_state().failure_count == 0

    @pytest.mark.asyncio
    async def test_parser_bug_on_cache_hit_is_a_parser_error(self, crawler):
        crawler.parsers.register(ExplodingParser())
        crawler.cache.set(WIKI_URL, b"<html></html>")
        with aioresponses() as m:
            m.get("https://wiki.example.com/robots.txt", status=404)

            with pytest.raises(ParserError):
                await crawler.crawl_target(target(source="wiki", url=WIKI_URL))

    @pytest.mark.asyncio
    async def test_parser_bug_does_not_sink_batch(self, crawler):
        crawler.parsers.register(ExplodingParser())
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)
            m.get("https://wiki.example.com/robots.txt", status=404)
            m.get(API_URL, status=200, body=PIKACHU)
            m.get(WIKI_URL, status=200, body="<html></html>")

            report = await crawler.crawl_batch([target(), target(source="wiki", url=WIKI_URL)])

        assert len(report.outcomes) == 2
        assert [o.target.source for o in report.succeeded] == ["dexapi"]
        assert report.errors_by_type() == {"ParserError": 1}
        assert "KeyError" in report.failures[0].error
