"""
robots.txt parsing, matching and per-domain caching.

Rules are matched linearly: among the rules that apply to the requesting
agent (or ``*``), the longest matching path prefix decides. A sorted prefix
structure would scale better for very large rule sets.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RobotsRule:
    user_agent: str
    path: str
    allow: bool


@dataclass
class RobotsRules:
    """Parsed robots.txt content."""

    rules: List[RobotsRule] = field(default_factory=list)
    crawl_delays: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def _agent_applies(rule_agent: str, user_agent: str) -> bool:
        return rule_agent == "*" or rule_agent == user_agent or rule_agent in user_agent

    def is_allowed(self, path: str, user_agent: str) -> bool:
        user_agent = user_agent.lower()
        best: Optional[RobotsRule] = None
        for rule in self.rules:
            if not self._agent_applies(rule.user_agent, user_agent):
                continue
            # An empty Disallow/Allow path matches nothing.
            if not rule.path or not path.startswith(rule.path):
                continue
            if best is None or len(rule.path) > len(best.path) or (len(rule.path) == len(best.path) and rule.allow):
                best = rule
        return True if best is None else best.allow

    def crawl_delay(self, user_agent: str) -> int:
        user_agent = user_agent.lower()
        if user_agent in self.crawl_delays:
            return self.crawl_delays[user_agent]
        if "*" in self.crawl_delays:
            return self.crawl_delays["*"]
        for agent, delay in self.crawl_delays.items():
            if agent in user_agent:
                return delay
        return 0


def parse_robots(content: str) -> RobotsRules:
    """Parse robots.txt text into :class:`RobotsRules`."""
    result = RobotsRules()
    # Consecutive User-agent lines share one group.
    current_agents: List[str] = []
    in_agent_lines = False

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if ":" not in line:
            continue

        directive, _, value = line.partition(":")
        directive = directive.strip().lower()
        value = value.split("#", 1)[0].strip()
        if not directive:
            continue

        if directive == "user-agent":
            if not in_agent_lines:
                current_agents = []
            if value:
                current_agents.append(value.lower())
            in_agent_lines = True
            continue
        in_agent_lines = False

        if directive in ("disallow", "allow"):
            for agent in current_agents:
                result.rules.append(RobotsRule(agent, value, directive == "allow"))
        elif directive == "crawl-delay":
            try:
                delay = int(float(value))
            except ValueError:
                continue
            if delay > 0:
                for agent in current_agents:
                    result.crawl_delays[agent] = delay

    return result


class RobotsCache:
    """
    Per-domain robots.txt cache with async interface.

    A missing robots.txt (any 4xx) is cached as "no rules". Transport errors
    and 5xx responses allow the request but are not cached so the next call
    retries the fetch.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        user_agent: str,
        cache_ttl: float = 24 * 60 * 60,
        *,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 10.0,
    ) -> None:
        self.session = session
        self.user_agent = user_agent
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._clock = clock
        self._cache: Dict[str, Tuple[float, Optional[RobotsRules]]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _domain_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    async def get_rules(self, url: str) -> Optional[RobotsRules]:
        parsed = urlparse(url)
        domain = parsed.netloc
        async with self._domain_lock(domain):
            cached = self._cache.get(domain)
            if cached is not None and self._clock() - cached[0] < self.cache_ttl:
                return cached[1]

            robots_url = f"{parsed.scheme}://{domain}/robots.txt"
            try:
                async with self.session.get(
                    robots_url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status == 200:
                        rules: Optional[RobotsRules] = parse_robots(await response.text())
                    elif 400 <= response.status < 500:
                        rules = None
                    else:
                        logger.warning("robots.txt unavailable, allowing", domain=domain, status=response.status)
                        return None
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("robots.txt fetch failed, allowing", domain=domain, error=str(e))
                return None

            self._cache[domain] = (self._clock(), rules)
            logger.debug("Cached robots.txt", domain=domain, has_rules=rules is not None)
            return rules

    async def is_allowed(self, url: str) -> bool:
        rules = await self.get_rules(url)
        if rules is None:
            return True
        parsed = urlparse(url)
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return rules.is_allowed(path, self._agent_token())

    async def crawl_delay(self, url: str) -> int:
        rules = await self.get_rules(url)
        return 0 if rules is None else rules.crawl_delay(self._agent_token())

    def _agent_token(self) -> str:
        # "InfinitePokedexBot/1.0 (+url)" -> "infinitepokedexbot/1.0"
        return self.user_agent.split(" ", 1)[0].lower()

    def clear(self) -> None:
        self._cache.clear()
