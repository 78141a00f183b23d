"""
TTL'd, content-addressed cache of fetched pages.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from dexsync.config.config import CacheConfig
from dexsync.observability.metrics import increment

logger = structlog.get_logger(__name__)

# Share of entries removed by one size enforcement pass.
TRIM_FRACTION = 0.2


def cache_key(url: str) -> str:
    """Content address of a URL."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    url: str
    payload: Any
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResponseCache:
    """
    In-memory key/value cache keyed by the SHA-256 of the URL.

    ``get`` only returns entries younger than their TTL and evicts stale ones.
    When the entry count exceeds ``max_entries`` the oldest 20% by fetch time
    are dropped.
    """

    def __init__(self, config: Optional[CacheConfig] = None, *, clock: Callable[[], float] = time.time) -> None:
        config = config or CacheConfig()
        self.default_ttl = config.ttl_seconds
        self.max_entries = config.max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: str) -> bool:
        entry = self._entries.get(cache_key(url))
        return entry is not None and entry.is_fresh(self._clock())

    def get(self, url: str) -> Optional[Any]:
        key = cache_key(url)
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            increment("crawler_cache_events_total", labels={"result": "miss"})
            return None

        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            self.stats.evictions += 1
            self.stats.misses += 1
            increment("crawler_cache_events_total", labels={"result": "expired"})
            return None

        self.stats.hits += 1
        increment("crawler_cache_events_total", labels={"result": "hit"})
        return entry.payload

    def set(self, url: str, payload: Any, ttl: Optional[float] = None) -> CacheEntry:
        entry = CacheEntry(
            key=cache_key(url),
            url=url,
            payload=payload,
            fetched_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        self._entries[entry.key] = entry
        self.stats.sets += 1
        if len(self._entries) > self.max_entries:
            self.enforce_size_limit()
        return entry

    def enforce_size_limit(self) -> int:
        """Drop the oldest entries when over capacity. Returns the number removed."""
        if len(self._entries) <= self.max_entries:
            return 0
        to_remove = max(1, int(len(self._entries) * TRIM_FRACTION))
        oldest = sorted(self._entries.values(), key=lambda e: e.fetched_at)[:to_remove]
        for entry in oldest:
            del self._entries[entry.key]
        self.stats.evictions += len(oldest)
        logger.debug("Trimmed response cache", removed=len(oldest), remaining=len(self._entries))
        return len(oldest)

    def clear(self) -> None:
        self._entries.clear()
