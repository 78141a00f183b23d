"""
Manifest fetching and revision diffing for the sync client.

``compute_sync_plan`` is a pure function of stored and advertised revisions;
only entities whose revision differs are downloaded.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from dexsync.config.config import SyncConfig
from dexsync.dataset.manifest import Manifest
from dexsync.errors import ManifestValidationError, NetworkError, SyncAborted

logger = structlog.get_logger(__name__)


@dataclass
class SyncPlan:
    """Entities to fetch and entities to delete, both sorted."""

    updates: List[str] = field(default_factory=list)
    removals: List[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.updates and not self.removals


def compute_sync_plan(
    stored: Mapping[str, int], manifest_revisions: Mapping[str, int], force: bool = False
) -> SyncPlan:
    """
    Diff local revisions against the manifest.

    An entity is updated when it is new or its revision differs; a stored
    entity absent from the manifest is removed. ``force`` refetches all.
    """
    updates = sorted(
        entity_id
        for entity_id, revision in manifest_revisions.items()
        if force or stored.get(entity_id) != revision
    )
    removals = sorted(entity_id for entity_id in stored if entity_id not in manifest_revisions)
    return SyncPlan(updates=updates, removals=removals, unchanged=len(manifest_revisions) - len(updates))


def validate_manifest(data: Any) -> Manifest:
    return Manifest.parse_document(data)


def linear_wait(delay: float) -> Callable[[Any], float]:
    """tenacity wait of ``delay * attempt`` seconds."""

    def wait(retry_state: Any) -> float:
        return delay * retry_state.attempt_number

    return wait


def abortable_sleep(abort_event: Optional[asyncio.Event]) -> Callable[[float], Any]:
    """A sleep that returns early and raises SyncAborted once the event is set."""

    async def sleep(seconds: float) -> None:
        if abort_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise SyncAborted("Sync aborted during retry wait")

    return sleep


@dataclass
class ManifestFetch:
    manifest: Optional[Manifest]
    etag: Optional[str] = None
    not_modified: bool = False
    raw: Optional[Dict[str, Any]] = None


class ManifestSync:
    """Fetches and validates the published manifest."""

    def __init__(
        self,
        config: SyncConfig,
        session: aiohttp.ClientSession,
        *,
        abort_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.config = config
        self.session = session
        self.abort_event = abort_event
        self.timeout = aiohttp.ClientTimeout(total=config.timeout)

    @property
    def manifest_url(self) -> str:
        return f"{self.config.cdn_base_url}/{self.config.manifest_path.lstrip('/')}"

    async def _get(self, etag: Optional[str]) -> ManifestFetch:
        headers = {"Cache-Control": "no-cache"}
        if etag:
            headers["If-None-Match"] = etag
        url = self.manifest_url
        try:
            async with self.session.get(url, headers=headers, timeout=self.timeout) as response:
                if response.status == 304:
                    return ManifestFetch(manifest=None, etag=etag, not_modified=True)
                if response.status != 200:
                    raise NetworkError(f"Failed to fetch manifest: HTTP {response.status}", url=url, status=response.status)
                body = await response.read()
                new_etag = response.headers.get("ETag")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Failed to fetch manifest: {e}", url=url) from e

        try:
            data = json.loads(body)
        except ValueError as e:
            raise ManifestValidationError(f"Manifest is not valid JSON: {e}") from e
        return ManifestFetch(manifest=validate_manifest(data), etag=new_etag, raw=data)

    async def fetch_manifest(self, etag: Optional[str] = None) -> ManifestFetch:
        """Fetch the manifest, retrying network failures with a linear, abortable wait."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=linear_wait(self.config.retry_delay),
            retry=retry_if_exception_type(NetworkError),
            sleep=abortable_sleep(self.abort_event),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying manifest fetch", attempt=attempt.retry_state.attempt_number)
                result = await self._get(etag)

        if result.not_modified:
            logger.info("Manifest not modified", etag=etag)
        else:
            logger.info(
                "Manifest fetched",
                manifest_version=result.manifest.manifestVersion,
                dataset_version=result.manifest.datasetVersion,
                species=len(result.manifest.species),
            )
        return result
