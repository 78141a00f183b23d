"""
Resumable, batched payload download with integrity verification.

Payloads are fetched concurrently within a batch. A payload whose content
hash does not match the manifest entry is retried like any failed fetch and
is never written. Each batch is committed together with an advanced
checkpoint, so an interrupted sync resumes after the last committed batch.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from dexsync.client.local_store import LocalStore, StoredEntity, SyncCheckpoint
from dexsync.client.manifest_sync import abortable_sleep, linear_wait
from dexsync.config.config import SyncConfig
from dexsync.dataset.hashing import content_hash
from dexsync.dataset.manifest import Manifest, ManifestEntry
from dexsync.errors import IntegrityMismatch, NetworkError, SyncAborted
from dexsync.observability.metrics import increment

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], Optional[Awaitable[None]]]


@dataclass
class DownloadReport:
    requested: int
    downloaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    batches: int = 0
    position: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed and len(self.downloaded) == self.requested


def _batches(items: Sequence[str], size: int) -> List[Sequence[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class ChunkedDownloader:
    """Downloads manifest payloads into a :class:`LocalStore` batch by batch."""

    def __init__(
        self,
        config: SyncConfig,
        session: aiohttp.ClientSession,
        store: LocalStore,
        *,
        abort_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.config = config
        self.session = session
        self.store = store
        self.abort_event = abort_event
        self.timeout = aiohttp.ClientTimeout(total=config.timeout)

    def payload_url(self, entry: ManifestEntry) -> str:
        return f"{self.config.cdn_base_url}/{entry.tidbitFile.lstrip('/')}"

    async def _get_payload(self, entity_id: str, entry: ManifestEntry) -> Dict[str, Any]:
        url = self.payload_url(entry)
        try:
            async with self.session.get(url, timeout=self.timeout) as response:
                if response.status != 200:
                    raise NetworkError(f"Payload fetch failed: HTTP {response.status}", url=url, status=response.status)
                body = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Payload fetch failed: {e}", url=url) from e

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise IntegrityMismatch(entity_id, entry.hash or "", "undecodable") from e
        if not isinstance(payload, dict):
            raise IntegrityMismatch(entity_id, entry.hash or "", "not-an-object")
        if entry.hash:
            actual = content_hash(payload)
            if actual != entry.hash:
                increment("sync_integrity_failures_total")
                raise IntegrityMismatch(entity_id, entry.hash, actual)
        return payload

    async def fetch_verified(self, entity_id: str, entry: ManifestEntry) -> StoredEntity:
        """Fetch one payload, retrying network errors and hash mismatches."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=linear_wait(self.config.retry_delay),
            retry=retry_if_exception_type((NetworkError, IntegrityMismatch)),
            sleep=abortable_sleep(self.abort_event),
            reraise=True,
        ):
            with attempt:
                payload = await self._get_payload(entity_id, entry)
        return StoredEntity(
            entity_id=entity_id,
            revision=entry.tidbitRevision,
            payload=payload,
            content_hash=entry.hash or content_hash(payload),
        )

    def _check_abort(self) -> None:
        if self.abort_event is not None and self.abort_event.is_set():
            raise SyncAborted("Sync aborted between batches")

    async def download(
        self,
        manifest: Manifest,
        entity_ids: Sequence[str],
        *,
        start_position: int = 0,
        total: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadReport:
        """
        Download ``entity_ids`` and commit them in batches.

        ``start_position`` is the checkpoint position of an interrupted run
        for the same manifest; the checkpoint keeps counting from there.
        """
        total = total if total is not None else start_position + len(entity_ids)
        report = DownloadReport(requested=len(entity_ids), position=start_position)
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def fetch(entity_id: str) -> StoredEntity:
            async with semaphore:
                return await self.fetch_verified(entity_id, manifest.species[entity_id])

        for batch in _batches(list(entity_ids), self.config.batch_size):
            self._check_abort()
            results = await asyncio.gather(*(fetch(entity_id) for entity_id in batch), return_exceptions=True)

            stored: List[StoredEntity] = []
            for entity_id, result in zip(batch, results):
                if isinstance(result, SyncAborted):
                    raise result
                if isinstance(result, BaseException):
                    if not isinstance(result, (NetworkError, IntegrityMismatch)):
                        raise result
                    logger.warning("Entity download failed", entity_id=entity_id, error=str(result))
                    report.failed[entity_id] = f"{type(result).__name__}: {result}"
                else:
                    stored.append(result)

            if stored:
                report.position += len(stored)
                checkpoint = SyncCheckpoint(
                    manifest_version=manifest.manifestVersion,
                    dataset_version=manifest.datasetVersion,
                    position=report.position,
                    total=total,
                )
                await self.store.commit_batch(stored, checkpoint)
                report.downloaded.extend(e.entity_id for e in stored)
                increment("sync_entities_downloaded_total", len(stored))
            report.batches += 1
            logger.debug("Batch committed", batch=report.batches, stored=len(stored), position=report.position)

            if on_progress is not None:
                maybe = on_progress(report.position, total)
                if asyncio.iscoroutine(maybe):
                    await maybe

        return report
