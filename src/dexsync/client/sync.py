"""
Client-side synchronization orchestration.

One sync runs at a time; a request arriving while a sync is in flight is
coalesced and returns immediately. A sync that fails or is aborted keeps its
last checkpoint so the next run resumes instead of starting over.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import aiohttp
import structlog

from dexsync.client.downloader import ChunkedDownloader, ProgressCallback
from dexsync.client.local_store import MANIFEST_META_KEY, LocalStore
from dexsync.client.manifest_sync import ManifestSync, compute_sync_plan
from dexsync.client.version_store import VersionStore
from dexsync.config.config import SyncConfig
from dexsync.errors import DexSyncError, SyncAborted
from dexsync.observability.metrics import increment

logger = structlog.get_logger(__name__)


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    UP_TO_DATE = "up_to_date"
    COALESCED = "coalesced"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class SyncResult:
    status: SyncStatus
    dataset_version: Optional[str] = None
    previous_version: Optional[str] = None
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    resumed: bool = False
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.COMPLETED, SyncStatus.UP_TO_DATE)


class SyncClient:
    """Brings the local store up to the published manifest."""

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.versions = VersionStore(store, config.schema_version)
        self._session = session
        self._owns_session = session is None
        self._abort_event = asyncio.Event()
        self._in_flight = False

    async def initialize(self) -> None:
        await self.store.initialize()
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        await self.store.close()

    async def __aenter__(self) -> SyncClient:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def abort(self) -> None:
        """Stop the running sync at the next batch boundary or retry wait."""
        if self._in_flight:
            logger.info("Abort requested")
            self._abort_event.set()

    async def sync(self, *, force: bool = False, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        if self._in_flight:
            logger.info("Sync already running, request coalesced")
            return SyncResult(status=SyncStatus.COALESCED)
        if self._session is None:
            raise RuntimeError("SyncClient not initialized. Call initialize() first.")

        self._in_flight = True
        self._abort_event.clear()
        started = time.monotonic()
        try:
            result = await self._run(force, on_progress)
        except SyncAborted as e:
            logger.warning("Sync aborted, checkpoint kept", reason=str(e))
            result = SyncResult(status=SyncStatus.ABORTED, error=str(e))
        except DexSyncError as e:
            logger.error("Sync failed", error=str(e), error_type=type(e).__name__)
            result = SyncResult(status=SyncStatus.FAILED, error=str(e))
        finally:
            self._in_flight = False

        result.duration_seconds = time.monotonic() - started
        increment("sync_runs_total", labels={"status": result.status.value})
        return result

    async def _run(self, force: bool, on_progress: Optional[ProgressCallback]) -> SyncResult:
        await self.versions.ensure_current()
        previous = await self.versions.current_version()
        checkpoint = await self.store.get_checkpoint()

        manifest_sync = ManifestSync(self.config, self._session, abort_event=self._abort_event)
        stored_meta = await self.store.get_meta(MANIFEST_META_KEY) or {}
        etag = None if force or checkpoint is not None else stored_meta.get("etag")
        fetched = await manifest_sync.fetch_manifest(etag)
        if fetched.not_modified:
            return SyncResult(status=SyncStatus.UP_TO_DATE, dataset_version=previous, previous_version=previous)
        manifest = fetched.manifest

        plan = compute_sync_plan(await self.store.get_revisions(), manifest.revisions(), force)

        start_position, total, resumed = 0, None, False
        if checkpoint is not None and checkpoint.manifest_version == manifest.manifestVersion and not force:
            start_position, total, resumed = checkpoint.position, checkpoint.total, True
            logger.info("Resuming sync from checkpoint", position=checkpoint.position, remaining=len(plan.updates))
        elif checkpoint is not None:
            logger.info("Discarding checkpoint of a superseded manifest", checkpoint_manifest=checkpoint.manifest_version)

        if plan.is_empty and previous == manifest.datasetVersion and checkpoint is None:
            logger.info("Already up to date", dataset_version=previous)
            return SyncResult(status=SyncStatus.UP_TO_DATE, dataset_version=previous, previous_version=previous)

        logger.info(
            "Sync plan computed",
            updates=len(plan.updates),
            removals=len(plan.removals),
            unchanged=plan.unchanged,
            dataset_version=manifest.datasetVersion,
        )
        downloader = ChunkedDownloader(self.config, self._session, self.store, abort_event=self._abort_event)
        report = await downloader.download(
            manifest, plan.updates, start_position=start_position, total=total, on_progress=on_progress
        )

        if report.failed:
            logger.error("Sync incomplete, checkpoint kept", failed=len(report.failed), downloaded=len(report.downloaded))
            return SyncResult(
                status=SyncStatus.FAILED,
                dataset_version=previous,
                previous_version=previous,
                updated=report.downloaded,
                failed=report.failed,
                resumed=resumed,
                error=f"{len(report.failed)} entity download(s) failed",
            )

        await self.versions.commit(
            manifest.datasetVersion,
            metadata={
                "manifestVersion": manifest.manifestVersion,
                "updated": len(plan.updates),
                "removed": len(plan.removals),
            },
            removals=plan.removals,
            manifest_meta={
                "manifestVersion": manifest.manifestVersion,
                "datasetVersion": manifest.datasetVersion,
                "etag": fetched.etag,
                "fetchedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            },
        )
        logger.info(
            "Sync completed",
            dataset_version=manifest.datasetVersion,
            previous_version=previous,
            updated=len(report.downloaded),
            removed=len(plan.removals),
        )
        return SyncResult(
            status=SyncStatus.COMPLETED,
            dataset_version=manifest.datasetVersion,
            previous_version=previous,
            updated=report.downloaded,
            removed=plan.removals,
            resumed=resumed,
        )
