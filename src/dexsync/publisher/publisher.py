"""
Versioned publication with health-checked alias cutover.

Every file of a version is uploaded under ``v<version>/``. Only when all
uploads succeeded is a sampled health check run over records and manifest
payloads, and only when it passes is the root manifest re-pointed, then the
``latest.json`` alias. A failed cutover puts the previous root manifest
back. Versions are never deleted here.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from dexsync.config.config import PublisherConfig
from dexsync.dataset.builder import DatasetVersion
from dexsync.dataset.hashing import verify_hash
from dexsync.dataset.manifest import Manifest, ManifestBuild
from dexsync.errors import ManifestValidationError, NetworkError, PublishHealthCheckFailure
from dexsync.observability.metrics import increment
from dexsync.publisher.storage import ObjectStore

logger = structlog.get_logger(__name__)

ALIAS_KEY = "latest.json"
MANIFEST_KEY = "tidbit_manifest.json"
JSON_CONTENT_TYPE = "application/json"


def version_prefix(version_id: str) -> str:
    return f"v{version_id}"


def index_key(version_id: str) -> str:
    return f"{version_prefix(version_id)}/species/index.json"


def record_key(version_id: str, record_id: str) -> str:
    return f"{version_prefix(version_id)}/species/{record_id}.json"


def metadata_key(version_id: str) -> str:
    return f"{version_prefix(version_id)}/metadata.json"


def version_manifest_key(version_id: str) -> str:
    return f"{version_prefix(version_id)}/{MANIFEST_KEY}"


def _encode(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, ensure_ascii=False, sort_keys=True).encode("utf-8")


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class HealthCheckResult:
    passed: bool
    checked: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class PublishResult:
    """Result of a publish or rollback operation."""

    version: str
    status: PublishStatus
    uploaded: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    health: Optional[HealthCheckResult] = None
    alias: Optional[Dict[str, Any]] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is PublishStatus.PUBLISHED


class Publisher:
    """Uploads dataset versions to an :class:`ObjectStore` and manages the alias."""

    def __init__(
        self,
        store: ObjectStore,
        config: Optional[PublisherConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self.store = store
        self.config = config or PublisherConfig()
        self._rng = rng or random.Random()
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=5)

    async def _put(self, key: str, document: Mapping[str, Any], cache_control: str) -> None:
        data = _encode(document)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.upload_retries),
            wait=self._retry_wait,
            retry=retry_if_exception_type((NetworkError, OSError)),
            reraise=True,
        ):
            with attempt:
                await self.store.put(key, data, content_type=JSON_CONTENT_TYPE, cache_control=cache_control)

    async def _upload_all(self, uploads: Dict[str, Mapping[str, Any]]) -> tuple[List[str], List[str]]:
        semaphore = asyncio.Semaphore(self.config.upload_concurrency)
        uploaded: List[str] = []
        errors: List[str] = []

        async def upload(key: str, document: Mapping[str, Any]) -> None:
            async with semaphore:
                try:
                    await self._put(key, document, self.config.immutable_cache_control)
                except (NetworkError, OSError) as e:
                    logger.error("Upload failed", key=key, error=str(e))
                    errors.append(f"{key}: {e}")
                    increment("publish_uploads_total", labels={"result": "error"})
                else:
                    uploaded.append(key)
                    increment("publish_uploads_total", labels={"result": "ok"})

        await asyncio.gather(*(upload(key, doc) for key, doc in uploads.items()))
        return uploaded, errors

    async def publish(self, version: DatasetVersion, manifest_build: Optional[ManifestBuild] = None) -> PublishResult:
        started = time.time()
        version_id = version.version_id
        log = logger.bind(version=version_id)

        uploads: Dict[str, Mapping[str, Any]] = {
            record_key(version_id, key): dict(record) for key, record in version.records.items()
        }
        if manifest_build is not None:
            uploads.update(manifest_build.payloads)
            uploads[version_manifest_key(version_id)] = manifest_build.manifest.to_document()
        uploads[index_key(version_id)] = version.index_document()
        uploads[metadata_key(version_id)] = version.metadata_document()

        log.info("Publishing version", objects=len(uploads))
        uploaded, errors = await self._upload_all(uploads)
        result = PublishResult(version=version_id, status=PublishStatus.FAILED, uploaded=sorted(uploaded), errors=errors)

        if errors:
            log.error("Publish incomplete, alias left unchanged", failed_uploads=len(errors))
            result.duration_seconds = time.time() - started
            return result

        manifest = manifest_build.manifest if manifest_build is not None else None
        result.health = await self.health_check(version_id, list(version.records), manifest)
        if not result.health.passed:
            failure = PublishHealthCheckFailure(version_id, result.health.failed)
            log.error("Publish degraded", error=str(failure), failed=result.health.failed)
            result.status = PublishStatus.DEGRADED
            result.errors.append(str(failure))
            result.duration_seconds = time.time() - started
            return result

        manifest_doc = manifest.to_document() if manifest is not None else None
        await self._cut_over(result, version.dataset_hash, manifest_doc)
        result.duration_seconds = time.time() - started
        if result.ok:
            log.info("Version published", duration=round(result.duration_seconds, 2))
        return result

    async def _check_record(self, key: str, expected_hash: Optional[str] = None) -> bool:
        try:
            data = await self.store.get(key)
        except NetworkError as e:
            logger.warning("Health check read failed", key=key, error=str(e))
            return False
        if data is None:
            return False
        try:
            document = json.loads(data)
        except ValueError:
            return False
        if not isinstance(document, dict) or not verify_hash(document):
            return False
        return expected_hash is None or document.get("hash") == expected_hash

    async def health_check(
        self, version_id: str, record_ids: Sequence[str], manifest: Optional[Manifest] = None
    ) -> HealthCheckResult:
        """
        HEAD the index and metadata, then GET and hash-verify a random sample
        of records and, when a manifest is given, of the payloads it points at.
        """
        result = HealthCheckResult(passed=True)

        keys = [index_key(version_id), metadata_key(version_id)]
        if manifest is not None:
            keys.append(version_manifest_key(version_id))
        for key in keys:
            result.checked.append(key)
            if not await self.store.exists(key):
                result.failed.append(key)

        sample_size = min(self.config.health_check_sample_size, len(record_ids))
        for record_id in self._rng.sample(sorted(record_ids), sample_size):
            key = record_key(version_id, record_id)
            result.checked.append(key)
            if not await self._check_record(key):
                result.failed.append(key)

        if manifest is not None:
            entries = sorted(manifest.species.items())
            sample_size = min(self.config.health_check_sample_size, len(entries))
            for _, entry in self._rng.sample(entries, sample_size):
                result.checked.append(entry.tidbitFile)
                if not await self._check_record(entry.tidbitFile, entry.hash):
                    result.failed.append(entry.tidbitFile)

        result.passed = not result.failed
        increment("publish_health_checks_total", labels={"result": "pass" if result.passed else "fail"})
        return result

    async def _restore(self, key: str, previous: Optional[bytes]) -> None:
        try:
            if previous is None:
                await self.store.delete(key)
            else:
                await self.store.put(
                    key, previous, content_type=JSON_CONTENT_TYPE, cache_control=self.config.alias_cache_control
                )
        except (NetworkError, OSError) as e:
            logger.error("Could not restore alias object", key=key, error=str(e))

    async def _cut_over(
        self, result: PublishResult, dataset_hash: str, manifest_doc: Optional[Mapping[str, Any]]
    ) -> None:
        """
        Point the root manifest and then ``latest.json`` at ``result.version``.

        On failure both are put back to what they were and ``result`` is
        marked FAILED.
        """
        version_id = result.version
        alias = {
            "version": version_id,
            "path": version_prefix(version_id),
            "url": index_key(version_id),
            "metadata": metadata_key(version_id),
            "manifest": version_manifest_key(version_id) if manifest_doc is not None else None,
            "datasetHash": dataset_hash,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        previous_manifest = await self.store.get(MANIFEST_KEY) if manifest_doc is not None else None
        manifest_written = False
        try:
            if manifest_doc is not None:
                await self._put(MANIFEST_KEY, manifest_doc, self.config.alias_cache_control)
                manifest_written = True
            await self._put(ALIAS_KEY, alias, self.config.alias_cache_control)
        except (NetworkError, OSError) as e:
            logger.error("Alias update failed, previous alias kept", version=version_id, error=str(e))
            if manifest_written:
                await self._restore(MANIFEST_KEY, previous_manifest)
            result.status = PublishStatus.FAILED
            result.errors.append(f"alias update failed: {e}")
            return

        result.alias = alias
        result.status = PublishStatus.PUBLISHED
        logger.info("Alias updated", version=version_id)

    async def current_alias(self) -> Optional[Dict[str, Any]]:
        data = await self.store.get(ALIAS_KEY)
        return json.loads(data) if data is not None else None

    async def rollback(self, version_id: str) -> PublishResult:
        """Re-point the alias at a previously published version after re-checking it."""
        started = time.time()
        result = PublishResult(version=version_id, status=PublishStatus.FAILED)

        index_data = await self.store.get(index_key(version_id))
        if index_data is None:
            result.errors.append(f"Version {version_id} is not published")
            logger.error("Rollback target missing", version=version_id)
            return result

        record_ids = list(json.loads(index_data).get("species", {}))
        manifest_data = await self.store.get(version_manifest_key(version_id))
        manifest: Optional[Manifest] = None
        if manifest_data is not None:
            try:
                manifest = Manifest.parse_document(json.loads(manifest_data))
            except (ValueError, ManifestValidationError) as e:
                result.errors.append(f"{version_manifest_key(version_id)}: {e}")
                logger.error("Rollback target manifest unreadable", version=version_id, error=str(e))
                return result

        result.health = await self.health_check(version_id, record_ids, manifest)
        if not result.health.passed:
            failure = PublishHealthCheckFailure(version_id, result.health.failed)
            logger.error("Rollback aborted", error=str(failure))
            result.status = PublishStatus.DEGRADED
            result.errors.append(str(failure))
            return result

        metadata_data = await self.store.get(metadata_key(version_id))
        dataset_hash = json.loads(metadata_data).get("datasetHash", "") if metadata_data else ""
        manifest_doc = json.loads(manifest_data) if manifest_data is not None else None
        await self._cut_over(result, dataset_hash, manifest_doc)
        result.duration_seconds = time.time() - started
        if result.ok:
            logger.info("Rolled back", version=version_id)
        return result
