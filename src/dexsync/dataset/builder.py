"""
Dataset assembly: canonical records -> immutable, hashed, versioned dataset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from dexsync.config.config import DatasetConfig
from dexsync.dataset.hashing import canonical_json, sha256_hex
from dexsync.dataset.records import filter_tidbits, normalize_record
from dexsync.errors import SchemaValidationError
from dexsync.observability.metrics import increment
from dexsync.utils.atomic import atomic_write_json

logger = structlog.get_logger(__name__)

VERSION_FORMAT = "%Y%m%d-%H%M%S"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class RejectedRecord:
    record_id: str
    reasons: List[str]


@dataclass(frozen=True)
class DatasetVersion:
    """A finished build. Never mutated; a newer build supersedes it."""

    version_id: str
    timestamp: str
    records: Mapping[str, Mapping[str, Any]]
    index: Mapping[str, Mapping[str, Any]]
    dataset_hash: str
    metadata: Mapping[str, Any]

    def index_document(self) -> Dict[str, Any]:
        return {
            "version": self.version_id,
            "timestamp": self.timestamp,
            "species": {key: dict(entry) for key, entry in self.index.items()},
        }

    def metadata_document(self) -> Dict[str, Any]:
        return {
            "version": self.version_id,
            "timestamp": self.timestamp,
            "datasetHash": self.dataset_hash,
            "metadata": dict(self.metadata),
        }


@dataclass
class BuildResult:
    version: DatasetVersion
    rejected: List[RejectedRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.version.records)


class DatasetBuilder:
    """
    Assembles merged per-entity inputs into a :class:`DatasetVersion`.

    Version ids are ``YYYYMMDD-HHMMSS`` in UTC and strictly increase across
    builds from the same builder (or from ``last_version`` when seeded from
    the source registry).
    """

    def __init__(
        self,
        config: Optional[DatasetConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        last_version: Optional[str] = None,
    ) -> None:
        self.config = config or DatasetConfig()
        self._clock = clock
        self._last_version = last_version

    def next_version_id(self, now: Optional[datetime] = None) -> str:
        now = now or self._clock()
        candidate = now.strftime(VERSION_FORMAT)
        if self._last_version is not None and candidate <= self._last_version:
            previous = datetime.strptime(self._last_version, VERSION_FORMAT)
            candidate = (previous + timedelta(seconds=1)).strftime(VERSION_FORMAT)
        self._last_version = candidate
        return candidate

    def build(self, inputs: Mapping[int, Mapping[str, Any]]) -> BuildResult:
        now = self._clock()
        version_id = self.next_version_id(now)
        timestamp = _iso(now)

        records: Dict[str, Dict[str, Any]] = {}
        index: Dict[str, Dict[str, Any]] = {}
        rejected: List[RejectedRecord] = []

        for entity_id in sorted(inputs):
            raw = dict(inputs[entity_id])
            raw["tidbits"] = filter_tidbits(raw.get("tidbits") or [], self.config.max_tidbits_per_entity)
            try:
                record = normalize_record(int(entity_id), raw)
            except SchemaValidationError as e:
                logger.warning("Record rejected", record_id=e.record_id, reasons=e.reasons)
                rejected.append(RejectedRecord(e.record_id, e.reasons))
                increment("dataset_records_total", labels={"result": "rejected"})
                continue

            key = str(record["id"])
            records[key] = MappingProxyType(record)
            index[key] = MappingProxyType(
                {
                    "id": record["id"],
                    "name": record["name"],
                    "types": list(record["types"]),
                    "hash": record["hash"],
                    "lastUpdated": timestamp,
                }
            )
            increment("dataset_records_total", labels={"result": "accepted"})

        dataset_hash = sha256_hex(
            canonical_json({"version": version_id, "records": {k: r["hash"] for k, r in records.items()}}).encode(
                "utf-8"
            )
        )
        metadata = {
            "totalSpecies": len(records),
            "totalTidbits": sum(len(r["tidbits"]) for r in records.values()),
            "rejected": len(rejected),
            "sources": sorted({s for r in records.values() for s in r["sources"]}),
            "builtAt": timestamp,
        }
        version = DatasetVersion(
            version_id=version_id,
            timestamp=timestamp,
            records=MappingProxyType(records),
            index=MappingProxyType(index),
            dataset_hash=dataset_hash,
            metadata=MappingProxyType(metadata),
        )
        logger.info(
            "Dataset built",
            version=version_id,
            records=len(records),
            rejected=len(rejected),
            dataset_hash=dataset_hash[:12],
        )
        return BuildResult(version=version, rejected=rejected)

    def write(self, version: DatasetVersion, output_dir: Optional[Path] = None) -> Path:
        """Write the version to ``<output_dir>/v<version>/`` in CDN layout."""
        root = Path(output_dir or self.config.output_dir) / f"v{version.version_id}"
        atomic_write_json(root / "species" / "index.json", version.index_document())
        for key, record in version.records.items():
            atomic_write_json(root / "species" / f"{key}.json", dict(record))
        atomic_write_json(root / "metadata.json", version.metadata_document())
        logger.info("Dataset written", path=str(root))
        return root
