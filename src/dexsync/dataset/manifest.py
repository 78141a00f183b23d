"""
Per-entity revision tracking and manifest generation.

The source registry remembers, for every entity ever published, its last
revision and content hash. A build bumps the revision of each entity whose
record changed, ignoring fetch timestamps. Unchanged entities keep their
revision and already published payload, so clients skip them and only
changed payloads are uploaded.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dexsync.dataset.builder import DatasetVersion
from dexsync.dataset.hashing import content_hash
from dexsync.errors import ManifestValidationError
from dexsync.utils.atomic import atomic_write_json

logger = structlog.get_logger(__name__)


def pad_entity_id(entity_id: int | str) -> str:
    return f"{int(entity_id):04d}"


def payload_path(padded_id: str, revision: int) -> str:
    return f"species/{padded_id}/tidbits.v{revision}.json"


def revision_hash(record: Mapping[str, Any]) -> str:
    """Hash of a record with fetch timestamps dropped from its provenance."""
    sources = {name: {"url": ref.get("url")} for name, ref in (record.get("sources") or {}).items()}
    return content_hash({**record, "sources": sources})


class ManifestEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    tidbitRevision: int = Field(ge=1)
    tidbitFile: str = Field(min_length=1)
    hash: Optional[str] = None
    lastUpdated: Optional[str] = None


class Manifest(BaseModel):
    """The only document a client needs to decide what changed."""

    model_config = ConfigDict(extra="allow")

    manifestVersion: str = Field(min_length=1)
    datasetVersion: str = Field(min_length=1)
    summary: Dict[str, Any] = Field(default_factory=dict)
    species: Dict[str, ManifestEntry]

    @classmethod
    def parse_document(cls, data: Any) -> Manifest:
        """Validate a decoded manifest document."""
        if not isinstance(data, Mapping):
            raise ManifestValidationError("Manifest must be a JSON object")
        missing = [key for key in ("manifestVersion", "datasetVersion", "species") if key not in data]
        if missing:
            raise ManifestValidationError(f"Manifest missing required fields: {', '.join(missing)}")
        if not isinstance(data["species"], Mapping):
            raise ManifestValidationError("Manifest 'species' must be a mapping of entity id to revision entry")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ManifestValidationError(f"Invalid manifest: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e

    def revisions(self) -> Dict[str, int]:
        return {entity_id: entry.tidbitRevision for entity_id, entry in self.species.items()}

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass
class RegistryEntry:
    revision: int
    hash: str
    name: str
    last_updated: str
    payload_hash: str = ""
    removed: bool = False


class SourceRegistry:
    """Persistent per-entity revision state, stored as JSON."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self.entries: Dict[str, RegistryEntry] = {}
        self.last_version: Optional[str] = None

    @classmethod
    def load(cls, path: Path) -> SourceRegistry:
        registry = cls(path)
        if not Path(path).exists():
            logger.info("No source registry yet, starting empty", path=str(path))
            return registry
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        registry.last_version = data.get("lastVersion")
        for key, raw in data.get("species", {}).items():
            registry.entries[key] = RegistryEntry(
                revision=int(raw["revision"]),
                hash=raw["hash"],
                name=raw.get("name", ""),
                last_updated=raw.get("lastUpdated", ""),
                payload_hash=raw.get("payloadHash", ""),
                removed=bool(raw.get("removed", False)),
            )
        logger.debug("Loaded source registry", path=str(path), entities=len(registry.entries))
        return registry

    def save(self) -> None:
        if self.path is None:
            raise ValueError("Registry has no path to save to")
        atomic_write_json(
            self.path,
            {
                "lastVersion": self.last_version,
                "species": {
                    key: {
                        "revision": e.revision,
                        "hash": e.hash,
                        "name": e.name,
                        "lastUpdated": e.last_updated,
                        "payloadHash": e.payload_hash,
                        "removed": e.removed,
                    }
                    for key, e in sorted(self.entries.items())
                },
            },
        )

    def known_names(self) -> Dict[int, str]:
        return {int(key): e.name for key, e in self.entries.items() if e.name}

    def copy(self) -> SourceRegistry:
        clone = SourceRegistry(self.path)
        clone.entries = copy.deepcopy(self.entries)
        clone.last_version = self.last_version
        return clone


@dataclass
class ManifestBuild:
    manifest: Manifest
    payloads: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    registry: Optional[SourceRegistry] = None
    changed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class ManifestBuilder:
    """Assigns revisions and produces the manifest plus per-entity payloads."""

    def __init__(self, clock=lambda: datetime.now(timezone.utc)) -> None:
        self._clock = clock

    def build(self, version: DatasetVersion, registry: SourceRegistry) -> ManifestBuild:
        """
        Compute the manifest for ``version`` against ``registry``.

        The registry passed in is not modified; the updated copy is returned
        in :attr:`ManifestBuild.registry` so callers can persist it once the
        version is live.
        """
        updated = registry.copy()
        species: Dict[str, ManifestEntry] = {}
        payloads: Dict[str, Dict[str, Any]] = {}
        changed: List[str] = []

        for key, record in version.records.items():
            padded = pad_entity_id(key)
            basis = revision_hash(record)
            previous = registry.entries.get(padded)
            if previous is not None and not previous.removed and previous.hash == basis and previous.payload_hash:
                # Unchanged: the published payload for this revision stays authoritative.
                path = payload_path(padded, previous.revision)
                species[padded] = ManifestEntry(
                    tidbitRevision=previous.revision,
                    tidbitFile=path,
                    hash=previous.payload_hash,
                    lastUpdated=previous.last_updated,
                )
                updated.entries[padded] = RegistryEntry(
                    revision=previous.revision,
                    hash=basis,
                    name=record["name"],
                    last_updated=previous.last_updated,
                    payload_hash=previous.payload_hash,
                )
                continue

            revision = 1 if previous is None else previous.revision + 1
            payload: Dict[str, Any] = {
                "speciesId": padded,
                "tidbitRevision": revision,
                "record": dict(record),
                "tidbits": list(record["tidbits"]),
            }
            payload["hash"] = content_hash(payload)

            path = payload_path(padded, revision)
            payloads[path] = payload
            species[padded] = ManifestEntry(
                tidbitRevision=revision, tidbitFile=path, hash=payload["hash"], lastUpdated=version.timestamp
            )
            updated.entries[padded] = RegistryEntry(
                revision=revision,
                hash=basis,
                name=record["name"],
                last_updated=version.timestamp,
                payload_hash=payload["hash"],
            )
            changed.append(padded)

        removed = sorted(
            key for key, entry in registry.entries.items() if key not in species and not entry.removed
        )
        for key in removed:
            updated.entries[key].removed = True
        updated.last_version = version.version_id

        manifest_version = self._clock().isoformat().replace("+00:00", "Z")
        manifest = Manifest(
            manifestVersion=manifest_version,
            datasetVersion=version.version_id,
            summary={
                "totalSpecies": len(species),
                "totalTidbits": sum(len(r["tidbits"]) for r in version.records.values()),
                "changed": len(changed),
                "removed": len(removed),
                "generatedAt": manifest_version,
            },
            species=dict(sorted(species.items())),
        )
        logger.info(
            "Manifest built",
            dataset_version=version.version_id,
            species=len(species),
            changed=len(changed),
            removed=len(removed),
        )
        return ManifestBuild(manifest=manifest, payloads=payloads, registry=updated, changed=changed, removed=removed)
