"""Dataset assembly, content hashing and manifest generation."""

from .builder import BuildResult, DatasetBuilder, DatasetVersion, RejectedRecord
from .hashing import canonical_json, content_hash, verify_hash
from .manifest import (
    Manifest,
    ManifestBuild,
    ManifestBuilder,
    ManifestEntry,
    SourceRegistry,
    pad_entity_id,
    payload_path,
    revision_hash,
)
from .records import SpeciesRecord, TidbitSynthesizer, filter_tidbits, merge_source_fields, normalize_record

__all__ = [
    "BuildResult",
    "DatasetBuilder",
    "DatasetVersion",
    "Manifest",
    "ManifestBuild",
    "ManifestBuilder",
    "ManifestEntry",
    "RejectedRecord",
    "SourceRegistry",
    "SpeciesRecord",
    "TidbitSynthesizer",
    "canonical_json",
    "content_hash",
    "filter_tidbits",
    "merge_source_fields",
    "normalize_record",
    "pad_entity_id",
    "payload_path",
    "revision_hash",
    "verify_hash",
]
