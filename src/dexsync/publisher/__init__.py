"""Dataset publication to a CDN-style object store."""

from .publisher import (
    ALIAS_KEY,
    MANIFEST_KEY,
    HealthCheckResult,
    Publisher,
    PublishResult,
    PublishStatus,
    index_key,
    metadata_key,
    record_key,
    version_manifest_key,
)
from .storage import HttpObjectStore, LocalObjectStore, ObjectStore

__all__ = [
    "ALIAS_KEY",
    "MANIFEST_KEY",
    "HealthCheckResult",
    "HttpObjectStore",
    "LocalObjectStore",
    "ObjectStore",
    "PublishResult",
    "PublishStatus",
    "Publisher",
    "index_key",
    "metadata_key",
    "record_key",
    "version_manifest_key",
]
