"""Client-side incremental sync: manifest diffing, resumable download and version tracking."""

from .downloader import ChunkedDownloader, DownloadReport
from .local_store import LocalStore, StoredEntity, SyncCheckpoint, VersionRecord
from .manifest_sync import ManifestFetch, ManifestSync, SyncPlan, compute_sync_plan, validate_manifest
from .sync import SyncClient, SyncResult, SyncStatus
from .version_store import VersionStore, compare_versions

__all__ = [
    "ChunkedDownloader",
    "DownloadReport",
    "LocalStore",
    "ManifestFetch",
    "ManifestSync",
    "StoredEntity",
    "SyncCheckpoint",
    "SyncClient",
    "SyncPlan",
    "SyncResult",
    "SyncStatus",
    "VersionRecord",
    "VersionStore",
    "compare_versions",
    "compute_sync_plan",
    "validate_manifest",
]
