"""
Error taxonomy shared by the crawler, builder, publisher and sync client.

Per-target failures are caught at batch boundaries and aggregated into
reports; these exceptions only escape a run when the whole stage fails.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class DexSyncError(Exception):
    """Base class for all DexSync errors."""

    retryable: bool = False


class NetworkError(DexSyncError):
    """A fetch failed at the transport level or with an unusable status."""

    retryable = True

    def __init__(self, message: str, *, url: str = "", status: Optional[int] = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.attempts = attempts


class RobotsDisallowed(DexSyncError):
    """robots.txt forbids fetching the target; never retried."""

    def __init__(self, url: str, user_agent: str) -> None:
        super().__init__(f"robots.txt disallows {url} for {user_agent}")
        self.url = url
        self.user_agent = user_agent


class IntegrityMismatch(DexSyncError):
    """A payload hash did not match the advertised content hash."""

    retryable = True

    def __init__(self, entity_id: str, expected: str, actual: str) -> None:
        super().__init__(f"Hash mismatch for {entity_id}: expected {expected[:12]}, got {actual[:12]}")
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class CircuitOpenError(DexSyncError):
    """The source's circuit breaker is open; fail fast without backoff."""

    def __init__(self, source: str) -> None:
        super().__init__(f"Circuit open for source {source}")
        self.source = source


class SchemaValidationError(DexSyncError):
    """A record failed canonical schema validation and was dropped."""

    def __init__(self, record_id: str, reasons: Sequence[str]) -> None:
        super().__init__(f"Record {record_id} failed validation: {'; '.join(reasons)}")
        self.record_id = record_id
        self.reasons: List[str] = list(reasons)


class PublishHealthCheckFailure(DexSyncError):
    """Sampled health check of a published version failed."""

    def __init__(self, version: str, failed: Sequence[str]) -> None:
        super().__init__(f"Health check failed for version {version}: {len(failed)} object(s) unavailable")
        self.version = version
        self.failed: List[str] = list(failed)


class ManifestValidationError(DexSyncError):
    """The fetched manifest is missing required fields or is malformed."""


class ParserError(DexSyncError):
    """A source parser could not turn a payload into record fields."""


class UnknownSourceError(DexSyncError):
    """No parser or configuration is registered for a source name."""


class SyncAborted(DexSyncError):
    """The running sync was aborted; the last checkpoint is preserved."""


class MigrationError(DexSyncError):
    """No chain of registered migrations leads from the stored schema to the current one."""
