"""Local dataset version, append-only version history and lazy schema migrations."""

from __future__ import annotations

import asyncio
import re
from functools import cmp_to_key
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from dexsync.client.local_store import (
    DATASET_VERSION_KEY,
    SCHEMA_VERSION_KEY,
    LocalStore,
    VersionRecord,
)
from dexsync.errors import MigrationError

logger = structlog.get_logger(__name__)

MigrationHook = Callable[[LocalStore], Awaitable[None]]

# Local state written before schema versions were recorded.
LEGACY_SCHEMA_VERSION = "1.0"

_SEPARATORS = re.compile(r"[.\-]")


def _segment_key(segment: str) -> Tuple[int, Any]:
    return (0, int(segment)) if segment.isdigit() else (1, segment)


def compare_versions(a: str, b: str) -> int:
    """
    Compare dotted or dashed version strings segment by segment.

    Missing trailing segments count as zero, so ``"1.0" == "1.0.0"``.
    Returns -1, 0 or 1.
    """
    left = _SEPARATORS.split(a.strip())
    right = _SEPARATORS.split(b.strip())
    width = max(len(left), len(right))
    left += ["0"] * (width - len(left))
    right += ["0"] * (width - len(right))
    for x, y in zip(left, right):
        kx, ky = _segment_key(x), _segment_key(y)
        if kx != ky:
            return 1 if kx > ky else -1
    return 0


class VersionStore:
    """Tracks the synced dataset version and migrates local state on demand."""

    def __init__(self, store: LocalStore, schema_version: str) -> None:
        self.store = store
        self.schema_version = schema_version
        self._migrations: Dict[Tuple[str, str], MigrationHook] = {}
        self._checked = False
        self._lock = asyncio.Lock()

    async def current_version(self) -> Optional[str]:
        return await self.store.get_meta(DATASET_VERSION_KEY)

    async def history(self) -> List[VersionRecord]:
        return await self.store.get_history()

    def register_migration(self, from_version: str, to_version: str, hook: MigrationHook) -> None:
        if compare_versions(from_version, to_version) >= 0:
            raise ValueError(f"Migration must move forward: {from_version} -> {to_version}")
        for known_from, known_to in self._migrations:
            if compare_versions(known_from, from_version) == 0 and compare_versions(known_to, to_version) == 0:
                raise ValueError(f"Migration already registered: {from_version} -> {to_version}")
        self._migrations[(from_version, to_version)] = hook

    def _next_step(self, version: str) -> Optional[Tuple[str, MigrationHook]]:
        """Furthest registered step out of ``version`` that does not overshoot the target schema."""
        steps = [
            (to_version, hook)
            for (from_version, to_version), hook in self._migrations.items()
            if compare_versions(from_version, version) == 0 and compare_versions(to_version, self.schema_version) <= 0
        ]
        if not steps:
            return None
        return max(steps, key=cmp_to_key(lambda a, b: compare_versions(a[0], b[0])))

    async def stored_schema_version(self) -> Optional[str]:
        return await self.store.get_meta(SCHEMA_VERSION_KEY)

    async def ensure_current(self) -> List[str]:
        """
        Run pending migrations once per process.

        Returns the list of schema versions migrated through. A fresh store
        is stamped with the current schema without running any hook.
        """
        async with self._lock:
            if self._checked:
                return []
            applied = await self._migrate()
            self._checked = True
            return applied

    async def _migrate(self) -> List[str]:
        stored = await self.stored_schema_version()
        if stored is None:
            if await self.store.count_entities() == 0:
                await self.store.set_meta(SCHEMA_VERSION_KEY, self.schema_version)
                return []
            stored = LEGACY_SCHEMA_VERSION

        order = compare_versions(stored, self.schema_version)
        if order == 0:
            return []
        if order > 0:
            logger.warning("Local schema is newer than this client", stored=stored, supported=self.schema_version)
            return []

        applied: List[str] = []
        current = stored
        while compare_versions(current, self.schema_version) < 0:
            step = self._next_step(current)
            if step is None:
                raise MigrationError(f"No migration registered from schema {current} towards {self.schema_version}")
            to_version, hook = step
            logger.info("Migrating local data", from_version=current, to_version=to_version)
            await hook(self.store)
            await self.store.set_meta(SCHEMA_VERSION_KEY, to_version)
            applied.append(to_version)
            current = to_version
        return applied

    async def commit(
        self,
        version: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        removals: Sequence[str] = (),
        manifest_meta: Optional[Dict[str, Any]] = None,
    ) -> VersionRecord:
        """Record a fully synced version; clears the checkpoint in the same transaction."""
        record = VersionRecord(
            version=version,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            metadata=dict(metadata or {}),
        )
        await self.store.finalize_sync(record, removals=removals, manifest_meta=manifest_meta)
        return record
