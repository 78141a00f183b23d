"""
Durable client-side store on SQLite (aiosqlite).

Two tables: ``entities`` holds one verified payload per entity and
``metadata`` is a JSON key/value table for ``dataset-version``,
``sync-checkpoint``, ``version_history``, ``tidbit-manifest`` and
``schema-version``. Every multi-step write runs in one ``BEGIN IMMEDIATE``
transaction so readers never observe a half-applied batch.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)

DATASET_VERSION_KEY = "dataset-version"
CHECKPOINT_KEY = "sync-checkpoint"
HISTORY_KEY = "version_history"
MANIFEST_META_KEY = "tidbit-manifest"
SCHEMA_VERSION_KEY = "schema-version"

CURRENT_DB_SCHEMA = 1


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SyncCheckpoint:
    """Marker of the last durably committed batch of an interrupted sync."""

    manifest_version: str
    dataset_version: str
    position: int
    total: int
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SyncCheckpoint:
        return cls(
            manifest_version=data["manifest_version"],
            dataset_version=data["dataset_version"],
            position=int(data["position"]),
            total=int(data.get("total", 0)),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class StoredEntity:
    entity_id: str
    revision: int
    payload: Dict[str, Any]
    content_hash: str


@dataclass
class VersionRecord:
    """One ``version_history`` entry."""

    version: str
    timestamp: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class LocalStore:
    """Async SQLite store for synced entities and sync metadata."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly.
        self._conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute("PRAGMA synchronous=FULL;")
        await self._conn.execute("PRAGMA busy_timeout = 5000;")
        await self._run_migrations()
        logger.info("Local store ready", db_path=str(self.db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> LocalStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Local store not initialized. Call initialize() first.")
        return self._conn

    async def _run_migrations(self) -> None:
        cursor = await self.conn.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        version = row[0] if row else 0
        if version >= CURRENT_DB_SCHEMA:
            return
        logger.info("Migrating local store schema", from_version=version, to_version=CURRENT_DB_SCHEMA)
        async with self.transaction() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    entity_id TEXT PRIMARY KEY,
                    revision INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    stored_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(f"PRAGMA user_version = {CURRENT_DB_SCHEMA};")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers and commit or roll back as one unit."""
        async with self._write_lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK;")
                raise
            else:
                await conn.execute("COMMIT;")

    # --- metadata -----------------------------------------------------------

    async def get_meta(self, key: str, default: Any = None) -> Any:
        cursor = await self.conn.execute("SELECT value FROM metadata WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return json.loads(row["value"]) if row is not None else default

    @staticmethod
    async def _set_meta(conn: aiosqlite.Connection, key: str, value: Any) -> None:
        await conn.execute(
            "INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, json.dumps(value, sort_keys=True), utcnow_iso()),
        )

    async def set_meta(self, key: str, value: Any) -> None:
        async with self.transaction() as conn:
            await self._set_meta(conn, key, value)

    async def delete_meta(self, key: str) -> None:
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM metadata WHERE key = ?", (key,))

    async def get_checkpoint(self) -> Optional[SyncCheckpoint]:
        data = await self.get_meta(CHECKPOINT_KEY)
        return SyncCheckpoint.from_dict(data) if data else None

    async def get_history(self) -> List[VersionRecord]:
        return [VersionRecord(**entry) for entry in await self.get_meta(HISTORY_KEY, [])]

    # --- entities -----------------------------------------------------------

    async def get_revisions(self) -> Dict[str, int]:
        cursor = await self.conn.execute("SELECT entity_id, revision FROM entities")
        return {row["entity_id"]: row["revision"] for row in await cursor.fetchall()}

    async def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        cursor = await self.conn.execute("SELECT payload FROM entities WHERE entity_id = ?", (entity_id,))
        row = await cursor.fetchone()
        return json.loads(row["payload"]) if row is not None else None

    async def count_entities(self) -> int:
        cursor = await self.conn.execute("SELECT COUNT(*) FROM entities")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def iter_entities(self) -> AsyncIterator[StoredEntity]:
        async with self.conn.execute(
            "SELECT entity_id, revision, payload, content_hash FROM entities ORDER BY entity_id"
        ) as cursor:
            async for row in cursor:
                yield StoredEntity(row["entity_id"], row["revision"], json.loads(row["payload"]), row["content_hash"])

    async def replace_entities(self, entities: Sequence[StoredEntity]) -> None:
        """Rewrite entities in place; used by migration hooks."""
        async with self.transaction() as conn:
            await self._upsert(conn, entities)

    @staticmethod
    async def _upsert(conn: aiosqlite.Connection, entities: Sequence[StoredEntity]) -> None:
        now = utcnow_iso()
        await conn.executemany(
            "INSERT INTO entities (entity_id, revision, payload, content_hash, stored_at) VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(entity_id) DO UPDATE SET revision = excluded.revision, payload = excluded.payload, "
            "content_hash = excluded.content_hash, stored_at = excluded.stored_at",
            [(e.entity_id, e.revision, json.dumps(e.payload, sort_keys=True), e.content_hash, now) for e in entities],
        )

    # --- sync commits -------------------------------------------------------

    async def commit_batch(self, entities: Sequence[StoredEntity], checkpoint: SyncCheckpoint) -> None:
        """Store a batch of verified entities and advance the checkpoint atomically."""
        previous = await self.get_checkpoint()
        if (
            previous is not None
            and previous.manifest_version == checkpoint.manifest_version
            and checkpoint.position < previous.position
        ):
            raise ValueError(f"Checkpoint must not move backwards ({previous.position} -> {checkpoint.position})")
        async with self.transaction() as conn:
            await self._upsert(conn, entities)
            await self._set_meta(conn, CHECKPOINT_KEY, asdict(checkpoint))

    async def start_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        await self.set_meta(CHECKPOINT_KEY, asdict(checkpoint))

    async def finalize_sync(
        self,
        record: VersionRecord,
        *,
        removals: Sequence[str] = (),
        manifest_meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Apply removals, record the new version, append history, clear the checkpoint.

        All steps share one transaction; within it the order is version,
        history, then checkpoint.
        """
        async with self.transaction() as conn:
            if removals:
                await conn.executemany("DELETE FROM entities WHERE entity_id = ?", [(r,) for r in removals])
            await self._set_meta(conn, DATASET_VERSION_KEY, record.version)
            cursor = await conn.execute("SELECT value FROM metadata WHERE key = ?", (HISTORY_KEY,))
            row = await cursor.fetchone()
            history = json.loads(row["value"]) if row is not None else []
            history.append(asdict(record))
            await self._set_meta(conn, HISTORY_KEY, history)
            if manifest_meta is not None:
                await self._set_meta(conn, MANIFEST_META_KEY, manifest_meta)
            await conn.execute("DELETE FROM metadata WHERE key = ?", (CHECKPOINT_KEY,))
        logger.info("Sync finalized", version=record.version, removed=len(removals))
