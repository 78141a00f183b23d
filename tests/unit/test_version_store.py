"""Version comparison, history and lazy local-data migrations."""

import pytest
import pytest_asyncio

from dexsync.client.local_store import SCHEMA_VERSION_KEY, LocalStore, StoredEntity, SyncCheckpoint
from dexsync.client.version_store import VersionStore, compare_versions
from dexsync.errors import MigrationError


@pytest_asyncio.fixture
async def store(tmp_path):
    async with LocalStore(tmp_path / "client.db") as s:
        yield s


async def seed(store):
    await store.commit_batch(
        [StoredEntity("0001", 1, {"name": "Bulbasaur"}, "h1")],
        SyncCheckpoint(manifest_version="m", dataset_version="d", position=1, total=1),
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    "a, b, expected",
    [
        ("1.0", "1.0.0", 0),
        ("1.2", "1.10", -1),
        ("2.0", "1.9.9", 1),
        ("20240501-120000", "20240501-120001", -1),
        ("1.0-beta", "1.0-alpha", 1),
        ("1.0.1", "1.0-rc", -1),
    ],
)
def test_compare_versions(a, b, expected):
    assert compare_versions(a, b) == expected
    assert compare_versions(b, a) == -expected


@pytest.mark.unit
class TestVersionStore:
    @pytest.mark.asyncio
    async def test_fresh_store_is_stamped_without_hooks(self, store):
        calls = []
        versions = VersionStore(store, "2.0")

        async def hook(s):
            calls.append("ran")

        versions.register_migration("1.0", "2.0", hook)

        assert await versions.ensure_current() == []
        assert calls == []
        assert await store.get_meta(SCHEMA_VERSION_KEY) == "2.0"

    @pytest.mark.asyncio
    async def test_legacy_data_runs_chained_migrations_once(self, store):
        await seed(store)
        calls = []
        versions = VersionStore(store, "3.0")

        async def to_two(s):
            calls.append("1->2")
            rows = [e async for e in s.iter_entities()]
            for row in rows:
                row.payload["region"] = "Kanto"
            await s.replace_entities(rows)

        async def to_three(s):
            calls.append("2->3")

        versions.register_migration("2.0", "3.0", to_three)
        versions.register_migration("1.0", "2.0", to_two)

        assert await versions.ensure_current() == ["2.0", "3.0"]
        assert await versions.ensure_current() == []
        assert calls == ["1->2", "2->3"]
        assert await versions.stored_schema_version() == "3.0"
        assert (await store.get_entity("0001"))["region"] == "Kanto"

    @pytest.mark.asyncio
    async def test_missing_migration_path(self, store):
        await seed(store)
        await store.set_meta(SCHEMA_VERSION_KEY, "1.5")
        versions = VersionStore(store, "2.0")

        with pytest.raises(MigrationError):
            await versions.ensure_current()

    @pytest.mark.asyncio
    async def test_failed_hook_keeps_last_completed_step(self, store):
        await seed(store)
        versions = VersionStore(store, "3.0")

        async def ok(s):
            pass

        async def broken(s):
            raise RuntimeError("hook failed")

        versions.register_migration("1.0", "2.0", ok)
        versions.register_migration("2.0", "3.0", broken)

        with pytest.raises(RuntimeError):
            await versions.ensure_current()

        assert await versions.stored_schema_version() == "2.0"

    @pytest.mark.asyncio
    async def test_newer_stored_schema_is_left_alone(self, store):
        await store.set_meta(SCHEMA_VERSION_KEY, "9.0")

        assert await VersionStore(store, "2.0").ensure_current() == []
        assert await store.get_meta(SCHEMA_VERSION_KEY) == "9.0"

    @pytest.mark.asyncio
    async def test_backward_migration_rejected(self, store):
        async def hook(s):
            pass

        with pytest.raises(ValueError):
            VersionStore(store, "2.0").register_migration("2.0", "1.0", hook)

    @pytest.mark.asyncio
    async def test_duplicate_migration_rejected(self, store):
        async def hook(s):
            pass

        versions = VersionStore(store, "3.0")
        versions.register_migration("1.0", "2.0", hook)

        with pytest.raises(ValueError):
            versions.register_migration("1.0", "2.0", hook)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target, expected_calls", [("2.0", ["1->2"]), ("3.0", ["1->3"])])
    async def test_hooks_from_same_version_are_kept_apart(self, store, target, expected_calls):
        await seed(store)
        calls = []
        versions = VersionStore(store, target)

        async def to_two(s):
            calls.append("1->2")

        async def to_three(s):
            calls.append("1->3")

        versions.register_migration("1.0", "2.0", to_two)
        versions.register_migration("1.0", "3.0", to_three)

        assert await versions.ensure_current() == [target]
        assert calls == expected_calls
        assert await versions.stored_schema_version() == target

    @pytest.mark.asyncio
    async def test_commit_appends_history(self, store):
        versions = VersionStore(store, "2.0")

        await versions.commit("20240501-120000", metadata={"updated": 3})
        await versions.commit("20240502-120000")

        assert await versions.current_version() == "20240502-120000"
        history = await versions.history()
        assert [h.version for h in history] == ["20240501-120000", "20240502-120000"]
        assert history[0].metadata == {"updated": 3}
