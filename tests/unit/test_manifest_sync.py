"""Sync plan diffing and manifest fetching."""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from yarl import URL

from dexsync.client.manifest_sync import ManifestSync, abortable_sleep, compute_sync_plan
from dexsync.errors import ManifestValidationError, NetworkError, SyncAborted
from tests.helpers.cdn import MANIFEST_URL, make_manifest

revision_maps = st.dictionaries(
    st.integers(min_value=1, max_value=60).map(lambda i: f"{i:04d}"), st.integers(min_value=1, max_value=5), max_size=30
)


@pytest.mark.unit
class TestComputeSyncPlan:
    def test_only_changed_revisions_are_updated(self):
        plan = compute_sync_plan({"0001": 1, "0004": 2, "0025": 3}, {"0001": 1, "0004": 2, "0025": 4})

        assert plan.updates == ["0025"]
        assert plan.removals == []
        assert plan.unchanged == 2

    def test_new_and_removed_entities(self):
        plan = compute_sync_plan({"0001": 1, "0007": 1}, {"0001": 1, "0150": 1})

        assert plan.updates == ["0150"]
        assert plan.removals == ["0007"]

    def test_lower_revision_is_still_a_change(self):
        assert compute_sync_plan({"0001": 3}, {"0001": 2}).updates == ["0001"]

    def test_force_refetches_everything(self):
        plan = compute_sync_plan({"0001": 1, "0002": 1}, {"0001": 1, "0002": 1}, force=True)

        assert plan.updates == ["0001", "0002"]
        assert plan.unchanged == 0

    def test_empty_plan(self):
        assert compute_sync_plan({"0001": 1}, {"0001": 1}).is_empty

    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(stored=revision_maps, advertised=revision_maps)
    def test_applying_plan_converges_to_manifest(self, stored, advertised):
        plan = compute_sync_plan(stored, advertised)

        local = dict(stored)
        for entity_id in plan.removals:
            del local[entity_id]
        for entity_id in plan.updates:
            local[entity_id] = advertised[entity_id]

        assert local == advertised
        assert compute_sync_plan(local, advertised).is_empty
        assert set(plan.updates).isdisjoint(plan.removals)


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as s:
        yield s


def sent_headers(mocked, index=0):
    return mocked.requests[("GET", URL(MANIFEST_URL))][index].kwargs["headers"]


@pytest.mark.unit
class TestManifestSync:
    @pytest.mark.asyncio
    async def test_fetch_validates_and_returns_etag(self, config, session):
        document, _ = make_manifest({"0001": 1, "0025": 3})
        with aioresponses() as m:
            m.get(MANIFEST_URL, status=200, body=json.dumps(document), headers={"ETag": '"v1"'})

            fetched = await ManifestSync(config.sync, session).fetch_manifest()

        assert fetched.manifest.revisions() == {"0001": 1, "0025": 3}
        assert fetched.etag == '"v1"'
        assert not fetched.not_modified

    @pytest.mark.asyncio
    async def test_conditional_fetch_not_modified(self, config, session):
        with aioresponses() as m:
            m.get(MANIFEST_URL, status=304)

            fetched = await ManifestSync(config.sync, session).fetch_manifest(etag='"v1"')

            assert sent_headers(m)["If-None-Match"] == '"v1"'
        assert fetched.not_modified
        assert fetched.manifest is None

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, config, session):
        document, _ = make_manifest({"0001": 1})
        with aioresponses() as m:
            m.get(MANIFEST_URL, status=503)
            m.get(MANIFEST_URL, exception=aiohttp.ClientConnectionError("reset"))
            m.get(MANIFEST_URL, status=200, body=json.dumps(document))

            fetched = await ManifestSync(config.sync, session).fetch_manifest()

        assert fetched.manifest.datasetVersion == "20240501-120000"

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, config, session):
        with aioresponses() as m:
            m.get(MANIFEST_URL, status=500, repeat=True)

            with pytest.raises(NetworkError):
                await ManifestSync(config.sync, session).fetch_manifest()

            assert len(m.requests[("GET", URL(MANIFEST_URL))]) == config.sync.max_attempts

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["not json", json.dumps({"datasetVersion": "x", "species": {}})])
    async def test_invalid_manifest_is_not_retried(self, config, session, body):
        with aioresponses() as m:
            m.get(MANIFEST_URL, status=200, body=body, repeat=True)

            with pytest.raises(ManifestValidationError):
                await ManifestSync(config.sync, session).fetch_manifest()

            assert len(m.requests[("GET", URL(MANIFEST_URL))]) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_abortable_sleep_raises_when_aborted():
    event = asyncio.Event()
    sleep = abortable_sleep(event)

    await sleep(0)
    asyncio.get_running_loop().call_later(0.01, event.set)

    with pytest.raises(SyncAborted):
        await sleep(10)
