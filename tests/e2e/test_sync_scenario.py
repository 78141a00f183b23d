"""
End-to-end sync scenarios: a client following a CDN across dataset
versions, first from hand-built manifests and then from what the server
pipeline actually publishes.
"""

import json
import re

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import CallbackResult, aioresponses
from yarl import URL

from dexsync.client import LocalStore, SyncClient, SyncStatus
from dexsync.container import DependencyContainer
from tests.helpers.cdn import CDN_BASE, MANIFEST_URL, make_manifest
from tests.helpers.sources import mock_sources


def fetched(mocked, url):
    return len(mocked.requests.get(("GET", URL(url)), []))


def serve(mocked, document, payloads):
    mocked.get(MANIFEST_URL, status=200, body=json.dumps(document))
    for url, payload in payloads.items():
        mocked.get(url, status=200, body=json.dumps(payload))


@pytest_asyncio.fixture
async def client(config):
    async with aiohttp.ClientSession() as session:
        async with SyncClient(config.sync, LocalStore(config.sync.db_path), session=session) as c:
            yield c


@pytest.mark.e2e
class TestRevisionBump:
    @pytest.mark.asyncio
    async def test_only_bumped_entity_is_fetched(self, client):
        v1, v1_payloads = make_manifest({"0001": 1, "0004": 2, "0025": 3})
        v2, v2_payloads = make_manifest(
            {"0001": 1, "0004": 2, "0025": 4},
            manifest_version="2024-05-02T12:00:00Z",
            dataset_version="20240502-120000",
        )

        with aioresponses() as m:
            serve(m, v1, v1_payloads)
            first = await client.sync()
        assert first.status is SyncStatus.COMPLETED
        bulbasaur = await client.store.get_entity("0001")

        with aioresponses() as m:
            serve(m, v2, v2_payloads)
            second = await client.sync()

            assert fetched(m, f"{CDN_BASE}/species/0025/tidbits.v4.json") == 1
            assert fetched(m, f"{CDN_BASE}/species/0001/tidbits.v1.json") == 0
            assert fetched(m, f"{CDN_BASE}/species/0004/tidbits.v2.json") == 0

        assert second.status is SyncStatus.COMPLETED
        assert second.previous_version == "20240501-120000"
        assert second.dataset_version == "20240502-120000"
        assert second.updated == ["0025"]
        assert await client.store.get_revisions() == {"0001": 1, "0004": 2, "0025": 4}
        assert await client.store.get_entity("0001") == bulbasaur
        assert await client.versions.current_version() == "20240502-120000"
        assert len(await client.versions.history()) == 2


def local_cdn(root):
    """aioresponses callback serving files from a local publish directory."""

    def callback(url, **kwargs):
        path = root / url.path.lstrip("/")
        if not path.is_file():
            return CallbackResult(status=404, body="not found")
        return CallbackResult(status=200, body=path.read_text(encoding="utf-8"))

    return callback


async def publish(config, catch_rates=None):
    with aioresponses() as m:
        mock_sources(m, catch_rates)
        async with DependencyContainer(config=config).lifecycle() as container:
            pipeline = await container.get_pipeline()
            result = await pipeline.run()
    assert result.ok, result.errors
    return result


@pytest.mark.e2e
class TestPublishThenSync:
    @pytest.mark.asyncio
    async def test_client_follows_published_versions(self, config):
        cdn_pattern = re.compile(r"^https://cdn\.example\.com/.*$")
        first = await publish(config)

        async with DependencyContainer(config=config).lifecycle() as container:
            client = await container.get_sync_client()

            with aioresponses() as m:
                m.get(cdn_pattern, callback=local_cdn(config.publisher.local_root), repeat=True)
                initial = await client.sync()

            assert initial.status is SyncStatus.COMPLETED
            assert initial.updated == ["0001", "0004", "0025"]
            assert initial.dataset_version == first.build.version.version_id
            pikachu = await client.store.get_entity("0025")
            assert pikachu["record"]["catch_rate"] == 190

        second = await publish(config, catch_rates={25: 200})

        async with DependencyContainer(config=config).lifecycle() as container:
            client = await container.get_sync_client()

            with aioresponses() as m:
                m.get(cdn_pattern, callback=local_cdn(config.publisher.local_root), repeat=True)
                update = await client.sync()

                assert fetched(m, f"{CDN_BASE}/species/0025/tidbits.v2.json") == 1
                assert fetched(m, f"{CDN_BASE}/species/0001/tidbits.v1.json") == 0

            assert update.status is SyncStatus.COMPLETED
            assert update.updated == ["0025"]
            assert update.dataset_version == second.build.version.version_id
            assert await client.store.get_revisions() == {"0001": 1, "0004": 1, "0025": 2}
            assert (await client.store.get_entity("0025"))["record"]["catch_rate"] == 200
            assert len(await client.versions.history()) == 2
