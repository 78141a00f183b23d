"""
Test configuration for DexSync.

Provides a controllable clock, isolated configuration rooted in a temporary
directory, and sample crawl inputs shared across the unit, integration and
e2e suites.
"""

import asyncio
from pathlib import Path
from typing import AsyncGenerator, Dict, List

import pytest
import pytest_asyncio

from dexsync.config import Config, SourceConfig

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "e2e: End-to-end sync scenarios")


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """Cancel any task a test left running so one test cannot hang the next."""
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Time
# ============================================================================


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Configuration
# ============================================================================

SOURCE_BASE = "https://dex.example.com"
CDN_BASE = "https://cdn.example.com"


@pytest.fixture
def test_sources() -> Dict[str, SourceConfig]:
    """An id-addressed JSON source and a name-addressed HTML source."""
    return {
        "dexapi": SourceConfig(
            base_url=SOURCE_BASE,
            url_template="{base_url}/api/species/{id}",
            parser="json",
            fields={
                "name": "name",
                "types[]": "types",
                "height_m": "height",
                "weight_kg": "weight",
                "catch_rate": "capture.rate",
                "entries[]": "flavor",
            },
            priority=10,
        ),
        "wiki": SourceConfig(
            base_url="https://wiki.example.com",
            url_template="{base_url}/wiki/{name}",
            parser="html",
            fields={"abilities[]": "ul.abilities li", "locations[]": "ul.locations li"},
            priority=20,
        ),
    }


@pytest.fixture
def config(tmp_path: Path, test_sources) -> Config:
    """Configuration with every path under ``tmp_path`` and no real waits."""
    return Config.model_validate(
        {
            "crawler": {
                "retry": {"max_retries": 2, "base_delay": 0.0, "max_delay": 0.0},
                "respect_robots": True,
                "batch_concurrency": 3,
            },
            "sources": {name: source.model_dump() for name, source in test_sources.items()},
            "dataset": {
                "output_dir": str(tmp_path / "dataset"),
                "registry_path": str(tmp_path / "registry.json"),
            },
            "publisher": {"provider": "local", "local_root": str(tmp_path / "cdn")},
            "sync": {
                "cdn_base_url": CDN_BASE,
                "db_path": str(tmp_path / "client.db"),
                "batch_size": 2,
                "concurrency": 2,
                "retry_delay": 0.0,
            },
            "schedule": {"entity_ids": [1, 4, 25]},
        }
    )


# ============================================================================
# Sample data
# ============================================================================


@pytest.fixture
def species_inputs() -> Dict[int, Dict]:
    """Merged per-entity fields as the crawler would hand them to the builder."""
    return {
        1: {
            "name": "Bulbasaur",
            "types": ["grass", "poison"],
            "height_m": "0.7 m",
            "weight_kg": 6.9,
            "catch_rate": 45,
            "abilities": ["Overgrow"],
            "entries": ["A strange seed was planted on its back at birth."],
            "tidbits": [{"title": "Seed", "body": "The seed on its back grows with it.", "sourceRefs": ["dexapi"]}],
        },
        4: {
            "name": "Charmander",
            "types": ["fire"],
            "height_m": 0.6,
            "weight_kg": 8.5,
            "catch_rate": 45,
            "entries": ["The flame on its tail shows its life force."],
        },
        25: {
            "name": "Pikachu",
            "types": ["electric"],
            "height_m": 0.4,
            "weight_kg": 6.0,
            "catch_rate": 190,
            "locations": ["Viridian Forest"],
            "entries": ["It stores electricity in its cheeks."],
        },
    }
