"""Revision assignment, removals and manifest validation."""

from datetime import datetime, timezone

import pytest

from dexsync.dataset.builder import DatasetBuilder
from dexsync.dataset.hashing import verify_hash
from dexsync.dataset.manifest import Manifest, ManifestBuilder, SourceRegistry, pad_entity_id, payload_path
from dexsync.errors import ManifestValidationError

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def builder():
    return DatasetBuilder(clock=lambda: NOW)


@pytest.fixture
def manifest_builder():
    return ManifestBuilder(clock=lambda: NOW)


@pytest.mark.unit
def test_padding_and_paths():
    assert pad_entity_id(25) == "0025"
    assert pad_entity_id("1") == "0001"
    assert payload_path("0025", 4) == "species/0025/tidbits.v4.json"


@pytest.mark.unit
class TestManifestBuilder:
    def test_first_build_starts_at_revision_one(self, builder, manifest_builder, species_inputs):
        version = builder.build(species_inputs).version

        result = manifest_builder.build(version, SourceRegistry())

        assert result.manifest.revisions() == {"0001": 1, "0004": 1, "0025": 1}
        assert result.changed == ["0001", "0004", "0025"]
        assert result.removed == []
        entry = result.manifest.species["0025"]
        assert entry.tidbitFile == "species/0025/tidbits.v1.json"
        payload = result.payloads[entry.tidbitFile]
        assert payload["hash"] == entry.hash
        assert verify_hash(payload)
        assert result.manifest.datasetVersion == version.version_id
        assert result.registry.last_version == version.version_id

    def test_unchanged_entities_keep_revision(self, builder, manifest_builder, species_inputs):
        first = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry())

        second = manifest_builder.build(builder.build(species_inputs).version, first.registry)

        assert second.manifest.revisions() == first.manifest.revisions()
        assert second.changed == []
        assert second.payloads == {}
        assert second.manifest.species["0025"].hash == first.manifest.species["0025"].hash
        assert second.manifest.species["0025"].lastUpdated == first.manifest.species["0025"].lastUpdated

    def test_refetch_timestamps_do_not_bump_revision(self, builder, manifest_builder, species_inputs):
        species_inputs[25]["sources"] = {"dexapi": {"url": "https://dex/25", "fetchedAt": "2024-05-01T00:00:00Z"}}
        first = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry())
        species_inputs[25]["sources"] = {"dexapi": {"url": "https://dex/25", "fetchedAt": "2024-05-02T00:00:00Z"}}

        second = manifest_builder.build(builder.build(species_inputs).version, first.registry)

        assert second.changed == []
        assert second.manifest.revisions()["0025"] == 1

    def test_changed_entity_bumps_revision(self, builder, manifest_builder, species_inputs):
        first = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry())
        species_inputs[25]["catch_rate"] = 200

        second = manifest_builder.build(builder.build(species_inputs).version, first.registry)

        assert second.changed == ["0025"]
        assert second.manifest.revisions() == {"0001": 1, "0004": 1, "0025": 2}
        assert "species/0025/tidbits.v2.json" in second.payloads

    def test_missing_entity_is_removed_without_mutating_input(self, builder, manifest_builder, species_inputs):
        first = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry())
        del species_inputs[4]

        second = manifest_builder.build(builder.build(species_inputs).version, first.registry)

        assert second.removed == ["0004"]
        assert "0004" not in second.manifest.species
        assert second.registry.entries["0004"].removed
        assert not first.registry.entries["0004"].removed
        assert second.manifest.summary["removed"] == 1

    def test_reappearing_entity_gets_new_revision(self, builder, manifest_builder, species_inputs):
        registry = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry()).registry
        charmander = species_inputs.pop(4)
        registry = manifest_builder.build(builder.build(species_inputs).version, registry).registry
        species_inputs[4] = charmander

        result = manifest_builder.build(builder.build(species_inputs).version, registry)

        assert result.manifest.revisions()["0004"] == 2


@pytest.mark.unit
class TestSourceRegistry:
    def test_save_and_load(self, tmp_path, builder, manifest_builder, species_inputs):
        result = manifest_builder.build(builder.build(species_inputs).version, SourceRegistry(tmp_path / "reg.json"))

        result.registry.save()
        loaded = SourceRegistry.load(tmp_path / "reg.json")

        assert loaded.last_version == result.registry.last_version
        assert loaded.known_names() == {1: "Bulbasaur", 4: "Charmander", 25: "Pikachu"}
        assert loaded.entries["0025"].revision == 1

    def test_load_missing_is_empty(self, tmp_path):
        registry = SourceRegistry.load(tmp_path / "absent.json")

        assert registry.entries == {}
        assert registry.last_version is None

    def test_save_without_path(self):
        with pytest.raises(ValueError):
            SourceRegistry().save()


@pytest.mark.unit
class TestParseDocument:
    def test_valid_document(self):
        manifest = Manifest.parse_document(
            {
                "manifestVersion": "m1",
                "datasetVersion": "d1",
                "species": {"0025": {"tidbitRevision": 3, "tidbitFile": "species/0025/tidbits.v3.json"}},
                "extra": True,
            }
        )

        assert manifest.revisions() == {"0025": 3}

    @pytest.mark.parametrize(
        "document",
        [
            [],
            {"datasetVersion": "d1", "species": {}},
            {"manifestVersion": "m1", "datasetVersion": "d1", "species": []},
            {"manifestVersion": "m1", "datasetVersion": "d1", "species": {"0025": {"tidbitRevision": 0, "tidbitFile": "x"}}},
            {"manifestVersion": "m1", "datasetVersion": "d1", "species": {"0025": {"tidbitFile": "x"}}},
        ],
    )
    def test_invalid_documents(self, document):
        with pytest.raises(ManifestValidationError):
            Manifest.parse_document(document)
