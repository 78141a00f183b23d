"""Record normalization, tidbit filtering and dataset builds."""

import json
from datetime import datetime, timezone

import pytest

from dexsync.config import DatasetConfig
from dexsync.dataset.builder import DatasetBuilder
from dexsync.dataset.hashing import verify_hash
from dexsync.dataset.records import filter_tidbits, merge_source_fields, normalize_record, region_for
from dexsync.errors import SchemaValidationError

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestNormalizeRecord:
    def test_defaults_fill_missing_fields(self):
        record = normalize_record(152, {"name": "Chikorita"})

        assert record["region"] == "Johto"
        assert record["types"] == ["Normal"]
        assert record["height_m"] == 1.0
        assert record["weight_kg"] == 10.0
        assert record["catch_rate"] == 45
        assert record["gender_ratio"] == {"male": 50.0, "female": 50.0}
        assert record["image"] == {"base": "", "license": "unknown"}
        assert verify_hash(record)

    def test_numbers_are_extracted_from_text(self, species_inputs):
        record = normalize_record(1, species_inputs[1])

        assert record["height_m"] == 0.7
        assert record["types"] == ["Grass", "Poison"]

    def test_markup_is_stripped(self):
        record = normalize_record(25, {"name": "<b>Pikachu</b>", "entries": ["  It  <i>sparks</i> "]})

        assert record["name"] == "bPikachu/b"
        assert record["entries"] == ["It isparks/i"]

    def test_missing_name_rejects(self):
        with pytest.raises(SchemaValidationError) as exc_info:
            normalize_record(7, {"types": ["water"]})

        assert exc_info.value.record_id == "7"

    def test_out_of_bounds_rejects(self):
        with pytest.raises(SchemaValidationError) as exc_info:
            normalize_record(7, {"name": "Squirtle", "catch_rate": 999})

        assert any(reason.startswith("catch_rate") for reason in exc_info.value.reasons)

    def test_too_many_types_rejects(self):
        with pytest.raises(SchemaValidationError):
            normalize_record(7, {"name": "Squirtle", "types": ["water", "ice", "steel"]})

    @pytest.mark.parametrize("entity_id, region", [(1, "Kanto"), (151, "Kanto"), (152, "Johto"), (906, "Paldea")])
    def test_region_bounds(self, entity_id, region):
        assert region_for(entity_id) == region


@pytest.mark.unit
class TestFilterTidbits:
    def test_drops_empty_overlong_and_duplicate(self):
        kept = filter_tidbits(
            [
                {"title": "Spark", "body": "Stores electricity."},
                {"title": "spark", "body": "Duplicate title."},
                {"title": "", "body": "No title."},
                {"title": "Long", "body": "x" * 501},
                {"title": "<b>Bold</b>", "body": "Markup removed.", "sourceRefs": list("abcdefg")},
            ]
        )

        assert [t["title"] for t in kept] == ["Spark", "bBold/b"]
        assert len(kept[1]["sourceRefs"]) == 5
        assert all(len(t["id"]) == 16 for t in kept)

    def test_caps_count(self):
        items = [{"title": f"T{i}", "body": "b"} for i in range(20)]

        assert len(filter_tidbits(items, max_items=3)) == 3


@pytest.mark.unit
def test_merge_prefers_priority_and_unions_lists():
    merged = merge_source_fields(
        [
            ("dexapi", {"name": "Pikachu", "entries": ["A"], "types": ["electric"]}, "https://a/25", "t1"),
            ("wiki", {"name": "Pika", "entries": ["A", "B"], "abilities": ["Static"]}, "https://w/Pikachu", "t2"),
        ]
    )

    assert merged["name"] == "Pikachu"
    assert merged["entries"] == ["A", "B"]
    assert merged["abilities"] == ["Static"]
    assert set(merged["sources"]) == {"dexapi", "wiki"}


@pytest.mark.unit
class TestDatasetBuilder:
    def test_build_accepts_and_rejects(self, species_inputs):
        inputs = dict(species_inputs)
        inputs[7] = {"types": ["water"]}
        builder = DatasetBuilder(clock=lambda: NOW)

        result = builder.build(inputs)

        assert result.ok
        assert sorted(result.version.records) == ["1", "25", "4"]
        assert [r.record_id for r in result.rejected] == ["7"]
        assert result.version.metadata["totalSpecies"] == 3
        assert result.version.metadata["totalTidbits"] == 1
        assert result.version.index["25"]["name"] == "Pikachu"

    def test_version_ids_strictly_increase(self, species_inputs):
        builder = DatasetBuilder(clock=lambda: NOW)

        first = builder.build(species_inputs).version.version_id
        second = builder.build(species_inputs).version.version_id

        assert first == "20240501-120000"
        assert second == "20240501-120001"

    def test_seeded_last_version_is_respected(self):
        builder = DatasetBuilder(clock=lambda: NOW, last_version="20240601-000000")

        assert builder.next_version_id() == "20240601-000001"

    def test_record_hashes_are_stable_across_builds(self, species_inputs):
        a = DatasetBuilder(clock=lambda: NOW).build(species_inputs).version
        b = DatasetBuilder(clock=lambda: NOW).build(species_inputs).version

        assert a.dataset_hash == b.dataset_hash
        assert {k: r["hash"] for k, r in a.records.items()} == {k: r["hash"] for k, r in b.records.items()}

    def test_version_is_immutable(self, species_inputs):
        version = DatasetBuilder(clock=lambda: NOW).build(species_inputs).version

        with pytest.raises(TypeError):
            version.records["25"]["name"] = "Raichu"

    def test_write_layout(self, tmp_path, species_inputs):
        builder = DatasetBuilder(DatasetConfig(output_dir=tmp_path), clock=lambda: NOW)
        version = builder.build(species_inputs).version

        root = builder.write(version)

        assert root == tmp_path / "v20240501-120000"
        index = json.loads((root / "species" / "index.json").read_text())
        assert sorted(index["species"]) == ["1", "25", "4"]
        record = json.loads((root / "species" / "25.json").read_text())
        assert verify_hash(record)
        metadata = json.loads((root / "metadata.json").read_text())
        assert metadata["datasetHash"] == version.dataset_hash
