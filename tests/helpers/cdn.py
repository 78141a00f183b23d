"""
Builders for manifest and payload documents served by a mocked CDN.
"""

from typing import Dict, Optional, Tuple

from dexsync.dataset.hashing import content_hash
from dexsync.dataset.manifest import payload_path

CDN_BASE = "https://cdn.example.com"
MANIFEST_URL = f"{CDN_BASE}/tidbit_manifest.json"


def make_payload(entity_id: str, revision: int, name: Optional[str] = None) -> Dict:
    payload = {
        "speciesId": entity_id,
        "tidbitRevision": revision,
        "record": {"id": int(entity_id), "name": name or f"Species {entity_id}"},
        "tidbits": [{"id": f"t{entity_id}{revision}", "title": "Fact", "body": f"Revision {revision}", "sourceRefs": []}],
    }
    payload["hash"] = content_hash(payload)
    return payload


def make_manifest(
    revisions: Dict[str, int],
    *,
    manifest_version: str = "2024-05-01T12:00:00Z",
    dataset_version: str = "20240501-120000",
) -> Tuple[Dict, Dict[str, Dict]]:
    """Return ``(manifest_document, {url: payload})`` for the given revisions."""
    species = {}
    payloads = {}
    for entity_id, revision in sorted(revisions.items()):
        payload = make_payload(entity_id, revision)
        path = payload_path(entity_id, revision)
        species[entity_id] = {"tidbitRevision": revision, "tidbitFile": path, "hash": payload["hash"]}
        payloads[f"{CDN_BASE}/{path}"] = payload
    document = {
        "manifestVersion": manifest_version,
        "datasetVersion": dataset_version,
        "summary": {"totalSpecies": len(species)},
        "species": species,
    }
    return document, payloads
