"""Canonical serialization and content hashing."""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

HASH_FIELD = "hash"


def canonical_json(obj: Any) -> str:
    """Serialize with sorted keys and no insignificant whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_hash(record: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical record with its own ``hash`` field excluded."""
    body = {key: value for key, value in record.items() if key != HASH_FIELD}
    return sha256_hex(canonical_json(body).encode("utf-8"))


def verify_hash(record: Mapping[str, Any]) -> bool:
    return record.get(HASH_FIELD) == content_hash(record)
