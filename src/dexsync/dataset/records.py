"""
Canonical species record schema, normalization and the tidbit quality filter.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dexsync.dataset.hashing import content_hash, sha256_hex
from dexsync.errors import SchemaValidationError

logger = structlog.get_logger(__name__)

MAX_TIDBITS = 10
MAX_MOVES = 512

# Upper id bound of each region, in order.
_REGIONS: Tuple[Tuple[int, str], ...] = (
    (151, "Kanto"),
    (251, "Johto"),
    (386, "Hoenn"),
    (493, "Sinnoh"),
    (649, "Unova"),
    (721, "Kalos"),
    (809, "Alola"),
    (905, "Galar"),
)

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_MARKUP = re.compile(r"[<>]")
_WHITESPACE = re.compile(r"\s+")

# Fields where values from every source are combined instead of first-wins.
LIST_UNION_FIELDS = frozenset({"entries", "locations"})


class GenderRatio(BaseModel):
    model_config = ConfigDict(extra="forbid")

    male: float = Field(ge=0, le=100)
    female: float = Field(ge=0, le=100)


class Tidbit(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str = Field(min_length=1, max_length=100)
    body: str = Field(min_length=1, max_length=500)
    sourceRefs: List[str] = Field(default_factory=list, max_length=5)


class SourceRef(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    fetchedAt: Optional[str] = None


class SpeciesRecord(BaseModel):
    """Canonical record as published; ``hash`` is filled in after validation."""

    model_config = ConfigDict(extra="forbid")

    id: int = Field(ge=1, le=10000)
    name: str = Field(min_length=1, max_length=50)
    region: str
    types: List[str] = Field(min_length=1, max_length=2)
    height_m: float = Field(ge=0, le=20)
    weight_kg: float = Field(ge=0, le=10000)
    gender_ratio: Optional[GenderRatio] = None
    catch_rate: int = Field(ge=1, le=255)
    abilities: List[str] = Field(default_factory=list, max_length=10)
    locations: List[str] = Field(default_factory=list)
    moves: List[str] = Field(default_factory=list, max_length=MAX_MOVES)
    entries: List[str] = Field(default_factory=list)
    sources: Dict[str, SourceRef] = Field(default_factory=dict)
    tidbits: List[Tidbit] = Field(default_factory=list, max_length=MAX_TIDBITS)
    image: Dict[str, str] = Field(default_factory=lambda: {"base": "", "license": "unknown"})
    hash: Optional[str] = Field(default=None, pattern=r"^[a-f0-9]{64}$")


class TidbitSynthesizer(Protocol):
    """External text transform that distills raw fields into tidbits."""

    async def synthesize(self, entity_id: int, fields: Mapping[str, Any]) -> List[Mapping[str, Any]]: ...


def region_for(entity_id: int) -> str:
    for upper, region in _REGIONS:
        if entity_id <= upper:
            return region
    return "Paldea"


def _sanitize(text: Any) -> str:
    if not isinstance(text, str):
        return ""
    return _WHITESPACE.sub(" ", _MARKUP.sub("", text)).strip()


def _to_number(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _NUMBER.search(str(value))
    return float(match.group()) if match else default


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def tidbit_id(title: str, body: str) -> str:
    return sha256_hex(f"{title}\n{body}".encode("utf-8"))[:16]


def filter_tidbits(items: Iterable[Mapping[str, Any]], max_items: int = MAX_TIDBITS) -> List[Dict[str, Any]]:
    """
    Quality and safety boundary for synthesized tidbits.

    Strips markup, drops items with an empty or overlong title/body, keeps at
    most five source refs, removes duplicate titles and caps the list.
    """
    kept: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for item in items:
        title = _sanitize(item.get("title"))
        body = _sanitize(item.get("body"))
        if not title or not body or len(title) > 100 or len(body) > 500:
            logger.debug("Dropping tidbit", title=title[:40], reason="length")
            continue
        if title.lower() in seen:
            continue
        seen.add(title.lower())
        refs = [str(ref) for ref in _as_list(item.get("sourceRefs"))][:5]
        kept.append({"id": tidbit_id(title, body), "title": title, "body": body, "sourceRefs": refs})
        if len(kept) >= max_items:
            break
    return kept


def merge_source_fields(
    per_source: Sequence[Tuple[str, Mapping[str, Any], Optional[str], Optional[str]]],
) -> Dict[str, Any]:
    """
    Merge parsed fields for one entity from several sources.

    ``per_source`` holds ``(source, fields, url, fetched_at)`` tuples in
    priority order. Scalars and most lists take the first non-empty value;
    ``entries`` and ``locations`` are combined without duplicates.
    """
    merged: Dict[str, Any] = {}
    provenance: Dict[str, Dict[str, Optional[str]]] = {}
    for source, fields, url, fetched_at in per_source:
        if url:
            provenance[source] = {"url": url, "fetchedAt": fetched_at}
        for key, value in fields.items():
            if value in (None, "", [], {}):
                continue
            if key in LIST_UNION_FIELDS:
                existing = merged.setdefault(key, [])
                for item in _as_list(value):
                    if item not in existing:
                        existing.append(item)
            elif key not in merged:
                merged[key] = value
    merged["sources"] = provenance
    return merged


def normalize_record(entity_id: int, raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fill defaults for missing optional fields and validate bounds.

    Returns:
        The canonical record including its content ``hash``

    Raises:
        SchemaValidationError: required fields are missing or bounds are violated
    """
    name = _sanitize(raw.get("name"))
    if not name:
        raise SchemaValidationError(str(entity_id), ["name: required"])

    description = raw.get("description")
    entries = [_sanitize(e) for e in _as_list(raw.get("entries"))] or ([_sanitize(description)] if description else [])

    candidate: Dict[str, Any] = {
        "id": entity_id,
        "name": name,
        "region": raw.get("region") or region_for(entity_id),
        "types": [_sanitize(t).capitalize() for t in _as_list(raw.get("types")) if _sanitize(t)] or ["Normal"],
        "height_m": _to_number(raw.get("height_m"), 1.0),
        "weight_kg": _to_number(raw.get("weight_kg"), 10.0),
        "gender_ratio": raw.get("gender_ratio", {"male": 50.0, "female": 50.0}),
        "catch_rate": int(_to_number(raw.get("catch_rate"), 45)),
        "abilities": [_sanitize(a) for a in _as_list(raw.get("abilities")) if _sanitize(a)],
        "locations": [_sanitize(loc) for loc in _as_list(raw.get("locations")) if _sanitize(loc)],
        "moves": [_sanitize(m) for m in _as_list(raw.get("moves")) if _sanitize(m)],
        "entries": [e for e in entries if e],
        "sources": raw.get("sources") or {},
        "tidbits": list(raw.get("tidbits") or []),
        "image": raw.get("image") or {"base": "", "license": "unknown"},
    }

    try:
        model = SpeciesRecord.model_validate(candidate)
    except ValidationError as e:
        reasons = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise SchemaValidationError(str(entity_id), reasons) from e

    record = model.model_dump(mode="json", exclude={"hash"})
    record["hash"] = content_hash(record)
    return record
