"""
Source parser capability and registry.

A parser knows how to address an entity on its source and how to turn the
fetched payload into canonical record fields. Parsers are selected by name
from a :class:`ParserRegistry`; the built-in parsers are configured entirely
from :class:`SourceConfig`, so adding a source is a configuration change.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import structlog
from selectolax.lexbor import LexborHTMLParser

from dexsync.config.config import SourceConfig
from dexsync.errors import ParserError, UnknownSourceError

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_PLACEHOLDER = re.compile(r"{(\w+)}")


@runtime_checkable
class SourceParser(Protocol):
    """Capability interface for one crawl source."""

    name: str

    def build_url(self, entity_id: int, name: Optional[str] = None) -> Optional[str]:
        """Return the page URL for an entity, or None if it cannot be addressed yet."""
        ...

    def parse(self, payload: bytes) -> Dict[str, Any]:
        """Extract canonical fields from a fetched payload."""
        ...


def _clean(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


class _TemplateUrlMixin:
    name: str
    config: SourceConfig

    def requires_name(self) -> bool:
        return "name" in _PLACEHOLDER.findall(self.config.url_template)

    def build_url(self, entity_id: int, name: Optional[str] = None) -> Optional[str]:
        if self.requires_name() and not name:
            return None
        slug = quote(name.replace(" ", "_")) if name else ""
        return self.config.url_template.format(
            base_url=self.config.base_url.rstrip("/"),
            id=entity_id,
            padded_id=f"{entity_id:03d}",
            name=slug,
        )


def _split_field(field_name: str) -> tuple[str, bool]:
    if field_name.endswith("[]"):
        return field_name[:-2], True
    return field_name, False


class HtmlSelectorParser(_TemplateUrlMixin):
    """Extract fields from HTML with CSS selectors (selectolax)."""

    def __init__(self, name: str, config: SourceConfig) -> None:
        self.name = name
        self.config = config

    def parse(self, payload: bytes) -> Dict[str, Any]:
        try:
            tree = LexborHTMLParser(payload.decode("utf-8", errors="replace"))
        except (ValueError, TypeError) as e:
            raise ParserError(f"{self.name}: unparseable HTML: {e}") from e

        fields: Dict[str, Any] = {}
        for raw_field, selector in self.config.fields.items():
            field_name, many = _split_field(raw_field)
            if many:
                values = [_clean(node.text()) for node in tree.css(selector)]
                values = list(dict.fromkeys(v for v in values if v))
                if values:
                    fields[field_name] = values
            else:
                node = tree.css_first(selector)
                if node is not None and _clean(node.text()):
                    fields[field_name] = _clean(node.text())
        if not fields:
            raise ParserError(f"{self.name}: no configured fields matched")
        return fields


def _lookup(data: Any, dotted: str) -> Any:
    current = data
    for part in dotted.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        elif isinstance(current, list):
            current = [item.get(part) if isinstance(item, Mapping) else None for item in current]
        else:
            return None
    return current


class JsonFieldParser(_TemplateUrlMixin):
    """Extract fields from JSON APIs with dotted paths (``types.type.name``)."""

    def __init__(self, name: str, config: SourceConfig) -> None:
        self.name = name
        self.config = config

    def parse(self, payload: bytes) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ParserError(f"{self.name}: invalid JSON: {e}") from e

        fields: Dict[str, Any] = {}
        for raw_field, path in self.config.fields.items():
            field_name, many = _split_field(raw_field)
            value = _lookup(data, path)
            if value is None:
                continue
            if many:
                items = value if isinstance(value, list) else [value]
                fields[field_name] = [item for item in items if item is not None]
            else:
                fields[field_name] = value
        return fields


_PARSER_KINDS = {"html": HtmlSelectorParser, "json": JsonFieldParser}


class ParserRegistry:
    """Maps source names to parser capabilities."""

    def __init__(self) -> None:
        self._parsers: Dict[str, SourceParser] = {}

    def register(self, parser: SourceParser) -> None:
        if not isinstance(parser, SourceParser):
            raise TypeError(f"{parser!r} does not implement build_url/parse")
        self._parsers[parser.name] = parser
        logger.debug("Registered parser", source=parser.name, kind=type(parser).__name__)

    def get(self, source: str) -> SourceParser:
        try:
            return self._parsers[source]
        except KeyError:
            raise UnknownSourceError(f"No parser registered for source '{source}'") from None

    def names(self) -> List[str]:
        return list(self._parsers)

    def __contains__(self, source: str) -> bool:
        return source in self._parsers

    @classmethod
    def from_config(cls, sources: Mapping[str, SourceConfig], only: Optional[Iterable[str]] = None) -> ParserRegistry:
        registry = cls()
        wanted = set(only) if only is not None else None
        for name, source in sources.items():
            if not source.enabled or (wanted is not None and name not in wanted):
                continue
            registry.register(_PARSER_KINDS[source.parser](name, source))
        return registry
