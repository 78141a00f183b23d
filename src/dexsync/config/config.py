"""
Configuration management for DexSync using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "InfinitePokedexBot/1.0 (+https://github.com/infinite-pokedex)"

# --- Nested Configuration Models ---


class RateLimitConfig(BaseModel):
    """Token bucket and rolling window limits for one source."""

    requests_per_second: float = Field(default=10.0, gt=0)
    requests_per_minute: int = Field(default=1000, ge=1)
    burst_limit: int = Field(default=50, ge=1)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0, description="Retries after the initial attempt.")
    base_delay: float = Field(default=1.0, ge=0, description="Backoff for the first retry in seconds.")
    max_delay: float = Field(default=30.0, ge=0, description="Upper bound for a single backoff delay.")
    retryable_status_codes: List[int] = Field(default_factory=lambda: [408, 429, 500, 502, 503, 504])


class CacheConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    max_entries: int = Field(default=5000, ge=1)


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    reset_timeout_seconds: float = Field(default=60.0, gt=0)


class SourceConfig(BaseModel):
    """
    Data-driven description of a crawl source.

    ``url_template`` accepts ``{id}``, ``{padded_id}`` and ``{name}``
    placeholders. ``fields`` maps canonical field names to CSS selectors
    (html parser) or dotted paths (json parser). A trailing ``[]`` on a
    field name collects every match into a list.
    """

    base_url: str
    url_template: str
    parser: Literal["html", "json"] = "html"
    fields: Dict[str, str] = Field(default_factory=dict)
    priority: int = Field(default=100, description="Lower values win when merging fields.")
    enabled: bool = True
    rate_limit: Optional[RateLimitConfig] = None


def _default_sources() -> Dict[str, SourceConfig]:
    return {
        "bulbapedia": SourceConfig(
            base_url="https://bulbapedia.bulbagarden.net",
            url_template="{base_url}/wiki/{name}_(Pok%C3%A9mon)",
            fields={
                "name": "h1#firstHeading",
                "types[]": "table.roundy a[title$='(type)'] span b",
                "abilities[]": "table.roundy a[title$='(Ability)'] span",
                "entries[]": "table.roundy td.roundy[style] span",
            },
            priority=10,
            rate_limit=RateLimitConfig(requests_per_second=1, requests_per_minute=60, burst_limit=5),
        ),
        "serebii": SourceConfig(
            base_url="https://www.serebii.net",
            url_template="{base_url}/pokedex/{padded_id}.shtml",
            fields={
                "name": "td.fooinfo b",
                "entries[]": "td.fooleft",
                "locations[]": "td.fooinfo a[href*='pokearth']",
            },
            priority=20,
            rate_limit=RateLimitConfig(requests_per_second=2, requests_per_minute=120, burst_limit=10),
        ),
        "smogon": SourceConfig(
            base_url="https://www.smogon.com",
            url_template="{base_url}/dex/sv/pokemon/{name}/",
            fields={"moves[]": "div.MoveList a.MoveLink"},
            priority=30,
            rate_limit=RateLimitConfig(requests_per_second=1, requests_per_minute=60, burst_limit=5),
        ),
    }


class CrawlerConfig(BaseModel):
    """Crawler configuration."""

    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent string for HTTP requests.")
    timeout: float = Field(default=30.0, description="HTTP request timeout in seconds.")
    respect_robots: bool = Field(default=True, description="Whether to respect robots.txt.")
    robots_cache_ttl_seconds: float = Field(default=24 * 60 * 60, description="Lifetime of cached robots.txt rules.")
    batch_concurrency: int = Field(default=5, ge=1, description="Targets crawled concurrently per window.")
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)


class DatasetConfig(BaseModel):
    """Where builds land and where per-entity revisions are tracked."""

    output_dir: Path = Field(default=Path("./data/dataset"))
    registry_path: Path = Field(default=Path("./data/source_registry.json"))
    max_tidbits_per_entity: int = Field(default=10, ge=0, le=10)


class PublisherConfig(BaseModel):
    provider: Literal["local", "http"] = "local"
    local_root: Path = Field(default=Path("./data/cdn"))
    base_url: str = Field(default="http://localhost:8080/cdn", description="Bucket URL for the http provider.")
    upload_concurrency: int = Field(default=5, ge=1)
    upload_retries: int = Field(default=3, ge=1)
    upload_timeout: float = Field(default=30.0, gt=0)
    health_check_sample_size: int = Field(default=3, ge=0)
    immutable_cache_control: str = "public, max-age=31536000, immutable"
    alias_cache_control: str = "public, max-age=60, must-revalidate"


class SyncConfig(BaseModel):
    """Client-side synchronization settings."""

    cdn_base_url: str = "http://localhost:8080/cdn"
    manifest_path: str = "tidbit_manifest.json"
    db_path: Path = Field(default=Path("./data/client.db"))
    batch_size: int = Field(default=25, ge=1)
    concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.2, ge=0, description="Linear delay multiplier between attempts.")
    timeout: float = Field(default=30.0, gt=0)
    schema_version: str = "2.0"

    @field_validator("cdn_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class ScheduleConfig(BaseModel):
    refresh_interval_hours: float = Field(default=24.0, gt=0)
    entity_ids: List[int] = Field(default_factory=lambda: list(range(1, 152)))


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "DexSync"
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    sources: Dict[str, SourceConfig] = Field(default_factory=_default_sources)
    dataset: DatasetConfig = Field(default_factory=DatasetConfig)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    model_config = SettingsConfigDict(env_prefix="DEXSYNC_", env_nested_delimiter="__", case_sensitive=False)

    @model_validator(mode="after")
    def check_retry_bounds(self) -> Config:
        retry = self.crawler.retry
        if retry.max_delay < retry.base_delay:
            raise ValueError("crawler.retry.max_delay must be >= crawler.retry.base_delay")
        return self

    def rate_limit_for(self, source: str) -> RateLimitConfig:
        """Return the source override if configured, else the crawler default."""
        source_config = self.sources.get(source)
        if source_config is not None and source_config.rate_limit is not None:
            return source_config.rate_limit
        return self.crawler.rate_limit

    def enabled_sources(self) -> List[str]:
        enabled = [name for name, source in self.sources.items() if source.enabled]
        return sorted(enabled, key=lambda name: (self.sources[name].priority, name))

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("dexsync.yaml", "dexsync.yml", "config.yaml", "config.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from an explicit path, a discovered file, or defaults."""
    config_path = path or find_config_file()
    if config_path is not None:
        log.info("Loading configuration from: %s", config_path)
        return Config.from_yaml(config_path)
    log.info("No config file found. Using default settings.")
    return Config()
