"""Configuration models for DexSync."""

from .config import (
    CacheConfig,
    CircuitBreakerConfig,
    Config,
    CrawlerConfig,
    DatasetConfig,
    MonitoringConfig,
    PublisherConfig,
    RateLimitConfig,
    RetryConfig,
    ScheduleConfig,
    SourceConfig,
    SyncConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "CacheConfig",
    "CircuitBreakerConfig",
    "Config",
    "CrawlerConfig",
    "DatasetConfig",
    "MonitoringConfig",
    "PublisherConfig",
    "RateLimitConfig",
    "RetryConfig",
    "ScheduleConfig",
    "SourceConfig",
    "SyncConfig",
    "find_config_file",
    "load_config",
]
