"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (test reloads, multiple containers in one process)
# must reuse the already registered collectors instead of raising.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, use the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        # Crawler
        "crawler_requests_total": Counter(
            "dexsync_crawler_requests_total",
            "Crawl targets processed, by source and outcome",
            ["source", "outcome"],
        ),
        "crawler_fetch_latency_seconds": Histogram(
            "dexsync_crawler_fetch_latency_seconds",
            "Time taken to fetch a URL including retries",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
        ),
        "crawler_responses_total": Counter(
            "dexsync_crawler_responses_total",
            "HTTP responses by status class",
            ["status_class"],
        ),
        "crawler_cache_events_total": Counter(
            "dexsync_crawler_cache_events_total",
            "Response cache hits and misses",
            ["result"],
        ),
        "rate_limiter_wait_seconds": Histogram(
            "dexsync_rate_limiter_wait_seconds",
            "Time callers spent waiting for rate limiter admission",
            ["source"],
            buckets=[0.0, 0.01, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0],
        ),
        "circuit_breaker_state": Gauge(
            "dexsync_circuit_breaker_state",
            "Circuit breaker state per source (0=closed, 1=half_open, 2=open)",
            ["source"],
        ),
        # Dataset
        "dataset_records_total": Counter(
            "dexsync_dataset_records_total",
            "Records processed by the dataset builder",
            ["result"],
        ),
        # Publisher
        "publish_uploads_total": Counter(
            "dexsync_publish_uploads_total",
            "Object uploads performed by the publisher",
            ["result"],
        ),
        "publish_health_checks_total": Counter(
            "dexsync_publish_health_checks_total",
            "Publisher health check runs",
            ["result"],
        ),
        # Client sync
        "sync_runs_total": Counter(
            "dexsync_sync_runs_total",
            "Client sync runs by final status",
            ["status"],
        ),
        "sync_entities_downloaded_total": Counter(
            "dexsync_sync_entities_downloaded_total",
            "Entity payloads downloaded and committed",
        ),
        "sync_integrity_failures_total": Counter(
            "dexsync_sync_integrity_failures_total",
            "Payloads rejected because of a content hash mismatch",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def observe(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Record a histogram observation if the metric exists."""
    metric = METRICS.get(name)
    if metric is None:
        return
    (metric.labels(**labels) if labels else metric).observe(value)


def increment(name: str, value: float = 1.0, labels: Optional[Dict[str, Any]] = None) -> None:
    """Increment a counter metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    (metric.labels(**labels) if labels else metric).inc(value)


def gauge(name: str, value: float, labels: Optional[Dict[str, Any]] = None) -> None:
    """Set a gauge metric."""
    metric = METRICS.get(name)
    if metric is None:
        return
    (metric.labels(**labels) if labels else metric).set(value)


def start_metrics_server(port: int) -> None:
    """Expose METRICS over HTTP for Prometheus scraping."""
    start_http_server(port)
    logger.info("Prometheus exporter started", port=port)
