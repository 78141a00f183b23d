"""Logging and metrics for DexSync."""

from __future__ import annotations

from .logging import bind_run_id, configure_logging
from .metrics import METRICS, gauge, increment, observe, start_metrics_server

__all__ = ["METRICS", "bind_run_id", "configure_logging", "gauge", "increment", "observe", "start_metrics_server"]
