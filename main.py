#!/usr/bin/env python3
"""
Production entry point for DexSync.

Runs the refresh pipeline every ``schedule.refresh_interval_hours`` until
SIGTERM or SIGINT. A signal lets the current crawl finish its in-flight
window and stops the loop; ``python main.py health`` prints container
health as JSON.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import structlog

from dexsync.config import load_config
from dexsync.container import DependencyContainer
from dexsync.observability import bind_run_id, configure_logging, start_metrics_server

logger = structlog.get_logger(__name__)


async def health_check(container: DependencyContainer) -> dict:
    """Perform health check for container orchestration."""
    return {
        "status": "healthy" if container.config is not None else "unhealthy",
        "timestamp": asyncio.get_running_loop().time(),
        **container.get_health_status(),
    }


async def refresh_loop(container: DependencyContainer, stop: asyncio.Event) -> None:
    interval = container.config.schedule.refresh_interval_hours * 3600
    pipeline = await container.get_pipeline()
    while not stop.is_set():
        run_id = bind_run_id()
        logger.info("Refresh started", run_id=run_id)
        result = await pipeline.run(abort_event=stop)
        logger.info(
            "Refresh finished",
            ok=result.ok,
            version=result.build.version.version_id if result.build else None,
            errors=len(result.errors),
        )
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


async def main() -> int:
    config_path_env = os.getenv("DEXSYNC_CONFIG")
    config_path = Path(config_path_env) if config_path_env else None
    config = load_config(config_path)
    configure_logging(config.monitoring)

    container = DependencyContainer(config_path, config=config)

    if len(sys.argv) > 1 and sys.argv[1] == "health":
        await container.initialize()
        health = await health_check(container)
        print(json.dumps(health, indent=2))
        await container.shutdown()
        return 0 if health["status"] == "healthy" else 1

    if config.monitoring.prometheus_port:
        start_metrics_server(config.monitoring.prometheus_port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with container.lifecycle():
            logger.info("DexSync refresh loop starting", interval_hours=config.schedule.refresh_interval_hours)
            await refresh_loop(container, stop)
    except Exception as e:
        logger.error("Refresh loop failed", error=str(e))
        return 1
    finally:
        logger.info("DexSync refresh loop stopped")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
