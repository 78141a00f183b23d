"""Command-line interface for DexSync."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from dexsync import __version__
from dexsync.config import Config, load_config
from dexsync.container import DependencyContainer
from dexsync.observability import bind_run_id, configure_logging, start_metrics_server

console = Console()
logger = structlog.get_logger(__name__)


def parse_id_ranges(text: str) -> List[int]:
    """Parse ``"1-3,25"`` into ``[1, 2, 3, 25]``."""
    ids: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = (int(p) for p in part.split("-", 1))
            if end < start:
                raise click.BadParameter(f"Empty range: {part}")
            ids.update(range(start, end + 1))
        else:
            ids.add(int(part))
    return sorted(ids)


def _ids_option(value: Optional[str]) -> Optional[List[int]]:
    if value is None:
        return None
    try:
        return parse_id_ranges(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _load(ctx: click.Context) -> Config:
    config = load_config(ctx.obj["config_path"])
    if ctx.obj.get("log_level"):
        config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(config.monitoring)
    if config.monitoring.prometheus_port:
        start_metrics_server(config.monitoring.prometheus_port)
    return config


def _run(ctx: click.Context, body: Callable[[DependencyContainer, asyncio.Event], Awaitable[int]]) -> None:
    """Run ``body`` inside a container lifecycle; SIGINT/SIGTERM set the abort event."""
    config = _load(ctx)

    async def runner() -> int:
        abort_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, abort_event.set)
        bind_run_id()
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            return await body(container, abort_event)

    sys.exit(asyncio.run(runner()))


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """DexSync - crawl, build, publish and sync a versioned species dataset."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option("--ids", help="Entity ids to crawl, e.g. '1-151' or '1,4,7'")
@click.option("--source", "sources", multiple=True, help="Restrict to a source (repeatable)")
@click.pass_context
def crawl(ctx: click.Context, ids: Optional[str], sources: tuple[str, ...]) -> None:
    """Crawl sources and report per-target outcomes without building."""
    entity_ids = _ids_option(ids)

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        pipeline = await container.get_pipeline()
        report = await pipeline.crawl(
            entity_ids or container.config.schedule.entity_ids, sources=list(sources) or None, abort_event=abort_event
        )
        summary = report.summary()
        table = Table(title="Crawl Summary")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="magenta")
        for key in ("total", "succeeded", "failed", "from_cache", "aborted"):
            table.add_row(key, str(summary[key]))
        for error_type, count in sorted(summary["errors"].items()):
            table.add_row(f"error: {error_type}", str(count))
        console.print(table)
        return 1 if report.aborted else 0

    _run(ctx, body)


def _print_pipeline_result(result: Any) -> None:
    lines = [f"Crawled: {len(result.crawl.succeeded)} ok / {len(result.crawl.failures)} failed"]
    if result.build is not None:
        version = result.build.version
        lines.append(f"Version: {version.version_id}")
        lines.append(f"Records: {len(version.records)} (rejected {len(result.build.rejected)})")
        lines.append(f"Dataset hash: {version.dataset_hash[:16]}")
    if result.manifest is not None:
        lines.append(f"Changed: {len(result.manifest.changed)}, removed: {len(result.manifest.removed)}")
    if result.publish is not None:
        lines.append(f"Publish: {result.publish.status.value}")
    for error in result.errors[:10]:
        lines.append(f"[red]{error}[/red]")
    console.print(
        Panel("\n".join(lines), title="Results", border_style="green" if result.ok else "red")
    )


@cli.command()
@click.option("--ids", help="Entity ids to include")
@click.pass_context
def build(ctx: click.Context, ids: Optional[str]) -> None:
    """Crawl and build a dataset version locally without publishing it."""
    entity_ids = _ids_option(ids)

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        pipeline = await container.get_pipeline()
        result = await pipeline.run(entity_ids, publish=False, abort_event=abort_event)
        _print_pipeline_result(result)
        return 0 if result.ok else 1

    _run(ctx, body)


@cli.command()
@click.option("--ids", help="Entity ids to include")
@click.pass_context
def publish(ctx: click.Context, ids: Optional[str]) -> None:
    """Crawl, build and publish a new version, then move the latest alias."""
    entity_ids = _ids_option(ids)

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        pipeline = await container.get_pipeline()
        result = await pipeline.run(entity_ids, publish=True, abort_event=abort_event)
        _print_pipeline_result(result)
        return 0 if result.ok else 1

    _run(ctx, body)


@cli.command()
@click.argument("version")
@click.pass_context
def rollback(ctx: click.Context, version: str) -> None:
    """Point the latest alias back at a previously published VERSION."""

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        publisher = await container.get_publisher()
        result = await publisher.rollback(version)
        if result.ok:
            console.print(f"[green]✅ latest now points at {version}[/green]")
            return 0
        for error in result.errors:
            console.print(f"[red]❌ {error}[/red]")
        return 1

    _run(ctx, body)


@cli.command()
@click.option("--force", is_flag=True, help="Refetch every entity regardless of revision")
@click.pass_context
def sync(ctx: click.Context, force: bool) -> None:
    """Bring the local client store up to the published manifest."""

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        client = await container.get_sync_client()
        watcher = asyncio.create_task(abort_event.wait())
        watcher.add_done_callback(lambda _: client.abort())

        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
        )
        with progress:
            task_id = progress.add_task("Syncing", total=None)

            def on_progress(position: int, total: int) -> None:
                progress.update(task_id, completed=position, total=total)

            result = await client.sync(force=force, on_progress=on_progress)
        watcher.cancel()

        table = Table(title="Sync Result")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_row("status", result.status.value)
        table.add_row("dataset version", str(result.dataset_version))
        table.add_row("previous version", str(result.previous_version))
        table.add_row("updated", str(len(result.updated)))
        table.add_row("removed", str(len(result.removed)))
        table.add_row("failed", str(len(result.failed)))
        table.add_row("resumed", str(result.resumed))
        table.add_row("duration", f"{result.duration_seconds:.2f}s")
        console.print(table)
        if result.error:
            console.print(f"[red]{result.error}[/red]")
        return 0 if result.ok else 1

    _run(ctx, body)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the local client version, history, pending checkpoint and published alias."""

    async def body(container: DependencyContainer, abort_event: asyncio.Event) -> int:
        client = await container.get_sync_client()
        table = Table(title="Local Store")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_row("dataset version", str(await client.versions.current_version()))
        table.add_row("schema version", str(await client.versions.stored_schema_version()))
        table.add_row("entities", str(await client.store.count_entities()))
        checkpoint = await client.store.get_checkpoint()
        table.add_row(
            "checkpoint",
            f"{checkpoint.position}/{checkpoint.total} of {checkpoint.manifest_version}" if checkpoint else "none",
        )
        console.print(table)

        history = await client.versions.history()
        if history:
            history_table = Table(title="Version History")
            history_table.add_column("Version", style="cyan")
            history_table.add_column("Synced At")
            history_table.add_column("Updated")
            history_table.add_column("Removed")
            for record in history[-10:]:
                history_table.add_row(
                    record.version,
                    record.timestamp,
                    str(record.metadata.get("updated", "")),
                    str(record.metadata.get("removed", "")),
                )
            console.print(history_table)

        if container.config.publisher.provider == "local":
            alias = await (await container.get_publisher()).current_alias()
            console.print(f"Published latest: {alias['version'] if alias else 'none'}")
        return 0

    _run(ctx, body)


@cli.command()
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the current configuration."""
    console.print("[blue]🔍 Validating configuration...[/blue]")
    try:
        config = load_config(ctx.obj["config_path"])
    except Exception as e:
        console.print(f"[red]❌ Configuration validation failed: {e}[/red]")
        sys.exit(1)

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("sources", ", ".join(config.enabled_sources()) or "none")
    for name in config.enabled_sources():
        limit = config.rate_limit_for(name)
        table.add_row(
            f"  {name}",
            f"{limit.requests_per_second} rps / {limit.requests_per_minute} rpm / burst {limit.burst_limit}",
        )
    table.add_row("respect robots.txt", str(config.crawler.respect_robots))
    table.add_row("publisher", f"{config.publisher.provider}")
    table.add_row("sync cdn", config.sync.cdn_base_url)
    table.add_row("sync db", str(config.sync.db_path))
    table.add_row("entities", str(len(config.schedule.entity_ids)))
    console.print(table)

    if not config.enabled_sources():
        console.print("[red]❌ No sources are enabled[/red]")
        sys.exit(1)
    console.print("[green]✅ Configuration is valid![/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
