"""
Server refresh pipeline.

crawl -> merge -> tidbits -> build -> manifest -> publish -> registry commit.
Sources whose URLs need an entity name are crawled in a second phase, once
names are known from the first phase or from the source registry. The
registry is saved only after the new version is live.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from dexsync.config.config import Config
from dexsync.crawler.crawler import BatchReport, Crawler, CrawlOutcome
from dexsync.dataset.builder import BuildResult, DatasetBuilder
from dexsync.dataset.manifest import ManifestBuild, ManifestBuilder, SourceRegistry
from dexsync.dataset.records import TidbitSynthesizer, merge_source_fields
from dexsync.publisher.publisher import Publisher, PublishResult

logger = structlog.get_logger(__name__)


@dataclass
class PipelineResult:
    crawl: BatchReport
    build: Optional[BuildResult] = None
    manifest: Optional[ManifestBuild] = None
    publish: Optional[PublishResult] = None
    output_path: Optional[Path] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        if self.crawl.aborted or self.build is None:
            return False
        return self.publish.ok if self.publish is not None else True


def _iso(epoch: Optional[float]) -> str:
    moment = datetime.fromtimestamp(epoch, timezone.utc) if epoch else datetime.now(timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


class Pipeline:
    """Runs one dataset refresh end to end."""

    def __init__(
        self,
        config: Config,
        crawler: Crawler,
        registry: SourceRegistry,
        *,
        publisher: Optional[Publisher] = None,
        builder: Optional[DatasetBuilder] = None,
        manifest_builder: Optional[ManifestBuilder] = None,
        synthesizer: Optional[TidbitSynthesizer] = None,
    ) -> None:
        self.config = config
        self.crawler = crawler
        self.registry = registry
        self.publisher = publisher
        self.builder = builder or DatasetBuilder(config.dataset, last_version=registry.last_version)
        self.manifest_builder = manifest_builder or ManifestBuilder()
        self.synthesizer = synthesizer

    def _split_sources(self, sources: Sequence[str]) -> Tuple[List[str], List[str]]:
        """Partition sources into those addressable by id alone and those needing a name."""
        by_id: List[str] = []
        by_name: List[str] = []
        for source in sources:
            parser = self.crawler.parsers.get(source)
            (by_id if parser.build_url(1, None) is not None else by_name).append(source)
        return by_id, by_name

    async def crawl(
        self,
        entity_ids: Iterable[int],
        *,
        sources: Optional[Sequence[str]] = None,
        abort_event: Optional[asyncio.Event] = None,
    ) -> BatchReport:
        wanted = [s for s in (sources or self.config.enabled_sources()) if s in self.crawler.parsers]
        by_id, by_name = self._split_sources(wanted)
        ids = sorted(set(entity_ids))
        known = self.registry.known_names()

        report = BatchReport()
        if by_id:
            phase = await self.crawler.crawl_batch(
                self.crawler.plan_targets({i: known.get(i) for i in ids}, by_id), abort_event=abort_event
            )
            report.outcomes.extend(phase.outcomes)
            report.aborted = phase.aborted
            for outcome in phase.succeeded:
                name = outcome.fields.get("name")
                if isinstance(name, str) and name.strip():
                    known.setdefault(outcome.target.entity_id, name.strip())

        if by_name and not report.aborted:
            phase = await self.crawler.crawl_batch(
                self.crawler.plan_targets({i: known.get(i) for i in ids}, by_name), abort_event=abort_event
            )
            report.outcomes.extend(phase.outcomes)
            report.aborted = phase.aborted

        report.finished_at = phase.finished_at if (by_id or by_name) else report.started_at
        return report

    def merge(self, outcomes: Iterable[CrawlOutcome]) -> Dict[int, Dict[str, Any]]:
        """Group successful outcomes by entity and merge them in source priority order."""
        priority = {name: rank for rank, name in enumerate(self.config.enabled_sources())}
        grouped: Dict[int, List[CrawlOutcome]] = {}
        for outcome in outcomes:
            if outcome.success:
                grouped.setdefault(outcome.target.entity_id, []).append(outcome)

        merged: Dict[int, Dict[str, Any]] = {}
        for entity_id, items in sorted(grouped.items()):
            items.sort(key=lambda o: priority.get(o.target.source, len(priority)))
            merged[entity_id] = merge_source_fields(
                [(o.target.source, o.fields, o.target.url, _iso(o.target.last_fetched_at)) for o in items]
            )
        return merged

    async def add_tidbits(self, merged: Mapping[int, Dict[str, Any]]) -> None:
        if self.synthesizer is None:
            return
        for entity_id, fields in merged.items():
            try:
                fields["tidbits"] = list(await self.synthesizer.synthesize(entity_id, fields))
            except Exception as e:
                logger.warning("Tidbit synthesis failed", entity_id=entity_id, error=str(e))
                fields.setdefault("tidbits", [])

    async def build(self, merged: Mapping[int, Mapping[str, Any]], *, write: bool = True) -> Tuple[BuildResult, ManifestBuild, Optional[Path]]:
        result = self.builder.build(merged)
        manifest = self.manifest_builder.build(result.version, self.registry)
        output = self.builder.write(result.version) if write else None
        return result, manifest, output

    async def run(
        self,
        entity_ids: Optional[Iterable[int]] = None,
        *,
        publish: bool = True,
        abort_event: Optional[asyncio.Event] = None,
    ) -> PipelineResult:
        ids = list(entity_ids) if entity_ids is not None else list(self.config.schedule.entity_ids)
        log = logger.bind(entities=len(ids))
        log.info("Pipeline started", publish=publish)

        report = await self.crawl(ids, abort_event=abort_event)
        result = PipelineResult(crawl=report)
        if report.aborted:
            result.errors.append("Crawl aborted")
            log.warning("Pipeline aborted during crawl")
            return result

        merged = self.merge(report.outcomes)
        if not merged:
            result.errors.append("No entity crawled successfully")
            log.error("Nothing to build", crawl=report.summary())
            return result

        await self.add_tidbits(merged)
        result.build, result.manifest, result.output_path = await self.build(merged)
        result.errors.extend(f"{r.record_id}: {'; '.join(r.reasons)}" for r in result.build.rejected)

        if not publish:
            log.info("Pipeline finished without publishing", version=result.build.version.version_id)
            return result
        if self.publisher is None:
            raise RuntimeError("Pipeline has no publisher configured")

        result.publish = await self.publisher.publish(result.build.version, result.manifest)
        if result.publish.ok:
            self.registry = result.manifest.registry
            if self.registry.path is not None:
                self.registry.save()
            log.info("Pipeline published", version=result.build.version.version_id, changed=len(result.manifest.changed))
        else:
            result.errors.extend(result.publish.errors)
            log.error("Publish did not complete, registry unchanged", status=result.publish.status.value)
        return result
