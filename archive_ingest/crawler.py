"""Run orchestration: one source from listing page to persisted catalog."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import IngestConfig
from .content import parse_detail
from .images import AssetPipeline
from .listing import find_banner, parse_index
from .models import AssetResult, IndexStub, WorkRecord
from .records import (
    build_record,
    entry_key,
    load_catalog,
    merge_catalogs,
    write_catalog,
    write_json,
)
from .resolver import SourceResolver, UnresolvableError
from .sources import Source
from .utils import utc_now_iso

logger = logging.getLogger("archive_ingest")


@dataclass
class EntryOutcome:
    """Record and audit line produced for one listing entry."""

    index: str
    record: WorkRecord
    status: str = "ok"
    note: str = ""
    detail_location: Optional[str] = None
    screenshots: AssetResult = field(default_factory=AssetResult)
    icon_failures: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        download = self.record.download
        return {
            "index": self.index,
            "status": self.status,
            "title": self.record.title,
            "icon": self.record.icon,
            "note": self.note,
            "downloadSource": download.url if download else None,
            "detailLocation": self.detail_location,
            "screenshotReport": {
                "saved": len(self.screenshots.stored),
                "skipped": [item.to_dict() for item in self.screenshots.skipped],
                "failures": self.screenshots.failures + self.icon_failures,
            },
            "error": self.error,
        }


@dataclass
class RunSummary:
    """Operator-facing audit of one run over one source."""

    source_id: str
    generated_at: str
    status: str = "ok"
    error: Optional[str] = None
    index_location: Optional[str] = None
    banner: Optional[str] = None
    entries: List[EntryOutcome] = field(default_factory=list)
    records: List[WorkRecord] = field(default_factory=list)

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "captured": sum(1 for entry in self.entries if entry.status == "ok"),
            "errored": sum(1 for entry in self.entries if entry.status == "error"),
            "skippedAssets": sum(len(entry.screenshots.skipped) for entry in self.entries),
            "failedAssets": sum(
                len(entry.screenshots.failures) + len(entry.icon_failures)
                for entry in self.entries
            ),
        }

    def to_dict(self) -> Dict[str, Any]:
        entries = [entry.to_dict() for entry in self.entries]
        if self.status == "error" and not entries:
            entries = [{"index": None, "status": "error", "error": self.error}]
        return {
            "sourceId": self.source_id,
            "generatedAt": self.generated_at,
            "indexLocation": self.index_location,
            "banner": self.banner,
            "status": self.status,
            "error": self.error,
            "stats": self.stats,
            "entries": entries,
        }


def _asset_note(screenshots: AssetResult, icon: AssetResult, detail_missing: bool) -> str:
    parts = []
    if detail_missing:
        parts.append("detail page unavailable")
    parts.append(f"screenshots saved={len(screenshots.stored)}")
    if screenshots.skipped:
        parts.append(f"skipped={len(screenshots.skipped)}")
    if screenshots.failures:
        parts.append(f"failed={len(screenshots.failures)}")
    if icon.failures and not icon.stored:
        parts.append("icon unavailable")
    return ", ".join(parts)


class SourceRun:
    """Per-entry pipeline bound to one source and its shared resolver."""

    def __init__(self, source: Source, resolver: SourceResolver, pipeline: AssetPipeline):
        self.source = source
        self.resolver = resolver
        self.pipeline = pipeline

    def process_entry(self, stub: IndexStub) -> EntryOutcome:
        key = entry_key(self.source, stub)
        detail_location = None
        detail = None
        if stub.detail_url:
            try:
                page = self.resolver.resolve_page([stub.detail_url], f"detail-{key}")
            except UnresolvableError as exc:
                logger.warning(
                    "Detail page for %s/%s unavailable: %s", self.source.id, stub.number, exc
                )
            else:
                detail_location = page.location
                detail = parse_detail(page.text, page.location, self.source.profile)

        icon = AssetResult()
        if stub.icon_url:
            icon = self.pipeline.materialize(key, [stub.icon_url], "icon")
        screenshots = AssetResult()
        if detail is not None and detail.screenshots:
            screenshots = self.pipeline.materialize(key, detail.screenshots, "screenshot")

        record = build_record(self.source, stub, detail, icon.first_path, screenshots.paths)
        return EntryOutcome(
            index=stub.number,
            record=record,
            note=_asset_note(screenshots, icon, bool(stub.detail_url) and detail is None),
            detail_location=detail_location,
            screenshots=screenshots,
            icon_failures=icon.failures,
        )

    def run_entry(self, stub: IndexStub) -> EntryOutcome:
        """Process one entry; any failure becomes an error outcome for that entry only."""
        try:
            return self.process_entry(stub)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Entry %s of %s failed", stub.number, self.source.id)
            return EntryOutcome(
                index=stub.number,
                record=build_record(self.source, stub),
                status="error",
                note="stub record from listing row",
                error=f"{type(exc).__name__}: {exc}",
            )


def _finish(
    config: IngestConfig,
    summary: RunSummary,
    previous: List[WorkRecord],
    current: List[WorkRecord],
) -> RunSummary:
    summary.records = merge_catalogs(previous, current)
    write_catalog(config.catalog_path(summary.source_id), summary.records)
    summary_path = config.summary_path(summary.source_id)
    write_json(summary_path, summary.to_dict())
    logger.info("Wrote run summary to %s", summary_path)
    return summary


def run_source(
    source: Source,
    config: IngestConfig,
    session: Optional[requests.Session] = None,
    clock: Optional[Callable[[], str]] = None,
) -> RunSummary:
    """Ingest one source and persist its merged catalog and audit summary."""
    clock = clock or utc_now_iso
    resolver = SourceResolver(source, config, session=session)
    pipeline = AssetPipeline(resolver, config.output_root)
    previous = load_catalog(config.catalog_path(source.id))
    summary = RunSummary(source_id=source.id, generated_at=clock())

    logger.info("Resolving listing page for %s", source.id)
    try:
        index_page = resolver.resolve_page(source.listing_urls(), "index")
    except UnresolvableError as exc:
        logger.error("Listing page for %s is unresolvable: %s", source.id, exc)
        summary.status = "error"
        summary.error = str(exc)
        return _finish(config, summary, previous, [])
    summary.index_location = index_page.location

    stubs = parse_index(index_page.text, source.profile, index_page.location)
    if not stubs:
        logger.error("No entries found on %s", index_page.location)
        summary.status = "error"
        summary.error = f"No entries found on {index_page.location}"
        return _finish(config, summary, previous, [])
    logger.info("Found %d entries for %s", len(stubs), source.id)

    banner_url = find_banner(index_page.text, source.profile, index_page.location)
    if banner_url:
        banner = pipeline.materialize("banner", [banner_url], "banner")
        summary.banner = banner.first_path
        if not banner.stored:
            logger.warning("Banner for %s unavailable: %s", source.id, "; ".join(banner.failures))

    run = SourceRun(source, resolver, pipeline)
    with ThreadPoolExecutor(max_workers=max(1, config.workers)) as executor:
        summary.entries = list(executor.map(run.run_entry, stubs))

    stats = summary.stats
    logger.info(
        "%s: %d captured, %d errored, %d assets skipped, %d failed",
        source.id,
        stats["captured"],
        stats["errored"],
        stats["skippedAssets"],
        stats["failedAssets"],
    )
    return _finish(config, summary, previous, [entry.record for entry in summary.entries])
