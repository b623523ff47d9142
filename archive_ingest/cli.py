"""Command-line entry point for archive ingestion."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

from .config import IngestConfig
from .crawler import run_source
from .records import AUDITED_FIELDS, find_missing_fields, load_catalog
from .sources import Source, SourceConfigError, builtin_sources, load_sources, select_sources

logger = logging.getLogger("archive_ingest.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("run", *argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--sources",
        type=Path,
        default=None,
        help="JSON file with additional source definitions",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source_ids", nargs="+", metavar="SOURCE", help="Source ids to ingest")
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("public"),
        help="Directory for icons, screenshots and banners",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path("data"),
        help="Directory holding works/{source}.json catalogs",
    )
    parser.add_argument(
        "--cache",
        type=Path,
        default=Path("catch"),
        help="Directory for cached pages, assets and run summaries",
    )
    parser.add_argument("--workers", type=int, default=4, help="Entries processed concurrently")
    parser.add_argument(
        "--timeout",
        type=float,
        default=20.0,
        help="Per-request timeout in seconds",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Only use cached pages and assets",
    )
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Ignore cached copies and fetch everything again",
    )
    parser.add_argument(
        "--no-discover",
        action="store_true",
        help="Do not query the archive index for snapshot timestamps",
    )
    _add_common_arguments(parser)


def _add_audit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source_id", metavar="SOURCE", help="Source id whose catalog to audit")
    parser.add_argument("--data", type=Path, default=Path("data"), help="Catalog directory")
    parser.add_argument("--output", type=Path, default=Path("public"), help="Asset directory")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ingest historical event-archive sites into normalized work catalogs.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Ingest one or more sources")
    _add_run_arguments(run_parser)

    list_parser = subparsers.add_parser("list", help="Show the known sources")
    _add_common_arguments(list_parser)

    audit_parser = subparsers.add_parser(
        "audit", help="Report empty fields and missing asset files in a catalog"
    )
    _add_audit_arguments(audit_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def _registry(path: Optional[Path]) -> Dict[str, Source]:
    registry = builtin_sources()
    if path is not None:
        registry.update(load_sources(path))
    return registry


def _run(args: argparse.Namespace) -> int:
    config = IngestConfig(
        output_root=args.output,
        data_root=args.data,
        cache_root=args.cache,
        workers=args.workers,
        timeout=args.timeout,
        offline=args.offline,
        refresh=args.refresh,
        discover_snapshots=not args.no_discover,
    )
    sources = select_sources(args.source_ids, _registry(args.sources))

    failed = []
    for source in sources:
        start = time.perf_counter()
        try:
            summary = run_source(source, config)
        except (OSError, ValueError) as exc:
            logger.error("Run for %s aborted: %s", source.id, exc)
            failed.append(source.id)
            continue
        stats = summary.stats
        logger.info(
            "%s finished in %.2fs: status=%s, %d records, %d captured, %d errored",
            source.id,
            time.perf_counter() - start,
            summary.status,
            len(summary.records),
            stats["captured"],
            stats["errored"],
        )
        if summary.status == "error":
            failed.append(source.id)

    if failed:
        logger.error("Sources with errors: %s", ", ".join(failed))
        return 1
    return 0


def _list(args: argparse.Namespace) -> int:
    for source in sorted(_registry(args.sources).values(), key=lambda item: item.id):
        print(f"{source.id}\t{source.label}")
    return 0


def _audit(args: argparse.Namespace) -> int:
    config = IngestConfig(output_root=args.output, data_root=args.data)
    path = config.catalog_path(args.source_id)
    if not path.exists():
        logger.error("No catalog at %s", path)
        return 1
    records = load_catalog(path)
    report = find_missing_fields(records, config.output_root)

    counts = {name: 0 for name in (*AUDITED_FIELDS, "icon", "screenshots")}
    for missing in report.values():
        for name in missing:
            counts[name] += 1
    print(f"TOTAL={len(records)}")
    print("COUNTS=" + ",".join(f"{name}:{count}" for name, count in counts.items()))
    for record in records:
        if record.id in report:
            print(f"{record.no or ''}\t{record.title}\t{'|'.join(report[record.id])}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.command == "run":
            return _run(args)
        if args.command == "list":
            return _list(args)
        return _audit(args)
    except SourceConfigError as exc:
        logger.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
