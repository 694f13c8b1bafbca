from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from audit import audit_document
from config import ERAS, SEARCH_TARGETS, Settings
from db import SQLiteStore
from discovery import CdxClient, run_discovery
from errors import InventoryCorrupt
from inventory import InventoryStore, count_by_status, reset_records
from pipeline import Pipeline
from snapshots import SnapshotResolver
from transport import ArchiveSession


logger = logging.getLogger("wayback_docs")

RUNS_RETENTION_SECONDS = 180 * 24 * 3600


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wayback-docs",
        description="Archive documents of a defunct site from the Wayback Machine for offline use.",
    )
    parser.add_argument("--discover", action="store_true", help="Run discovery and add new documents to the inventory")
    parser.add_argument("--download", action="store_true", help="Download inventory documents that are discovered or failed")
    parser.add_argument("--rescan", action="store_true", help="Also re-scan downloaded documents to fill missing assets")
    parser.add_argument("--reset", action="store_true", help="Reset downloaded documents back to discovered")
    parser.add_argument("--match", help="With --reset: only reset documents whose filename or URL contains this text")
    parser.add_argument("--audit", metavar="FILE", help="Check the local assets referenced by a rewritten page")
    parser.add_argument("--era", help=f"Target a specific era ({', '.join(ERAS)})")
    parser.add_argument("--year", type=int, help="Target a specific year (overrides era range)")
    parser.add_argument("--from", dest="from_year", type=int, help="Start year (custom range)")
    parser.add_argument("--to", dest="to_year", type=int, help="End year (custom range)")
    parser.add_argument("-l", "--limit", type=int, help="Limit items per target (discovery) or in total (download)")
    parser.add_argument("-d", "--dry-run", action="store_true", help="Simulate actions without writing files")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def resolve_scope(args: argparse.Namespace) -> Tuple[Sequence[str], Optional[int], Optional[int], str]:
    targets: Sequence[str] = SEARCH_TARGETS
    start, end = args.from_year, args.to_year
    era_id = "custom"
    if args.era:
        era = ERAS.get(args.era)
        if era is None:
            raise ValueError(f"Unknown era: {args.era}. Available eras: {', '.join(ERAS)}")
        logger.info("Targeting Era: %s", era.description)
        targets = era.targets
        start = start or era.start_year
        end = end or era.end_year
        era_id = era.id
    if args.year:
        logger.info("Targeting Year: %s", args.year)
        start = end = args.year
    return targets, start, end, era_id


def run_audit(path: Path) -> int:
    report = audit_document(path)
    for check in report.checks:
        line = f"{check.state.upper():8} {check.reference} ({check.size} bytes)"
        if check.state == "ok":
            logger.info(line)
        else:
            logger.warning(line)
    for value in report.external:
        logger.info("external %s", value)
    if report.passed:
        logger.info("Audit PASSED: %d assets present", len(report.checks))
        return 0
    logger.error("Audit FAILED: %d broken assets", len(report.failures))
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = Settings.from_env()

    if args.audit:
        return run_audit(Path(args.audit))

    try:
        targets, start, end, era_id = resolve_scope(args)
    except ValueError as exc:
        logger.error("%s", exc)
        return 2
    if args.dry_run:
        logger.info("Running in DRY-RUN mode")

    inventory = InventoryStore(settings.inventory_path)
    try:
        records = inventory.load()
    except InventoryCorrupt as exc:
        logger.error("%s", exc)
        return 2
    logger.info("Loaded inventory with %d items", len(records))

    if args.reset:
        count = reset_records(records, args.match)
        if args.dry_run:
            logger.info("[DRY-RUN] Would reset %d items", count)
        else:
            inventory.save(records)
            logger.info("Reset %d items to discovered", count)
        return 0

    history: Optional[SQLiteStore] = None
    if not args.dry_run:
        history = SQLiteStore(settings.db_path)
        history.prune_old_data(settings.lookup_cache_ttl, RUNS_RETENTION_SECONDS)
    http = ArchiveSession(settings)

    run_all = not (args.discover or args.download or args.rescan)
    if run_all:
        logger.info("No specific mode selected. Running full Discovery + Download cycle.")

    if args.discover or run_all:
        added = run_discovery(CdxClient(settings, http), records, targets, era_id, start, end, args.limit)
        if args.dry_run:
            logger.info("[DRY-RUN] Would write %d items (%d new) to %s", len(records), added, settings.inventory_path)
        elif history is not None:
            inventory.save(records)
            history.add_run_history("discover", "done", era=era_id, summary={"added": added, "total": len(records)})
            logger.info("Saved %d items (%d new) to %s", len(records), added, settings.inventory_path)

    if args.download or args.rescan or run_all:
        if not records:
            logger.error("Inventory is empty: %s. Run --discover first.", settings.inventory_path)
            return 2
        pipeline = Pipeline(
            settings,
            inventory,
            resolver=SnapshotResolver(settings, http=http, lookup_cache=history),
            history=history,
        )
        year_range = (start, end) if (args.year or args.from_year or args.to_year) else None
        summary = pipeline.run(
            records,
            rescan=args.rescan,
            era=args.era,
            year_range=year_range,
            limit=args.limit,
            dry_run=args.dry_run,
        )
        logger.info(
            "Downloaded %d, failed %d, assets rewritten %d, assets unresolved %d",
            summary.downloaded,
            summary.failed,
            summary.assets_rewritten,
            summary.assets_failed,
        )
        logger.info("Inventory status: %s", count_by_status(records))

    logger.info("Operation complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
