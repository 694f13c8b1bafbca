from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from assets import AssetStore, atomic_write_bytes, safe_join
from config import Settings
from db import SQLiteStore
from errors import ArchiveError
from inventory import InventoryStore
from models import (
    STATUS_DISCOVERED,
    STATUS_DOWNLOADED,
    STATUS_FAILED,
    DocumentRecord,
)
from rewriter import DocumentRewriter, RewriteResult
from snapshots import SnapshotResolver


logger = logging.getLogger(__name__)

HTML_SUFFIXES = (".html", ".htm")


@dataclass
class ProcessOutcome:
    status: str
    local_path: Optional[str] = None
    fetched: bool = False
    assets_rewritten: int = 0
    assets_failed: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    selected: int = 0
    downloaded: int = 0
    failed: int = 0
    fetched: int = 0
    assets_rewritten: int = 0
    assets_failed: int = 0
    batches: int = 0
    dry_run: bool = False
    seconds: float = 0.0
    errors: List[str] = field(default_factory=list)


def document_path(settings: Settings, record: DocumentRecord) -> Path:
    return safe_join(settings.data_root, record.era, str(record.year), record.category, record.filename)


def looks_like_html(record: DocumentRecord, mime: Optional[str], body: bytes) -> bool:
    if mime:
        return "text/html" in mime or "application/xhtml" in mime
    if record.filename.lower().endswith(HTML_SUFFIXES):
        return True
    head = body[:512].lstrip().lower()
    return head.startswith((b"<!doctype html", b"<html"))


def select_records(
    records: List[DocumentRecord],
    *,
    rescan: bool = False,
    era: Optional[str] = None,
    year_range: Optional[Tuple[Optional[int], Optional[int]]] = None,
    limit: Optional[int] = None,
) -> List[DocumentRecord]:
    statuses = {STATUS_DISCOVERED, STATUS_FAILED}
    if rescan:
        statuses.add(STATUS_DOWNLOADED)
    selected = [r for r in records if r.status in statuses]
    if era:
        selected = [r for r in selected if r.era == era]
    if year_range:
        start, end = year_range
        selected = [r for r in selected if (start is None or r.year >= start) and (end is None or r.year <= end)]
    if limit and limit > 0:
        selected = selected[:limit]
    return selected


class Pipeline:
    """Sequential batches of concurrent document jobs, checkpointed after each batch.

    Only this class changes a record's status or local path, and only on the
    calling thread once the batch's futures have finished.
    """

    def __init__(
        self,
        settings: Settings,
        inventory: InventoryStore,
        resolver: Optional[SnapshotResolver] = None,
        history: Optional[SQLiteStore] = None,
        progress_callback: Optional[Callable[[Dict[str, object]], None]] = None,
    ) -> None:
        self.settings = settings
        self.inventory = inventory
        self.resolver = resolver if resolver is not None else SnapshotResolver(settings, lookup_cache=history)
        self.rewriter = DocumentRewriter(settings, self.resolver)
        self.history = history
        self.progress_callback = progress_callback

    def _emit_progress(self, **payload: object) -> None:
        if self.progress_callback is None:
            return
        self.progress_callback(payload)

    def run(
        self,
        records: List[DocumentRecord],
        *,
        rescan: bool = False,
        era: Optional[str] = None,
        year_range: Optional[Tuple[Optional[int], Optional[int]]] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> RunSummary:
        started = time.time()
        items = select_records(records, rescan=rescan, era=era, year_range=year_range, limit=limit)
        summary = RunSummary(selected=len(items), dry_run=dry_run)
        if not items:
            logger.info("No new items to download.")
            return summary

        width = max(1, self.settings.concurrency)
        for start in range(0, len(items), width):
            batch = items[start : start + width]
            summary.batches += 1
            if dry_run:
                for record in batch:
                    logger.info("[DRY-RUN] Would download: %s to %s", record.original_url, self._describe_target(record))
            else:
                for record, outcome in self._run_batch(batch, rescan):
                    self._apply(record, outcome, summary)
                self.inventory.save(records)

            done = min(start + width, len(items))
            logger.info("Processed %d/%d", done, len(items))
            self._emit_progress(
                stage="download",
                message="Processing documents",
                percent=min(99, int((done / len(items)) * 100)),
                processed=done,
                total=len(items),
                downloaded=summary.downloaded,
                failed=summary.failed,
            )

        summary.seconds = round(time.time() - started, 2)
        if self.history is not None and not dry_run:
            self.history.add_run_history("rescan" if rescan else "download", "done", era=era, summary=asdict(summary))
        self._emit_progress(stage="done", message="Download finished", percent=100, processed=len(items), total=len(items))
        return summary

    def _describe_target(self, record: DocumentRecord) -> str:
        try:
            return str(document_path(self.settings, record))
        except ArchiveError as exc:
            return f"<rejected: {exc}>"

    def _run_batch(self, batch: List[DocumentRecord], rescan: bool) -> List[Tuple[DocumentRecord, ProcessOutcome]]:
        results: List[Tuple[DocumentRecord, ProcessOutcome]] = []
        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = {pool.submit(self._process_safely, record, rescan): record for record in batch}
            for future in as_completed(futures):
                results.append((futures[future], future.result()))
        return results

    def _apply(self, record: DocumentRecord, outcome: ProcessOutcome, summary: RunSummary) -> None:
        record.status = outcome.status
        if outcome.local_path:
            record.local_path = outcome.local_path
        if outcome.status == STATUS_DOWNLOADED:
            summary.downloaded += 1
        else:
            summary.failed += 1
            if outcome.error:
                summary.errors.append(f"{record.original_url}: {outcome.error}")
        if outcome.fetched:
            summary.fetched += 1
        summary.assets_rewritten += outcome.assets_rewritten
        summary.assets_failed += outcome.assets_failed

    def _process_safely(self, record: DocumentRecord, rescan: bool) -> ProcessOutcome:
        try:
            return self.process(record, rescan=rescan)
        except Exception as exc:
            logger.error("Failed %s: %s", record.original_url, exc)
            return ProcessOutcome(status=STATUS_FAILED, error=str(exc))

    def process(self, record: DocumentRecord, rescan: bool = False) -> ProcessOutcome:
        target = document_path(self.settings, record)
        mime: Optional[str] = None
        fetched = False

        if target.is_file() and target.stat().st_size > 0:
            logger.info("Skipping existing: %s", target)
            body = target.read_bytes()
        else:
            snapshot = self.resolver.fetch_document(record.original_url, record.timestamp)
            body = snapshot.body
            mime = snapshot.mime
            atomic_write_bytes(target, body)
            fetched = True

        outcome = ProcessOutcome(status=STATUS_DOWNLOADED, local_path=str(target), fetched=fetched)
        if looks_like_html(record, mime, body):
            result = self._rewrite(record, body, target)
            if result is not None:
                outcome.assets_rewritten = result.rewritten_sites
                outcome.assets_failed = len(result.failures)
        if fetched:
            logger.info("Downloaded: %s", target)
        return outcome

    def _rewrite(self, record: DocumentRecord, body: bytes, target: Path) -> Optional[RewriteResult]:
        try:
            store = AssetStore(self.settings, record.era)
            result = self.rewriter.rewrite(body, record, store, document_path=target)
        except ArchiveError as exc:
            logger.warning("Failed to process assets for %s: %s", target, exc)
            return None
        if result.changed:
            atomic_write_bytes(target, result.body)
        for failure in result.failures:
            logger.warning("Unresolved reference in %s: %s (%s)", target.name, failure.reference.raw, failure.error)
        return result
