from __future__ import annotations

import logging
import os
import re
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from config import TARGET_EXTENSIONS, TARGET_MIME_TYPES, Settings
from errors import ArchiveError
from models import CatalogEntry, DocumentRecord
from transport import ArchiveSession
from urls import archive_address


logger = logging.getLogger(__name__)

CDX_FIELDS = "urlkey,timestamp,original,mimetype,statuscode,digest,length"
SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
RESULT_PAGE_KEYWORDS = ("result", "event", "meet")

CATEGORY_RESULTS = "results"
CATEGORY_GOVERNANCE = "governance"
CATEGORY_EVENT_INFO = "event_info"
CATEGORY_UNCATEGORIZED = "uncategorized"


def categorize(filename: str, original_url: str) -> str:
    text = f"{filename.lower()} {original_url.lower()}"
    if "result" in text:
        return CATEGORY_RESULTS
    if any(k in text for k in ("minute", "bylaw", "board")):
        return CATEGORY_GOVERNANCE
    # "qual", "prospectus" and "meet" are too broad for event info.
    if any(k in text for k in ("entry", "form", "packet", "schedule")):
        return CATEGORY_EVENT_INFO
    return CATEGORY_UNCATEGORIZED


def _safe_name(text: str) -> str:
    value = SAFE_NAME_RE.sub("_", text.strip())
    value = value.strip("._")
    return value or "file"


def derive_filename(entry: CatalogEntry) -> str:
    path = urlsplit(entry.original_url).path
    filename = _safe_name(path.rsplit("/", 1)[-1]) if path.rsplit("/", 1)[-1] else ""
    if not filename:
        filename = f"file-{entry.logical_id}.dat"

    if "?" in entry.original_url or len(filename) < 5 or re.match(r"^index\.", filename, re.IGNORECASE):
        stem, ext = os.path.splitext(filename)
        filename = f"{stem}-{entry.logical_id[:8]}{ext}"

    if re.search(r"\.(aspx|asp)$", filename, re.IGNORECASE):
        filename = re.sub(r"\.(aspx|asp)$", ".html", filename, flags=re.IGNORECASE)
    return filename


def is_wanted(row: Dict[str, str]) -> bool:
    mime = (row.get("mimetype") or "").lower()
    original = (row.get("original") or "").lower()
    valid_mime = any(m in mime for m in TARGET_MIME_TYPES)
    has_extension = any(original.endswith(ext) for ext in TARGET_EXTENSIONS)
    if not valid_mime and not has_extension:
        return False
    if "text/html" in mime or original.endswith((".html", ".htm")):
        return any(k in original for k in RESULT_PAGE_KEYWORDS)
    return True


class CdxClient:
    def __init__(self, settings: Settings, http: Optional[ArchiveSession] = None) -> None:
        self.settings = settings
        self.http = http if http is not None else ArchiveSession(settings)

    @property
    def endpoint(self) -> str:
        return f"{self.settings.archive_base}/cdx/search/cdx"

    def search(self, target: str, from_year: Optional[int] = None, to_year: Optional[int] = None) -> List[CatalogEntry]:
        pattern = target if target.endswith("*") else f"{target}/*"
        params = {
            "url": pattern,
            "output": "json",
            "fl": CDX_FIELDS,
            "collapse": "digest",
            "filter": "statuscode:200",
        }
        if from_year:
            params["from"] = str(from_year)
        if to_year:
            params["to"] = str(to_year)

        response = self.http.get(self.endpoint, params=params, timeout=self.settings.request_timeout, allow_redirects=True)
        if int(response.status_code) != 200:
            raise ArchiveError(f"CDX search for {target} returned HTTP {response.status_code}")
        self.http.pause(self.settings.politeness_delay)

        try:
            rows = response.json()
        except ValueError as exc:
            raise ArchiveError(f"CDX search for {target} returned invalid JSON") from exc
        if not isinstance(rows, list) or len(rows) <= 1:
            return []

        header = rows[0]
        entries: List[CatalogEntry] = []
        seen: set[str] = set()
        for raw in rows[1:]:
            row = dict(zip(header, raw))
            if row.get("statuscode") not in (None, "200") or not is_wanted(row):
                continue
            digest = row.get("digest") or ""
            if not digest or digest in seen:
                continue
            seen.add(digest)
            entries.append(
                CatalogEntry(
                    logical_id=digest,
                    original_url=row.get("original", ""),
                    timestamp=row.get("timestamp", ""),
                    mime=row.get("mimetype", ""),
                )
            )
        return entries


def build_record(entry: CatalogEntry, era: str, archive_base: str) -> DocumentRecord:
    filename = derive_filename(entry)
    return DocumentRecord(
        id=entry.logical_id,
        era=era,
        year=entry.year,
        category=categorize(filename, entry.original_url),
        filename=filename,
        original_url=entry.original_url,
        wayback_url=archive_address(archive_base, entry.timestamp, entry.original_url),
        timestamp=entry.timestamp,
    )


def merge_entries(
    records: List[DocumentRecord],
    entries: Sequence[CatalogEntry],
    era: str,
    archive_base: str,
) -> int:
    known = {r.id for r in records}
    added = 0
    for entry in entries:
        if entry.logical_id in known:
            continue
        records.append(build_record(entry, era, archive_base))
        known.add(entry.logical_id)
        added += 1
    return added


def run_discovery(
    client: CdxClient,
    records: List[DocumentRecord],
    targets: Sequence[str],
    era: str,
    from_year: Optional[int] = None,
    to_year: Optional[int] = None,
    limit: Optional[int] = None,
) -> int:
    added = 0
    for target in targets:
        logger.info("Searching CDX for %s (%s - %s)", target, from_year or "All", to_year or "All")
        try:
            entries = client.search(target, from_year, to_year)
        except ArchiveError as exc:
            logger.error("Error processing target %s: %s", target, exc)
            continue
        logger.info("Found %d matching documents for %s", len(entries), target)
        if limit and limit > 0:
            entries = entries[:limit]
        added += merge_entries(records, entries, era, client.settings.archive_base)
    return added
