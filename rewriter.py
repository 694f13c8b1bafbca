from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup
from bs4.element import Tag

from assets import AssetStore, is_within
from config import Settings
from errors import ArchiveError, UnresolvableReference, UnsafePath
from models import DocumentRecord, ReferenceKind, ResolvedAsset, ResourceReference
from snapshots import SnapshotResolver
from urls import resolve_reference, url_extension


logger = logging.getLogger(__name__)

BACKGROUND_TAGS = ("body", "table", "tr", "td", "th")
STYLESHEET_TYPES = ("text/css",)
ICON_RELS = ("icon", "apple-touch-icon")


@dataclass
class ReferenceSite:
    tag: Tag
    attr: str
    reference: ResourceReference


@dataclass
class ReferenceOutcome:
    reference: ResourceReference
    canonical_url: Optional[str] = None
    asset: Optional[ResolvedAsset] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.asset is not None


@dataclass
class RewriteResult:
    body: bytes
    outcomes: List[ReferenceOutcome] = field(default_factory=list)
    rewritten_sites: int = 0

    @property
    def changed(self) -> bool:
        return self.rewritten_sites > 0

    @property
    def failures(self) -> List[ReferenceOutcome]:
        return [o for o in self.outcomes if not o.ok and not o.skipped]


def _rel_values(tag: Tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.strip().lower() for r in rel]


class DocumentRewriter:
    """Scan, resolve and rewrite the resource references of one archived HTML document.

    The three phases never mutate the tree while it is still being read: all
    sites are collected first, resolution runs concurrently on the distinct
    canonical URLs, and successful results are applied in a single pass.
    """

    def __init__(self, settings: Settings, resolver: SnapshotResolver) -> None:
        self.settings = settings
        self.resolver = resolver

    def rewrite(
        self,
        body: bytes,
        record: DocumentRecord,
        store: AssetStore,
        document_path: Optional[Path] = None,
    ) -> RewriteResult:
        soup = BeautifulSoup(body, "html.parser")
        sites = self.scan(soup, record, store)
        resolved, outcomes = self.resolve_all(sites, record, store)
        document_dir = document_path.parent if document_path is not None else None

        applied = 0
        for site in sites:
            asset = resolved.get(site.reference.raw)
            if asset is None:
                continue
            link = store.relative_link(asset.local_filename)
            if document_dir is not None and not is_within(self.settings.data_root, document_dir / link):
                raise UnsafePath(document_dir / link, self.settings.data_root)
            site.tag[site.attr] = link
            applied += 1

        if not applied:
            return RewriteResult(body=body, outcomes=outcomes, rewritten_sites=0)
        encoding = soup.original_encoding or "utf-8"
        return RewriteResult(body=soup.encode(encoding), outcomes=outcomes, rewritten_sites=applied)

    def scan(self, soup: BeautifulSoup, record: DocumentRecord, store: AssetStore) -> List[ReferenceSite]:
        sites: List[ReferenceSite] = []

        def _add(tag: Tag, attr: str, kind: ReferenceKind) -> None:
            value = tag.get(attr)
            if not value or not isinstance(value, str):
                return
            if store.is_local_link(value):
                return
            reference = ResourceReference(
                document_url=record.original_url,
                document_timestamp=record.timestamp,
                raw=value,
                kind=kind,
            )
            sites.append(ReferenceSite(tag=tag, attr=attr, reference=reference))

        for tag in soup.find_all("img"):
            _add(tag, "src", ReferenceKind.IMAGE)
        for tag in soup.find_all("input"):
            if str(tag.get("type", "")).lower() == "image":
                _add(tag, "src", ReferenceKind.IMAGE)
        for tag in soup.find_all(list(BACKGROUND_TAGS)):
            _add(tag, "background", ReferenceKind.IMAGE)

        for tag in soup.find_all("link"):
            rels = _rel_values(tag)
            link_type = str(tag.get("type", "")).strip().lower()
            if "stylesheet" in rels or link_type in STYLESHEET_TYPES:
                _add(tag, "href", ReferenceKind.STYLESHEET)
            elif any(r in ICON_RELS for r in rels):
                _add(tag, "href", ReferenceKind.IMAGE)

        for tag in soup.find_all("script"):
            _add(tag, "src", ReferenceKind.SCRIPT)

        for tag in soup.find_all("a"):
            href = tag.get("href")
            if not href or not isinstance(href, str):
                continue
            path = href.split("#", 1)[0].split("?", 1)[0]
            if url_extension(path) in self.settings.attachment_extensions:
                _add(tag, "href", ReferenceKind.ATTACHMENT)

        return sites

    def resolve_all(
        self,
        sites: List[ReferenceSite],
        record: DocumentRecord,
        store: AssetStore,
    ) -> Tuple[Dict[str, ResolvedAsset], List[ReferenceOutcome]]:
        outcomes: Dict[str, ReferenceOutcome] = {}
        targets: Dict[Tuple[str, ReferenceKind], List[str]] = {}

        for site in sites:
            ref = site.reference
            if ref.raw in outcomes:
                continue
            outcome = ReferenceOutcome(reference=ref)
            outcomes[ref.raw] = outcome
            try:
                canonical = resolve_reference(
                    ref.raw,
                    record.original_url,
                    archive_host=self.settings.archive_host,
                    strip_query=self.settings.strip_query,
                )
            except UnresolvableReference as exc:
                outcome.skipped = True
                outcome.error = exc.reason
                continue
            outcome.canonical_url = canonical
            targets.setdefault((canonical, ref.kind), []).append(ref.raw)

        results: Dict[Tuple[str, ReferenceKind], object] = {}
        if targets:
            workers = max(1, min(self.settings.asset_workers, len(targets)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    key: pool.submit(self._materialize, key[0], key[1], record.timestamp, store)
                    for key in targets
                }
                for key, future in futures.items():
                    try:
                        results[key] = future.result()
                    except (ArchiveError, OSError) as exc:
                        results[key] = exc

        resolved: Dict[str, ResolvedAsset] = {}
        for key, raws in targets.items():
            result = results.get(key)
            for raw in raws:
                outcome = outcomes[raw]
                if isinstance(result, ResolvedAsset):
                    outcome.asset = result
                    resolved[raw] = result
                else:
                    outcome.error = str(result)
                    logger.warning("asset unavailable for %s (%s): %s", record.filename, raw, result)

        return resolved, list(outcomes.values())

    def _materialize(self, url: str, kind: ReferenceKind, timestamp: str, store: AssetStore) -> ResolvedAsset:
        filename = store.filename_for(url, timestamp, kind)
        existing = store.existing(filename)
        if existing is not None:
            return ResolvedAsset(
                canonical_url=url,
                snapshot_timestamp=None,
                local_filename=filename,
                byte_length=existing.stat().st_size,
                reused=True,
            )
        snapshot = self.resolver.resolve(url, timestamp, kind)
        filename = store.store(url, timestamp, snapshot.body, kind)
        logger.debug("stored asset %s -> %s (%d bytes)", url, filename, len(snapshot.body))
        return ResolvedAsset(
            canonical_url=url,
            snapshot_timestamp=snapshot.timestamp,
            local_filename=filename,
            byte_length=len(snapshot.body),
        )
