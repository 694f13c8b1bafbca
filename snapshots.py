from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Set, Union
from urllib.parse import urljoin

import requests

from config import Settings
from db import SQLiteStore
from errors import RateLimited, SnapshotUnavailable, TransportFailure
from models import DOCUMENT_MODE, ReferenceKind
from transport import ArchiveSession
from urls import archive_address, closest_lookup_address, split_archive_address


logger = logging.getLogger(__name__)

HTML_MIMES = ("text/html", "application/xhtml")


@dataclass(frozen=True)
class Snapshot:
    url: str
    timestamp: str
    body: bytes
    mime: str
    address: str


@dataclass(frozen=True)
class Resolved:
    body: bytes
    mime: str
    address: str


@dataclass(frozen=True)
class Redirect:
    address: str


@dataclass(frozen=True)
class Failed:
    reason: str


FetchOutcome = Union[Resolved, Redirect, Failed]


def _mime_of(response: requests.Response) -> str:
    return response.headers.get("content-type", "application/octet-stream").split(";")[0].strip().lower()


class SnapshotResolver:
    """Maps (canonical URL, timestamp) to archived bytes without ever touching the live web."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[ArchiveSession] = None,
        lookup_cache: Optional[SQLiteStore] = None,
    ) -> None:
        self.settings = settings
        self.http = http if http is not None else ArchiveSession(settings)
        self.lookup_cache = lookup_cache

    def address_for(self, url: str, timestamp: str, kind: Optional[ReferenceKind] = None) -> str:
        mode = kind.archive_mode if kind is not None else DOCUMENT_MODE
        return archive_address(self.settings.archive_base, timestamp, url, mode)

    def fetch_document(self, url: str, timestamp: str) -> Snapshot:
        snapshot = self.resolve(url, timestamp, None)
        self.http.pause(self.settings.politeness_delay)
        return snapshot

    def resolve(self, url: str, timestamp: str, kind: Optional[ReferenceKind]) -> Snapshot:
        address = self.address_for(url, timestamp, kind)
        outcome = self._accept(self._follow(address, timeout=self._timeout(kind)), kind)
        chosen = timestamp

        if not isinstance(outcome, Resolved):
            logger.debug("direct fetch failed for %s (%s), querying index", url, outcome.reason)
            closest = self.closest_timestamp(url, timestamp)
            if closest and closest != timestamp:
                retry = self._accept(
                    self._follow(self.address_for(url, closest, kind), timeout=self._timeout(kind)),
                    kind,
                )
                if isinstance(retry, Resolved):
                    outcome = retry
                    chosen = closest
                else:
                    outcome = Failed(f"{outcome.reason}; closest {closest}: {retry.reason}")

        if not isinstance(outcome, Resolved):
            raise SnapshotUnavailable(url, outcome.reason)
        return Snapshot(url=url, timestamp=chosen, body=outcome.body, mime=outcome.mime, address=outcome.address)

    def closest_timestamp(self, url: str, timestamp: str) -> Optional[str]:
        if self.lookup_cache is not None:
            cached = self.lookup_cache.get_closest(url, timestamp, self.settings.lookup_cache_ttl)
            if cached is not None:
                return cached["closest"]

        lookup = closest_lookup_address(self.settings.archive_base, url, timestamp)
        try:
            response = self.http.get(lookup, timeout=self.settings.request_timeout, allow_redirects=True)
        except (RateLimited, TransportFailure) as exc:
            logger.warning("index lookup failed for %s: %s", url, exc)
            return None
        if int(response.status_code) != 200:
            logger.warning("index lookup for %s returned HTTP %s", url, response.status_code)
            return None

        try:
            rows = response.json()
        except ValueError:
            logger.warning("index lookup for %s returned invalid JSON", url)
            return None
        if not isinstance(rows, list) or (rows and not isinstance(rows[0], list)):
            logger.warning("index lookup for %s returned unexpected payload", url)
            return None

        closest: Optional[str] = None
        if len(rows) > 1:
            row = rows[1]
            candidate = str(row[1]) if isinstance(row, list) and len(row) > 1 else ""
            if not candidate.isdigit():
                logger.warning("index lookup for %s returned malformed row %r", url, row)
                return None
            closest = candidate

        # Only a well-formed empty answer is cached as a miss.
        if self.lookup_cache is not None:
            self.lookup_cache.set_closest(url, timestamp, closest)
        return closest

    def _timeout(self, kind: Optional[ReferenceKind]) -> int:
        return self.settings.request_timeout if kind is None else self.settings.asset_timeout

    def _accept(self, outcome: FetchOutcome, kind: Optional[ReferenceKind]) -> FetchOutcome:
        if isinstance(outcome, Resolved) and kind is ReferenceKind.IMAGE and any(m in outcome.mime for m in HTML_MIMES):
            return Failed(f"HTML placeholder served for image ({outcome.mime})")
        return outcome

    def _follow(self, address: str, timeout: int) -> FetchOutcome:
        remaining = self.settings.max_redirects
        seen: Set[str] = {address}
        while True:
            outcome = self._fetch_once(address, timeout)
            if not isinstance(outcome, Redirect):
                return outcome
            if remaining <= 0:
                return Failed(f"redirect limit reached at {outcome.address}")
            if outcome.address in seen:
                return Failed(f"redirect loop at {outcome.address}")
            remaining -= 1
            seen.add(outcome.address)
            logger.debug("following archive redirect %s -> %s", address, outcome.address)
            address = outcome.address

    def _fetch_once(self, address: str, timeout: int) -> FetchOutcome:
        try:
            response = self.http.get(address, timeout=timeout, allow_redirects=False)
        except (RateLimited, TransportFailure) as exc:
            return Failed(str(exc))

        status = int(response.status_code)
        if 300 <= status < 400:
            location = response.headers.get("location")
            if not location:
                return Failed(f"HTTP {status} without Location")
            return Redirect(self._archived_target(address, location))
        if status != 200:
            return Failed(f"HTTP {status}")
        body = response.content
        if not body:
            return Failed("empty body")
        return Resolved(body=body, mime=_mime_of(response), address=address)

    def _archived_target(self, current: str, location: str) -> str:
        joined = urljoin(current, location)
        if split_archive_address(joined, self.settings.archive_host):
            return joined
        # A live target means the archive has no capture; stay in archive space
        # at the timestamp and mode of the request that bounced. Relative
        # locations belong to the original site, not the archive host.
        parts = split_archive_address(current, self.settings.archive_host)
        if parts is None:
            return joined
        timestamp, mode, original = parts
        live = urljoin(original, location)
        return archive_address(self.settings.archive_base, timestamp, live, mode or DOCUMENT_MODE)
