"""In-process stand-in for the archive's HTTP surface, used by the test modules."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlencode

from requests.structures import CaseInsensitiveDict

from config import Settings
from snapshots import SnapshotResolver
from transport import ArchiveSession
from urls import closest_lookup_address


ARCHIVE = "http://web.archive.org"


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        json_data: Any = None,
    ) -> None:
        self.status_code = status_code
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})
        self._json = json_data

    def json(self) -> Any:
        if self._json is not None:
            return self._json
        return json.loads(self.content.decode("utf-8"))


Route = Union[FakeResponse, Exception]


class FakeSession:
    def __init__(self) -> None:
        self.routes: Dict[str, List[Route]] = {}
        self.calls: List[str] = []
        self.params: List[Optional[Dict[str, str]]] = []

    def add(self, url: str, *responses: Route) -> None:
        self.routes.setdefault(url, []).extend(responses)

    def ok(self, url: str, body: bytes, content_type: str = "text/html") -> None:
        self.add(url, FakeResponse(200, body, {"Content-Type": content_type}))

    def redirect(self, url: str, location: str, status: int = 302) -> None:
        self.add(url, FakeResponse(status, b"", {"Location": location}))

    def get(self, url: str, params: Optional[Dict[str, str]] = None, **_kwargs: Any) -> FakeResponse:
        full = f"{url}?{urlencode(params)}" if params else url
        self.calls.append(full)
        self.params.append(dict(params) if params else None)
        queue = self.routes.get(full) or self.routes.get(url)
        if not queue:
            return FakeResponse(404, b"not found", {"Content-Type": "text/html"})
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(route, Exception):
            raise route
        return route


def make_settings(root: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        archive_base=ARCHIVE,
        data_root=root / "data",
        inventory_path=root / "inventory.json",
        db_path=root / "cache.sqlite3",
        concurrency=2,
        asset_workers=2,
        rate_limit_base_delay=5.0,
        rate_limit_jitter=0.0,
        network_retry_delay=2.0,
        politeness_delay=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def make_resolver(settings: Settings, session: FakeSession, sleeps: Optional[List[float]] = None, lookup_cache=None) -> SnapshotResolver:
    recorder = sleeps.append if sleeps is not None else (lambda _seconds: None)
    http = ArchiveSession(settings, session=session, sleep=recorder)
    return SnapshotResolver(settings, http=http, lookup_cache=lookup_cache)


def wayback(timestamp: str, url: str, mode: str = "id_") -> str:
    return f"{ARCHIVE}/web/{timestamp}{mode}/{url}"


def cdx_closest(url: str, timestamp: str) -> str:
    return closest_lookup_address(ARCHIVE, url, timestamp)


def cdx_row(url: str, timestamp: str) -> FakeResponse:
    return FakeResponse(
        200,
        json_data=[
            ["urlkey", "timestamp", "original", "mimetype", "statuscode", "digest", "length"],
            ["key", timestamp, url, "text/css", "200", "DIGEST", "10"],
        ],
    )
