from __future__ import annotations

from pathlib import Path


class ArchiveError(RuntimeError):
    pass


class UnresolvableReference(ArchiveError):
    """Not a fetchable resource (data:, fragment, mailto:, empty, foreign scheme)."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"{reason}: {reference!r}")
        self.reference = reference
        self.reason = reason


class SnapshotUnavailable(ArchiveError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"No usable snapshot for {url}: {reason}")
        self.url = url
        self.reason = reason


class RateLimited(ArchiveError):
    def __init__(self, url: str, attempts: int) -> None:
        super().__init__(f"Rate limited by archive after {attempts} retries: {url}")
        self.url = url
        self.attempts = attempts


class TransportFailure(ArchiveError):
    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Request failed for {url}: {reason}")
        self.url = url
        self.reason = reason


class UnsafePath(ArchiveError):
    def __init__(self, path: Path, root: Path) -> None:
        super().__init__(f"Refusing to write outside {root}: {path}")
        self.path = path
        self.root = root


class InventoryCorrupt(ArchiveError):
    pass
