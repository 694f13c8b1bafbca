from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ReferenceKind(str, Enum):
    IMAGE = "image"
    STYLESHEET = "stylesheet"
    SCRIPT = "script"
    ATTACHMENT = "attachment"

    @property
    def archive_mode(self) -> str:
        # The archive may serve a transformed variant of raster assets under im_.
        return "im_" if self is ReferenceKind.IMAGE else "id_"


DOCUMENT_MODE = "id_"

STATUS_DISCOVERED = "discovered"
STATUS_DOWNLOADED = "downloaded"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
RECORD_STATUSES = (STATUS_DISCOVERED, STATUS_DOWNLOADED, STATUS_FAILED, STATUS_SKIPPED)

CATALOG_DISCOVERED = "discovered"


@dataclass(frozen=True)
class CatalogEntry:
    logical_id: str
    original_url: str
    timestamp: str
    mime: str
    status: str = CATALOG_DISCOVERED

    @property
    def year(self) -> int:
        return int(self.timestamp[0:4])


@dataclass(frozen=True)
class ResourceReference:
    document_url: str
    document_timestamp: str
    raw: str
    kind: ReferenceKind


@dataclass(frozen=True)
class ResolvedAsset:
    canonical_url: str
    snapshot_timestamp: Optional[str]
    local_filename: str
    byte_length: int
    reused: bool = False


@dataclass
class DocumentRecord:
    id: str
    era: str
    year: int
    category: str
    filename: str
    original_url: str
    wayback_url: str
    timestamp: str
    status: str = STATUS_DISCOVERED
    local_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "era": self.era,
            "year": self.year,
            "category": self.category,
            "filename": self.filename,
            "originalUrl": self.original_url,
            "waybackUrl": self.wayback_url,
            "timestamp": self.timestamp,
            "status": self.status,
        }
        if self.local_path:
            payload["localPath"] = self.local_path
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentRecord":
        status = str(data.get("status") or STATUS_DISCOVERED)
        if status not in RECORD_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        return cls(
            id=str(data["id"]),
            era=str(data["era"]),
            year=int(data["year"]),
            category=str(data["category"]),
            filename=str(data["filename"]),
            original_url=str(data["originalUrl"]),
            wayback_url=str(data.get("waybackUrl") or ""),
            timestamp=str(data["timestamp"]),
            status=status,
            local_path=data.get("localPath") or None,
        )
