from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from assets import atomic_write_bytes
from errors import InventoryCorrupt
from models import STATUS_DISCOVERED, STATUS_DOWNLOADED, DocumentRecord


logger = logging.getLogger(__name__)


class InventoryStore:
    """Whole-file JSON inventory, rewritten atomically on every save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> List[DocumentRecord]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise InventoryCorrupt(f"Cannot read inventory {self.path}: {exc}") from exc
        if not isinstance(payload, list):
            raise InventoryCorrupt(f"Inventory {self.path} is not a list")

        records: List[DocumentRecord] = []
        for idx, item in enumerate(payload):
            if not isinstance(item, dict):
                raise InventoryCorrupt(f"Inventory entry {idx} is not an object")
            try:
                records.append(DocumentRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                raise InventoryCorrupt(f"Inventory entry {idx} is malformed: {exc}") from exc
        return records

    def save(self, records: Sequence[DocumentRecord]) -> None:
        data = json.dumps([r.to_dict() for r in records], indent=2)
        atomic_write_bytes(self.path, data.encode("utf-8"))
        logger.debug("saved %d records to %s", len(records), self.path)


def reset_records(records: List[DocumentRecord], match: Optional[str] = None) -> int:
    """Send records back to discovered so the next download re-processes them.

    Without ``match`` every downloaded record is reset. With ``match`` only
    records whose filename or original URL contains it are reset, whatever
    their status, and they are moved to the front so ``--limit`` picks them up.
    """
    if match:
        hits = [r for r in records if match in r.filename or match in r.original_url]
    else:
        hits = [r for r in records if r.status == STATUS_DOWNLOADED]

    for record in hits:
        record.status = STATUS_DISCOVERED
        record.local_path = None

    if match and hits:
        hit_ids = {id(r) for r in hits}
        rest = [r for r in records if id(r) not in hit_ids]
        records[:] = hits + rest
    return len(hits)


def count_by_status(records: Iterable[DocumentRecord]) -> dict:
    counts: dict = {}
    for record in records:
        counts[record.status] = counts.get(record.status, 0) + 1
    return counts
