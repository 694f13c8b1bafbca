from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from bs4 import BeautifulSoup

from assets import ASSETS_DIRNAME


SUSPICIOUS_SIZE = 100
AUDITED_ATTRS = ("src", "href", "background")

OK = "ok"
EMPTY = "empty"
SMALL = "small"
MISSING = "missing"


@dataclass
class AssetCheck:
    reference: str
    path: Path
    state: str
    size: int = 0


@dataclass
class AuditReport:
    document: Path
    checks: List[AssetCheck] = field(default_factory=list)
    external: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[AssetCheck]:
        return [c for c in self.checks if c.state in (EMPTY, MISSING)]

    @property
    def passed(self) -> bool:
        return not self.failures


def audit_document(path: Path) -> AuditReport:
    """Check every local asset a rewritten page links to for presence and size."""
    soup = BeautifulSoup(path.read_bytes(), "html.parser")
    report = AuditReport(document=path)
    marker = f"{ASSETS_DIRNAME}/"
    seen: set[str] = set()

    for tag in soup.find_all(True):
        for attr in AUDITED_ATTRS:
            value = tag.get(attr)
            if not value or not isinstance(value, str) or value in seen:
                continue
            seen.add(value)
            if marker not in value:
                if attr == "src":
                    report.external.append(value)
                continue
            local = (path.parent / value).resolve()
            if not local.is_file():
                report.checks.append(AssetCheck(reference=value, path=local, state=MISSING))
                continue
            size = local.stat().st_size
            if size == 0:
                state = EMPTY
            elif size < SUSPICIOUS_SIZE:
                state = SMALL
            else:
                state = OK
            report.checks.append(AssetCheck(reference=value, path=local, state=state, size=size))
    return report
