from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple


BASE_DIR = Path(__file__).resolve().parent

TARGET_EXTENSIONS = (".pdf", ".xls", ".xlsx", ".doc", ".docx", ".html", ".htm")
TARGET_MIME_TYPES = (
    "text/html",
    "application/pdf",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)
ATTACHMENT_EXTENSIONS = (".pdf", ".xls", ".xlsx", ".doc", ".docx", ".ppt", ".pptx", ".rtf", ".zip")
SEARCH_TARGETS = (
    "usaweightlifting.org",
    "*.usaweightlifting.org",
    "msbn.tv/usavision",
    "weightlifting.teamusa.org",
)


@dataclass(frozen=True)
class Era:
    id: str
    description: str
    targets: Tuple[str, ...]
    start_year: int
    end_year: int


ERAS: Dict[str, Era] = {
    "early-web": Era(
        id="early-web",
        description="Early Web (2000-2004)",
        targets=("usaweightlifting.org", "*.usaweightlifting.org"),
        start_year=2000,
        end_year=2004,
    ),
    "msbn": Era(
        id="msbn",
        description="MSBN Era (2004-2008)",
        targets=("msbn.tv/usavision",),
        start_year=2004,
        end_year=2008,
    ),
    "hangastar": Era(
        id="hangastar",
        description="Hangastar Era (2008-2015)",
        targets=("weightlifting.teamusa.org", "assets.teamusa.org"),
        start_year=2008,
        end_year=2015,
    ),
}


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    raw = (value or "").strip()
    try:
        num = int(raw)
    except ValueError:
        num = default
    return max(min_value, min(num, max_value))


def _parse_float(value: Optional[str], default: float) -> float:
    raw = (value or "").strip()
    try:
        num = float(raw)
    except ValueError:
        num = default
    return max(0.0, num)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed to each component."""

    archive_base: str = "http://web.archive.org"
    data_root: Path = BASE_DIR / "data"
    inventory_path: Path = BASE_DIR / "inventory.json"
    db_path: Path = BASE_DIR / "archive_cache.sqlite3"
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    concurrency: int = 5
    asset_workers: int = 4
    request_timeout: int = 30
    asset_timeout: int = 30
    max_redirects: int = 3
    rate_limit_retries: int = 5
    rate_limit_base_delay: float = 5.0
    rate_limit_jitter: float = 1.0
    network_retries: int = 3
    network_retry_delay: float = 2.0
    politeness_delay: float = 1.0
    lookup_cache_ttl: int = 30 * 24 * 3600
    layout_depth: int = 2
    strip_query: bool = False
    attachment_extensions: Tuple[str, ...] = field(default=ATTACHMENT_EXTENSIONS)

    @property
    def archive_host(self) -> str:
        return self.archive_base.split("://", 1)[-1].split("/", 1)[0].lower()

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            load_env_file(BASE_DIR / ".env")
            env = os.environ
        defaults = cls()
        return cls(
            archive_base=(env.get("ARCHIVE_BASE") or defaults.archive_base).rstrip("/"),
            data_root=Path(env.get("DATA_ROOT_DIR", str(defaults.data_root))).expanduser().resolve(),
            inventory_path=Path(env.get("INVENTORY_PATH", str(defaults.inventory_path))).expanduser().resolve(),
            db_path=Path(env.get("DB_PATH", str(defaults.db_path))).expanduser().resolve(),
            user_agent=(env.get("USER_AGENT") or defaults.user_agent).strip(),
            concurrency=_parse_int(env.get("CONCURRENT_DOWNLOADS"), defaults.concurrency, 1, 32),
            asset_workers=_parse_int(env.get("ASSET_WORKERS"), defaults.asset_workers, 1, 32),
            request_timeout=_parse_int(env.get("REQUEST_TIMEOUT"), defaults.request_timeout, 1, 600),
            asset_timeout=_parse_int(env.get("ASSET_TIMEOUT"), defaults.asset_timeout, 1, 600),
            max_redirects=_parse_int(env.get("MAX_REDIRECTS"), defaults.max_redirects, 0, 10),
            rate_limit_retries=_parse_int(env.get("RATE_LIMIT_RETRIES"), defaults.rate_limit_retries, 0, 20),
            rate_limit_base_delay=_parse_float(env.get("RATE_LIMIT_BASE_DELAY"), defaults.rate_limit_base_delay),
            rate_limit_jitter=_parse_float(env.get("RATE_LIMIT_JITTER"), defaults.rate_limit_jitter),
            network_retries=_parse_int(env.get("NETWORK_RETRIES"), defaults.network_retries, 0, 20),
            network_retry_delay=_parse_float(env.get("NETWORK_RETRY_DELAY"), defaults.network_retry_delay),
            politeness_delay=_parse_float(env.get("POLITENESS_DELAY"), defaults.politeness_delay),
            lookup_cache_ttl=_parse_int(env.get("LOOKUP_CACHE_TTL"), defaults.lookup_cache_ttl, 0, 10 * 365 * 24 * 3600),
            strip_query=_parse_bool(env.get("STRIP_QUERY"), defaults.strip_query),
        )
