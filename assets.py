from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from config import Settings
from errors import UnsafePath
from models import ReferenceKind
from urls import archive_address, url_extension


ASSETS_DIRNAME = "assets"
PLAUSIBLE_EXT_RE = re.compile(r"^\.[a-z0-9]{1,5}$")
SERVER_SCRIPT_EXTS = (".asp", ".aspx", ".php", ".jsp", ".cgi", ".ashx", ".axd", ".pl", ".cfm")
DEFAULT_EXTENSIONS = {
    ReferenceKind.IMAGE: ".jpg",
    ReferenceKind.SCRIPT: ".js",
}


def is_within(parent: Path, child: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def safe_join(root: Path, *parts: str) -> Path:
    candidate = root.joinpath(*parts)
    if any(os.path.isabs(p) for p in parts) or not is_within(root, candidate):
        raise UnsafePath(candidate, root)
    return candidate


def atomic_write_bytes(path: Path, body: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(body)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def asset_extension(url: str, kind: ReferenceKind) -> str:
    ext = url_extension(url)
    if PLAUSIBLE_EXT_RE.match(ext) and ext not in SERVER_SCRIPT_EXTS:
        return ext
    return DEFAULT_EXTENSIONS.get(kind, ".css")


class AssetStore:
    """Write-once, content-addressed asset pool shared by every document of one era."""

    def __init__(self, settings: Settings, era: str) -> None:
        self.settings = settings
        self.era = era
        self.assets_dir = safe_join(settings.data_root, era, ASSETS_DIRNAME)

    def filename_for(self, url: str, timestamp: str, kind: ReferenceKind) -> str:
        address = archive_address(self.settings.archive_base, timestamp, url, kind.archive_mode)
        digest = hashlib.md5(address.encode("utf-8")).hexdigest()
        return f"{digest}{asset_extension(url, kind)}"

    def path_for(self, filename: str) -> Path:
        return safe_join(self.assets_dir, filename)

    def existing(self, filename: str) -> Optional[Path]:
        path = self.path_for(filename)
        try:
            if path.is_file() and path.stat().st_size > 0:
                return path
        except OSError:
            return None
        return None

    def write(self, filename: str, body: bytes) -> Path:
        path = self.path_for(filename)
        if self.existing(filename) is not None:
            return path
        atomic_write_bytes(path, body)
        return path

    def store(self, url: str, timestamp: str, body: bytes, kind: ReferenceKind) -> str:
        filename = self.filename_for(url, timestamp, kind)
        self.write(filename, body)
        return filename

    @property
    def link_prefix(self) -> str:
        return "../" * self.settings.layout_depth + ASSETS_DIRNAME + "/"

    def relative_link(self, filename: str) -> str:
        return self.link_prefix + filename

    def is_local_link(self, value: str) -> bool:
        return value.strip().startswith(self.link_prefix)
