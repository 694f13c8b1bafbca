from __future__ import annotations

import re
from typing import Optional, Tuple
from urllib.parse import SplitResult, quote, urljoin, urlsplit, urlunsplit

from errors import UnresolvableReference


NON_FETCHABLE_PREFIXES = ("data:", "#", "mailto:", "javascript:", "tel:")
NETWORK_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}
SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")
ARCHIVE_PATH_RE = re.compile(r"^/web/(?P<timestamp>\d{1,14})(?P<mode>[a-z]{2}_)?/(?P<original>.+)$")
CDX_URL_SAFE = "!*'()"


def archive_address(archive_base: str, timestamp: str, original_url: str, mode: str = "id_") -> str:
    return f"{archive_base}/web/{timestamp}{mode}/{original_url}"


def closest_lookup_address(archive_base: str, original_url: str, timestamp: str) -> str:
    encoded = quote(original_url, safe=CDX_URL_SAFE)
    return (
        f"{archive_base}/cdx/search/cdx?url={encoded}"
        f"&output=json&limit=1&closest={timestamp}&filter=statuscode:200"
    )


def split_archive_address(url: str, archive_host: str = "web.archive.org") -> Optional[Tuple[str, str, str]]:
    """Return (timestamp, mode, original_url) when url points into the archive."""
    parsed = urlsplit(url)
    if parsed.netloc and (parsed.hostname or "").lower() != archive_host:
        return None
    if not parsed.netloc and parsed.scheme:
        return None
    path = parsed.path
    if parsed.query:
        path = f"{path}?{parsed.query}"
    match = ARCHIVE_PATH_RE.match(path)
    if not match:
        return None
    original = match.group("original")
    # Archive paths collapse "http://" to "http:/" in some captures.
    original = re.sub(r"^(https?):/+", r"\1://", original)
    if not original.lower().startswith(("http://", "https://")):
        return None
    return match.group("timestamp"), match.group("mode") or "", original


def remove_dot_segments(path: str) -> str:
    output: list[str] = []
    segments = path.split("/")
    for idx, segment in enumerate(segments):
        last = idx == len(segments) - 1
        if segment == ".":
            if last:
                output.append("")
            continue
        if segment == "..":
            if len(output) > 1:
                output.pop()
            if last:
                output.append("")
            continue
        output.append(segment)
    result = "/".join(output)
    if path.startswith("/") and not result.startswith("/"):
        result = "/" + result
    return result or "/"


def canonicalize(url: str, strip_query: bool = False) -> str:
    parsed = urlsplit(url.strip())
    scheme = parsed.scheme.lower()
    if scheme not in NETWORK_SCHEMES or not parsed.hostname:
        raise UnresolvableReference(url, "not a network URL")
    host = parsed.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    try:
        port = parsed.port
    except ValueError as exc:
        raise UnresolvableReference(url, "invalid port") from exc
    netloc = host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{host}:{port}"
    path = remove_dot_segments(parsed.path or "/")
    query = "" if strip_query else parsed.query
    return urlunsplit((scheme, netloc, path, query, ""))


def site_root(parsed: SplitResult) -> str:
    return urlunsplit((parsed.scheme, parsed.netloc, "/", "", ""))


def resolve_reference(
    raw: str,
    document_url: str,
    *,
    archive_host: str = "web.archive.org",
    strip_query: bool = False,
) -> str:
    candidate = (raw or "").strip()
    if not candidate:
        raise UnresolvableReference(raw, "empty reference")
    lowered = candidate.lower()
    if lowered.startswith(NON_FETCHABLE_PREFIXES):
        raise UnresolvableReference(raw, "non-fetchable scheme")

    base = urlsplit(document_url)
    scheme_match = SCHEME_RE.match(candidate)
    if scheme_match:
        if scheme_match.group(1).lower() not in NETWORK_SCHEMES:
            raise UnresolvableReference(raw, "unsupported scheme")
        resolved = candidate
    elif candidate.startswith("//"):
        resolved = f"{base.scheme}:{candidate}"
    elif candidate.startswith("/"):
        archived = split_archive_address(candidate, archive_host)
        if archived:
            return canonicalize(archived[2], strip_query=strip_query)
        resolved = urljoin(site_root(base), candidate)
    else:
        resolved = urljoin(document_url, candidate)

    archived = split_archive_address(resolved, archive_host)
    if archived and urlsplit(resolved).netloc:
        resolved = archived[2]
    return canonicalize(resolved, strip_query=strip_query)


def url_extension(url: str) -> str:
    path = urlsplit(url).path
    base = path.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return "." + base.rsplit(".", 1)[-1].lower()
