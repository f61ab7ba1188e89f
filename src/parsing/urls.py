"""URL normalization and classification helpers for discovery.

Normalization makes URLs comparable for deduplication:
- Lowercase scheme and host, drop default ports
- Remove the fragment
- Remove tracking parameters (utm_*, fbclid, gclid, ref, ...)
- Remove a trailing slash from non-root paths

Examples:
    >>> normalize_url("https://Example.com/news/?utm_source=x&page=2#top")
    'https://example.com/news?page=2'
    >>> extract_domain("https://www.porezna-uprava.hr:443/vijesti")
    'porezna-uprava.hr'
"""

from __future__ import annotations

import posixpath
from typing import NamedTuple
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

TRACKING_PARAMS = frozenset({
    "fbclid",
    "gclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "ref",
    "_ga",
})

DOCUMENT_EXTENSIONS = frozenset({
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".odt", ".ods", ".odp", ".rtf",
})

SKIP_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",  # Images
    ".mp4", ".webm", ".avi", ".mov", ".mp3", ".wav",  # Media
    ".zip", ".tar", ".gz", ".rar", ".7z",  # Archives
    ".css", ".js", ".woff", ".woff2", ".ttf", ".eot",  # Web assets
})


class ParsedURL(NamedTuple):
    """Parsed URL components."""
    scheme: str
    host: str
    port: str
    path: str
    query: str


def parse_url(url: str) -> ParsedURL:
    """Parse a URL into lowercased scheme/host and a rooted path."""
    parsed = urlparse(url)

    host = parsed.netloc.rsplit("@", 1)[-1]
    port = ""
    if ":" in host and not host.startswith("["):
        host, port = host.rsplit(":", 1)

    return ParsedURL(
        scheme=parsed.scheme.lower(),
        host=host.lower(),
        port=port,
        path=parsed.path or "/",
        query=parsed.query,
    )


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication within a discovery batch.

    Args:
        url: Absolute URL.

    Returns:
        Normalized URL string.
    """
    parsed = parse_url(url)

    port = parsed.port
    if (parsed.scheme == "http" and port == "80") or (parsed.scheme == "https" and port == "443"):
        port = ""
    netloc = f"{parsed.host}:{port}" if port else parsed.host

    path = parsed.path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    query = urlencode(query_pairs)

    return urlunparse((parsed.scheme, netloc, path, "", query, ""))


def extract_domain(url: str) -> str:
    """Extract the domain used for rate limiting and grouping.

    Args:
        url: The URL to extract domain from.

    Returns:
        The host without "www." or port, e.g. "example.com".
    """
    host = parse_url(url).host
    if host.startswith("www."):
        host = host[4:]
    return host


def is_same_domain(url: str, base_url: str) -> bool:
    """True if both URLs live on the same host (ignoring "www.")."""
    return extract_domain(url) == extract_domain(base_url)


def resolve_url(base_url: str, relative_url: str) -> str:
    return urljoin(base_url, relative_url)


def is_valid_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def file_extension(url: str) -> str:
    """Lowercased extension of the URL path, e.g. ".pdf", or ""."""
    return posixpath.splitext(urlparse(url).path)[1].lower()


def is_document_url(url: str) -> bool:
    """True if the URL points at a binary office/PDF document."""
    return file_extension(url) in DOCUMENT_EXTENSIONS


def should_skip_url(url: str) -> tuple[bool, str]:
    """Check if a URL should be skipped during discovery.

    Returns:
        Tuple of (should_skip, reason)
    """
    if not url:
        return True, "Empty URL"
    if url.startswith("#"):
        return True, "Fragment-only URL"

    parsed = urlparse(url)
    if parsed.scheme in ("javascript", "mailto", "tel", "data", "file"):
        return True, f"Non-HTTP scheme: {parsed.scheme}"

    extension = file_extension(url)
    if extension in SKIP_EXTENSIONS:
        return True, f"Skipped extension: {extension}"

    return False, ""
