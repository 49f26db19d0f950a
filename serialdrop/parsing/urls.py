"""URL normalization and domain extraction.

Chapter URLs are the dedup key of ingestion, so every candidate URL passes
through :func:`normalize_url` before it is compared or stored. Rate budgets
are keyed by :func:`registrable_domain` so that ``www.example.com`` and
``cdn.example.com`` share one budget.

Examples:
    >>> normalize_url("HTTPS://Example.com:443/fiction/1#comments")
    'https://example.com/fiction/1'
    >>> registrable_domain("https://chapters.example.co.uk/page")
    'example.co.uk'
"""

from __future__ import annotations

import re
from typing import NamedTuple
from urllib.parse import urljoin, urlparse, urlunparse

import tldextract

# Bundled public suffix snapshot only; never fetch the list at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=())

_IPV4_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


class ParsedURL(NamedTuple):
    """Parsed URL components."""
    scheme: str
    host: str
    port: str
    path: str
    query: str
    fragment: str


def parse_url(url: str) -> ParsedURL:
    """Parse a URL into normalized components.

    Args:
        url: The URL to parse

    Returns:
        ParsedURL with lowercase scheme and host and a non-empty path
    """
    parsed = urlparse(url.strip())

    host = parsed.netloc
    # Drop credentials if present
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    port = ""
    if ":" in host:
        if host.startswith("["):
            # IPv6: [::1]:8080
            bracket_end = host.find("]")
            if bracket_end != -1 and bracket_end + 1 < len(host) and host[bracket_end + 1] == ":":
                port = host[bracket_end + 2:]
                host = host[:bracket_end + 1]
        else:
            host, port = host.rsplit(":", 1)

    return ParsedURL(
        scheme=parsed.scheme.lower(),
        host=host.lower(),
        port=port,
        path=parsed.path or "/",
        query=parsed.query,
        fragment=parsed.fragment,
    )


def normalize_url(url: str, strip_fragment: bool = True, strip_query: bool = False) -> str:
    """Normalize a URL for consistent comparison.

    Normalization lowercases scheme and host, removes default ports, ensures a
    leading slash and drops the fragment unless asked otherwise. The query is
    kept by default because some sources address chapters by query string.
    """
    parsed = parse_url(url)

    port = parsed.port
    if (parsed.scheme == "http" and port == "80") or (parsed.scheme == "https" and port == "443"):
        port = ""

    netloc = parsed.host
    if port:
        netloc = f"{netloc}:{port}"

    fragment = "" if strip_fragment else parsed.fragment
    query = "" if strip_query else parsed.query

    return urlunparse((parsed.scheme, netloc, parsed.path, "", query, fragment))


def resolve_url(base_url: str, relative_url: str) -> str:
    """Resolve a relative link against the page it was found on."""
    return urljoin(base_url, relative_url)


def is_valid_http_url(url: str) -> bool:
    """Check if a URL is an absolute HTTP/HTTPS URL."""
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def should_skip_url(url: str) -> tuple[bool, str]:
    """Check if a link found on a table-of-contents page cannot be a chapter.

    Returns:
        Tuple of (should_skip, reason)
    """
    if not url or not url.strip():
        return True, "Empty URL"

    if url.startswith("#"):
        return True, "Fragment-only URL"

    parsed = urlparse(url)
    if parsed.scheme in ("javascript", "mailto", "tel", "data", "file"):
        return True, f"Non-HTTP scheme: {parsed.scheme}"

    skip_extensions = (
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
        ".mp3", ".mp4", ".zip", ".css", ".js",
    )
    path_lower = parsed.path.lower()
    for ext in skip_extensions:
        if path_lower.endswith(ext):
            return True, f"Skipped extension: {ext}"

    return False, ""


def registrable_domain(url_or_host: str) -> str:
    """Extract the public-suffix-aware registrable domain.

    Accepts a full URL or a bare host. IP addresses and single-label hosts
    (``localhost``) are returned unchanged.

    Examples:
        >>> registrable_domain("https://www.royalroad.com/fiction/1")
        'royalroad.com'
        >>> registrable_domain("shop.store.example.co.uk")
        'example.co.uk'
        >>> registrable_domain("http://localhost:8080/feed")
        'localhost'
    """
    host = parse_url(url_or_host).host if "://" in url_or_host else url_or_host.lower()
    host = host.split(":")[0] if not host.startswith("[") else host

    if _IPV4_RE.match(host) or host.startswith("[") or "." not in host:
        return host

    extracted = _extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    # Unknown suffix (e.g. an internal TLD): fall back to the host itself
    return host


__all__ = [
    "ParsedURL",
    "is_valid_http_url",
    "normalize_url",
    "parse_url",
    "registrable_domain",
    "resolve_url",
    "should_skip_url",
]
