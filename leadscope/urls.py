"""URL normalization helpers used by the crawler."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional
from urllib.parse import urldefrag, urljoin, urlsplit, urlunsplit

import publicsuffix2

SKIP_PATTERNS = tuple(
    re.compile(pattern, re.I)
    for pattern in (
        r"/blog(/|$)",
        r"/news(/|$)",
        r"/articles?(/|$)",
        r"/category(/|$)",
        r"/tag(/|$)",
        r"/author(/|$)",
        r"/archive(/|$)",
        r"/search(/|$)",
        r"/feed(/|$)",
        r"/sitemap",
        r"\.xml$",
        r"\.rss$",
        r"\.json$",
    )
)

NON_HTML_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp",
    ".css", ".js", ".mjs", ".map", ".zip", ".rar", ".gz", ".tar", ".7z",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".webm", ".woff", ".woff2", ".ttf", ".eot",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".exe", ".dmg",
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


@lru_cache(maxsize=1)
def _suffix_list() -> publicsuffix2.PublicSuffixList:
    return publicsuffix2.PublicSuffixList()


def normalize_url(raw: Optional[str]) -> Optional[str]:
    """Return a canonical absolute http(s) URL, or ``None`` when unparseable.

    Bare hosts (``example.com``) are assumed to be https.
    """

    if not raw:
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    if candidate.startswith("//"):
        candidate = f"https:{candidate}"
    elif "://" not in candidate:
        if re.match(r"^[a-z][a-z0-9+.-]*:", candidate, re.I) and not re.match(r"^[^:/]+:\d", candidate):
            return None
        candidate = f"https://{candidate}"
    return canonicalize(candidate)


def canonicalize(url: str) -> Optional[str]:
    """Canonical form used for visited-set membership.

    Scheme and host are lowercased, default ports and fragments dropped, query
    parameters sorted, and a trailing slash removed from every path except the root.
    """

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return None
    host = (parts.hostname or "").lower().rstrip(".")
    if not host or " " in host:
        return None
    if "." not in host and host != "localhost":
        return None
    netloc = host
    if port and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"
    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"
    query = "&".join(sorted(part for part in parts.query.split("&") if part))
    return urlunsplit((scheme, netloc, path, query, ""))


def resolve_url(base_url: str, href: str) -> Optional[str]:
    """Resolve ``href`` against ``base_url`` and canonicalize; ``None`` for non-web links."""

    href = (href or "").strip()
    if not href or href.startswith(("#", "mailto:", "tel:", "javascript:", "data:")):
        return None
    absolute, _ = urldefrag(urljoin(base_url, href))
    return canonicalize(absolute)


def origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def registrable_domain(url_or_host: str) -> str:
    """eTLD+1 of a URL or host (``shop.example.co.uk`` -> ``example.co.uk``)."""

    host = urlsplit(url_or_host).hostname if "://" in url_or_host else url_or_host
    host = (host or "").lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    try:
        return _suffix_list().get_public_suffix(host) or host
    except Exception:
        return host


def same_registrable_domain(url_a: str, url_b: str) -> bool:
    return registrable_domain(url_a) == registrable_domain(url_b)


def should_skip_url(url: str) -> bool:
    """True for blog/news/archive/feed style URLs that never carry contact data."""

    path = urlsplit(url).path or "/"
    return any(pattern.search(path) for pattern in SKIP_PATTERNS)


def is_crawlable_url(url: str) -> bool:
    path = (urlsplit(url).path or "").lower()
    return not path.endswith(NON_HTML_EXTENSIONS)
