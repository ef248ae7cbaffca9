"""URL normalization and crawl-scope filtering.

Two public entry points for the crawl orchestrator:

  normalize_root_url(url)
      Canonical form of a crawl's starting URL.  Raises InvalidUrlError
      for anything that is not an absolute http(s) URL.

  normalize_link(href, page_url, root_url)
      Canonical form of a discovered link, or None when the link falls
      outside the crawl: non-http(s) scheme, a skipped file extension,
      or a host different from the root's.  Hosts are compared
      case-insensitively and a leading ``www.`` is ignored.

Canonical form: lowercase scheme and host, fragment and query removed,
empty path replaced by ``/``.
"""

from __future__ import annotations

from urllib.parse import urljoin, urlsplit, urlunsplit

from config import settings
from src.errors import InvalidUrlError

_HTTP_SCHEMES = ("http", "https")


def normalize_host(host: str | None) -> str:
    host = (host or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def same_site(url: str, other: str) -> bool:
    host = normalize_host(urlsplit(url).hostname)
    return bool(host) and host == normalize_host(urlsplit(other).hostname)


def canonicalize(url: str) -> str | None:
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in _HTTP_SCHEMES or not parts.hostname:
        return None
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))


def normalize_root_url(url: str) -> str:
    canonical = canonicalize(url or "")
    if canonical is None:
        raise InvalidUrlError(url)
    return canonical


def normalize_link(
    href: str,
    page_url: str,
    root_url: str,
    skipped_extensions: list[str] | None = None,
) -> str | None:
    href = (href or "").strip()
    if not href or href.startswith("#"):
        return None

    # resolves root-relative ("/about") and protocol-relative ("//host/x")
    # links against the page they were found on
    canonical = canonicalize(urljoin(page_url, href))
    if canonical is None:
        return None

    extensions = settings.crawl_skipped_extensions if skipped_extensions is None else skipped_extensions
    path = urlsplit(canonical).path.lower()
    if path.endswith(tuple(ext.lower() for ext in extensions)):
        return None

    if not same_site(canonical, root_url):
        return None
    return canonical
