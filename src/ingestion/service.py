from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urldefrag, urljoin, urlsplit

from bs4 import BeautifulSoup

from config import settings
from src.ingestion import firecrawl_client
from src.ingestion.links import normalize_host
from src.storage.models import LinkRef

logger = logging.getLogger(__name__)

_H1_RE = re.compile(r"^# (.+)$", re.MULTILINE)
_H2_RE = re.compile(r"^## (.+)$", re.MULTILINE)

# result of one page fetch; success=False carries the reason in error instead of raising
@dataclass
class PageFetch:
    url: str
    success: bool
    markdown: str = ""
    title: str | None = None
    internal_links: list[LinkRef] = field(default_factory=list)
    external_links: list[LinkRef] = field(default_factory=list)
    error: str | None = None

# sometimes, Firecrawl returns different response shapes

# converts anything into a plain dict
def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        dumped = value.model_dump()
        if isinstance(dumped, dict):
            return dumped
    return {}

# safely reads single fields from metadata regardless of metadata type
def _metadata_value(metadata: Any, key: str) -> Any:
    if metadata is None:
        return None
    if isinstance(metadata, dict):
        return metadata.get(key)
    return getattr(metadata, key, None)


def _field(result: Any, payload: dict[str, Any], name: str) -> Any:
    value = getattr(result, name, None)
    if value is None:
        value = payload.get(name)
    return value


def _soup_from_html(text: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(text, "lxml")
    except Exception:
        return BeautifulSoup(text, "html.parser")

# anchors carry text and title attributes that the bare Firecrawl link list drops,
# so the html is the preferred source; the link list fills in anything the html missed

def _harvest_links(html: str | None, links: Any, base_url: str) -> list[LinkRef]:
    harvested: list[LinkRef] = []
    seen: set[str] = set()

    def _add(href: str, text: str = "", title: str = "") -> None:
        absolute = urldefrag(urljoin(base_url, href.strip())).url
        if not absolute or absolute in seen:
            return
        seen.add(absolute)
        harvested.append(LinkRef(href=absolute, text=text, title=title))

    if isinstance(html, str) and html:
        for anchor in _soup_from_html(html).find_all("a", href=True):
            href = anchor.get("href")
            if not isinstance(href, str) or not href.strip() or href.startswith("#"):
                continue
            title = anchor.get("title")
            _add(
                href,
                text=anchor.get_text(" ", strip=True),
                title=title if isinstance(title, str) else "",
            )

    if isinstance(links, list):
        for link in links:
            if isinstance(link, str) and link.strip():
                _add(link)

    return harvested


def _split_links(links: list[LinkRef], page_url: str) -> tuple[list[LinkRef], list[LinkRef]]:
    page_host = normalize_host(urlsplit(page_url).hostname)
    internal: list[LinkRef] = []
    external: list[LinkRef] = []
    for link in links:
        parts = urlsplit(link.href)
        if parts.scheme not in ("http", "https"):
            continue
        if normalize_host(parts.hostname) == page_host:
            internal.append(link)
        else:
            external.append(link)
    return internal, external


def extract_title(markdown: str, fallback: str) -> str:
    """First ``#`` heading, else first ``##`` heading, else ``fallback``."""
    for pattern in (_H1_RE, _H2_RE):
        match = pattern.search(markdown)
        if match:
            return match.group(1).strip()
    return fallback


def _normalize_page(result: Any, url: str) -> PageFetch:
    payload = _as_dict(result)
    markdown = _field(result, payload, "markdown")
    html = _field(result, payload, "html")
    links = _field(result, payload, "links")
    metadata = _field(result, payload, "metadata")

    if not isinstance(markdown, str) or not markdown.strip():
        return PageFetch(url=url, success=False, error="empty markdown")

    source_url = _metadata_value(metadata, "source_url") or url
    internal, external = _split_links(_harvest_links(html, links, source_url), source_url)
    title = _metadata_value(metadata, "title")

    return PageFetch(
        url=url,
        success=True,
        markdown=markdown,
        title=title if isinstance(title, str) else None,
        internal_links=internal,
        external_links=external,
    )


async def fetch(url: str) -> PageFetch:
    """Fetch one page as markdown plus classified links.  Never raises."""
    try:
        result = await asyncio.wait_for(
            firecrawl_client.scrape(url), timeout=settings.fetch_timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.warning("Fetch of %s timed out after %ss", url, settings.fetch_timeout_seconds)
        return PageFetch(url=url, success=False, error="timeout")
    except Exception as exc:
        logger.warning("Fetch of %s failed: %s", url, exc)
        return PageFetch(url=url, success=False, error=str(exc))

    page = _normalize_page(result, url)
    if not page.success:
        logger.warning("Fetch of %s returned no content", url)
    return page
