# client handles only API access and exposes scrape
# failures propagate; service.fetch() is the layer that turns them into a failed PageFetch

from __future__ import annotations

import asyncio
from typing import Any

from firecrawl import FirecrawlApp

from config import settings

_APP: FirecrawlApp | None = None

# api key management - the client is built on first use so importing this module never needs credentials


def _get_app() -> FirecrawlApp:
    global _APP
    if _APP is None:
        if not settings.firecrawl_api_key:
            raise RuntimeError(
                "Missing FIRECRAWL_API_KEY - please set it in your environment or .env"
            )
        _APP = FirecrawlApp(api_key=settings.firecrawl_api_key)
    return _APP

# URL string input, optional dict of options to override defaults
# the SDK call is blocking, so it runs in a worker thread to keep the event loop free


async def scrape(url: str, options: dict[str, Any] | None = None) -> Any:
    merged_options = {**settings.firecrawl_default_scrape_options, **(options or {})}
    app = _get_app()
    return await asyncio.to_thread(app.scrape, url, **merged_options)
