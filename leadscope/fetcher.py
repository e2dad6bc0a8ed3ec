"""Page fetchers used by the crawler.

``HttpFetcher`` is the default; ``BrowserFetcher`` renders pages through a
headless browser for sites that build their contact details with JavaScript.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog
from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from .config import CrawlSettings, crawl_settings
from .errors import FetchError

logger = structlog.get_logger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")


@dataclass
class FetchResult:
    url: str
    final_url: str
    status: int
    content_type: str
    content: str
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status == 200


class Fetcher(Protocol):
    async def fetch(self, url: str, timeout_s: float) -> FetchResult:
        ...


class HttpFetcher:
    """Plain HTTP fetcher with redirect following and a response size cap."""

    def __init__(self, client: httpx.AsyncClient, settings: CrawlSettings = crawl_settings) -> None:
        self._client = client
        self._settings = settings

    async def fetch(self, url: str, timeout_s: float) -> FetchResult:
        headers = {
            "User-Agent": self._settings.user_agent,
            "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5",
            "Accept-Language": "el,en;q=0.8",
        }
        try:
            async with self._client.stream(
                "GET", url, headers=headers, timeout=timeout_s, follow_redirects=True
            ) as response:
                content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                final_url = str(response.url)
                if response.status_code != 200:
                    return FetchResult(url, final_url, response.status_code, content_type, "")
                if content_type and not content_type.startswith(HTML_CONTENT_TYPES):
                    raise FetchError(f"Unsupported content type {content_type} for {url}")

                body = bytearray()
                truncated = False
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self._settings.max_response_bytes:
                        del body[self._settings.max_response_bytes :]
                        truncated = True
                        break
                text = bytes(body).decode(response.encoding or "utf-8", errors="replace")
        except httpx.HTTPError as exc:
            raise FetchError(f"{type(exc).__name__}: {exc}") from exc

        if truncated:
            logger.info("response_truncated", url=url, limit=self._settings.max_response_bytes)
        return FetchResult(url, final_url, 200, content_type or "text/html", text, truncated)


class BrowserFetcher:
    """Headless-browser fetcher backed by crawl4ai; call ``start`` before use."""

    def __init__(self, settings: CrawlSettings = crawl_settings) -> None:
        self._settings = settings
        self._crawler: Optional[AsyncWebCrawler] = None

    async def start(self) -> None:
        if self._crawler is None:
            browser_config = BrowserConfig(headless=True, user_agent=self._settings.user_agent)
            self._crawler = AsyncWebCrawler(config=browser_config)
            await self._crawler.start()

    async def close(self) -> None:
        if self._crawler is not None:
            await self._crawler.close()
            self._crawler = None

    async def fetch(self, url: str, timeout_s: float) -> FetchResult:
        if self._crawler is None:
            await self.start()
        config = CrawlerRunConfig(cache_mode=CacheMode.BYPASS, page_timeout=int(timeout_s * 1000))
        try:
            result = await self._crawler.arun(url, config=config)
        except Exception as exc:
            raise FetchError(f"Browser fetch failed for {url}: {exc}") from exc

        status = result.status_code or (200 if result.success else 0)
        if not result.success:
            if status and status != 200:
                return FetchResult(url, url, status, "text/html", "")
            raise FetchError(result.error_message or f"Browser fetch failed for {url}")
        html = (result.html or "")[: self._settings.max_response_bytes]
        final_url = getattr(result, "redirected_url", None) or result.url or url
        return FetchResult(url, final_url, status, "text/html", html)
