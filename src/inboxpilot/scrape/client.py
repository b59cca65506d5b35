"""Web search / site map / page scrape API wrapper."""

from __future__ import annotations

import logging

import httpx

from inboxpilot.errors import ConfigurationError, raise_for_status
from inboxpilot.retry import NETWORK_RETRY, with_retry

logger = logging.getLogger(__name__)


class ScraperClient:
    """httpx client for a Firecrawl-style scraping API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev/v1",
        timeout: float = 60.0,
        http_client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ConfigurationError("Scraper API key not configured")
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: dict) -> dict:
        resp = self._client.post(f"{self.base_url}{path}", json=payload)
        raise_for_status(resp.status_code, resp.text, resp.headers.get("retry-after"))
        return resp.json()

    def search(self, query: str, limit: int = 50) -> list[dict]:
        """Web search. Returns [{"url", "title", "description"}, ...]."""
        data = with_retry(NETWORK_RETRY)(self._post)("/search", {"query": query, "limit": limit})
        return data.get("data") or []

    def map_site(self, url: str, limit: int = 20) -> list[str]:
        """List URLs found on a site."""
        data = with_retry(NETWORK_RETRY)(self._post)("/map", {"url": url, "limit": limit})
        return [link for link in data.get("links") or [] if isinstance(link, str)]

    def scrape_page(self, url: str) -> dict:
        """Scrape one page as markdown. Returns {"markdown", "title"}."""
        data = with_retry(NETWORK_RETRY)(self._post)(
            "/scrape", {"url": url, "formats": ["markdown"], "onlyMainContent": True},
        )
        page = data.get("data") or {}
        return {
            "markdown": page.get("markdown") or "",
            "title": (page.get("metadata") or {}).get("title"),
        }
