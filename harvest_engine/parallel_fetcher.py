"""
Parallel page fetcher: many GETs at once with a bounded in-flight window.

URLs are processed in chunks of at most max_in_flight; each chunk runs
concurrently on one httpx.AsyncClient and must settle before the next
starts. An optional callback sees each FetchResult as soon as its request
finishes. TLS verification is off: pages are only scanned for addresses,
never trusted.
"""

import asyncio
import itertools
import logging
from typing import Callable, Iterable, Optional

import httpx

from harvest_engine import page_filter
from harvest_engine.config import cfg
from harvest_engine.models import FetchResult

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
]

_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,text/plain;q=0.8,*/*;q=0.5",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

ResultCallback = Callable[[FetchResult], None]


class ParallelFetcher:
    def __init__(self, max_in_flight: int | None = None, timeout: float | None = None,
                 connect_timeout: float | None = None, max_redirects: int | None = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.max_in_flight = max(1, max_in_flight or cfg.fetch_max_in_flight)
        self.timeout = timeout or cfg.fetch_timeout
        self.connect_timeout = connect_timeout or cfg.fetch_connect_timeout
        self.max_redirects = cfg.fetch_max_redirects if max_redirects is None else max_redirects
        self._transport = transport
        self._agents = itertools.cycle(USER_AGENTS)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
            limits=httpx.Limits(max_connections=self.max_in_flight,
                                max_keepalive_connections=self.max_in_flight),
            follow_redirects=True,
            max_redirects=self.max_redirects,
            verify=False,
            headers=_BASE_HEADERS,
            transport=self._transport,
        )

    async def _fetch_one(self, client: httpx.AsyncClient, url: str) -> FetchResult:
        try:
            resp = await client.get(url, headers={"User-Agent": next(self._agents)})
        # InvalidURL and IDNA errors (a ValueError) are raised while building the request
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning("Fetch failed for %s: %s", url, e.__class__.__name__)
            return FetchResult(url=url, error=f"{e.__class__.__name__}: {e}".rstrip(": "))

        content_type = resp.headers.get("content-type", "")
        if resp.status_code != 200:
            return FetchResult(url=url, http_status=resp.status_code, content_type=content_type,
                               error=f"HTTP {resp.status_code}")

        body = resp.content
        reason = page_filter.rejection_reason(body, content_type)
        if reason:
            return FetchResult(url=url, http_status=200, content_type=content_type, error=reason)

        return FetchResult(url=url, content=resp.text, http_status=200,
                           content_type=content_type, success=True)

    async def _fetch_reporting(self, client, url: str, on_result: Optional[ResultCallback]):
        result = await self._fetch_one(client, url)
        if on_result is not None:
            try:
                on_result(result)
            except Exception:
                logger.exception("Result callback failed for %s", url)
        return result

    async def fetch_many_async(self, urls: Iterable[str],
                               on_result: Optional[ResultCallback] = None) -> list[FetchResult]:
        url_list = [u for u in urls if u]
        results: list[FetchResult] = []
        if not url_list:
            return results

        async with self._client() as client:
            for start in range(0, len(url_list), self.max_in_flight):
                chunk = url_list[start:start + self.max_in_flight]
                results.extend(await asyncio.gather(
                    *(self._fetch_reporting(client, u, on_result) for u in chunk)
                ))

        ok = sum(1 for r in results if r.success)
        logger.info("Fetched %d URLs: %d ok, %d failed", len(results), ok, len(results) - ok)
        return results

    def fetch_many(self, urls: Iterable[str],
                   on_result: Optional[ResultCallback] = None) -> list[FetchResult]:
        """Blocking wrapper for callers outside an event loop (worker processes)."""
        return asyncio.run(self.fetch_many_async(urls, on_result))

    def fetch(self, url: str) -> FetchResult:
        return self.fetch_many([url])[0]
