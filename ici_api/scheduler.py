"""
Background refresh of the snapshot cache.

Two independent asyncio tasks: a slow base refresh of the published index
document and a fast market refresh that merges three quotes. A failed tick
keeps whatever the cache already holds and waits for the next tick.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from .config import Settings
from .errors import UpstreamFetchError
from .fetchers import MARKET_FETCHERS, fetch_index_document
from .snapshot import SnapshotCache

logger = logging.getLogger(__name__)

MarketFetcher = Callable[[httpx.AsyncClient], Awaitable[Dict[str, Any]]]
BaseFetcher = Callable[[httpx.AsyncClient, str], Awaitable[Dict[str, Any]]]

REFRESH_ERRORS = (UpstreamFetchError, asyncio.TimeoutError, httpx.HTTPError, ValueError, TypeError)


class RefreshScheduler:
    def __init__(
        self,
        cache: SnapshotCache,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        base_fetcher: BaseFetcher = fetch_index_document,
        market_fetchers: Optional[Mapping[str, MarketFetcher]] = None,
    ):
        self.cache = cache
        self.settings = settings
        self.base_fetcher = base_fetcher
        self.market_fetchers = dict(market_fetchers or MARKET_FETCHERS)
        self._client = client
        self._owns_client = client is None
        self._tasks: list = []

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.upstream_timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": "ici-api/1.0"},
            )
        return self._client

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.settings.upstream_timeout_seconds)

    async def refresh_base(self) -> bool:
        """Fetch the index document; True when the cache was replaced."""
        try:
            document = await self._bounded(self.base_fetcher(self.client, self.settings.index_json_url))
        except REFRESH_ERRORS as exc:
            logger.warning("Base refresh failed, keeping previous snapshot: %s", _describe(exc))
            return False
        self.cache.write_base(document)
        logger.info("Base snapshot refreshed (score=%s)", document.get("score"))
        return True

    async def refresh_markets(self) -> bool:
        """Fetch all quotes concurrently; merge only when every provider succeeded."""
        if not self.cache.ready:
            return False
        names = list(self.market_fetchers)
        results = await asyncio.gather(
            *(self._bounded(self.market_fetchers[name](self.client)) for name in names),
            return_exceptions=True,
        )
        failures = [(name, result) for name, result in zip(names, results) if isinstance(result, BaseException)]
        for name, exc in failures:
            if not isinstance(exc, REFRESH_ERRORS):
                raise exc
            logger.warning("Market refresh failed for %s, keeping previous markets: %s", name, _describe(exc))
        if failures:
            return False
        return self.cache.merge_markets(dict(zip(names, results)))

    async def _run_periodically(self, name: str, step: Callable[[], Awaitable[bool]], period: float):
        while True:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error in %s refresh", name)
            await asyncio.sleep(period)

    def start(self) -> None:
        if self.is_running:
            return
        self._tasks = [
            asyncio.create_task(
                self._run_periodically("base", self.refresh_base, self.settings.base_refresh_seconds),
                name="ici-base-refresh",
            ),
            asyncio.create_task(
                self._run_periodically("markets", self.refresh_markets, self.settings.market_refresh_seconds),
                name="ici-market-refresh",
            ),
        ]
        logger.info(
            "Refresh scheduler started (base every %ss, markets every %ss)",
            self.settings.base_refresh_seconds,
            self.settings.market_refresh_seconds,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("Refresh scheduler stopped")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or exc.__class__.__name__
