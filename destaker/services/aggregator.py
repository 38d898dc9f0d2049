from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from destaker.clients.defillama import DEFILLAMA_POOLS_URL, fetch_pools
from destaker.exceptions import UpstreamFetchError
from destaker.http import HttpClient
from destaker.markets import ASSET_PATTERNS
from destaker.models import PoolRecord
from destaker.services.cache import PoolCache
from destaker.services.matcher import filter_min_tvl, match_pools, sort_by_tvl

logger = logging.getLogger(__name__)


class PoolAggregator:
    """Owns the pool set: fetches it, keeps it fresh, serves last-known-good on failure."""

    def __init__(
        self,
        http: HttpClient,
        url: str = DEFILLAMA_POOLS_URL,
        cache: Optional[PoolCache] = None,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.http = http
        self.url = url
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pools: List[PoolRecord] = []
        self._last_refresh_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def last_refresh_at(self) -> int | None:
        return int(self._last_refresh_at) if self._last_refresh_at is not None else None

    def is_fresh(self) -> bool:
        if self._last_refresh_at is None:
            return False
        return self._clock() - self._last_refresh_at < self.ttl_seconds

    async def refresh(self) -> List[PoolRecord]:
        """Fetch the full pool list upstream, falling back to the last good set."""
        async with self._lock:
            try:
                pools = await fetch_pools(self.http, self.url)
            except UpstreamFetchError as e:
                fallback = await self._last_known_good()
                if fallback:
                    logger.warning(f"Pool fetch failed, serving {len(fallback)} last-known-good pools: {e}")
                    return fallback
                raise

            self._pools = pools
            self._last_refresh_at = self._clock()
            if self.cache is not None:
                try:
                    await self.cache.save_latest_pools(pools, fetched_at=self._last_refresh_at)
                except Exception as e:
                    logger.warning(f"Failed to cache pools: {e}")
            return list(pools)

    async def get_pools(self) -> List[PoolRecord]:
        if self.is_fresh():
            return list(self._pools)
        if self.cache is not None and self._last_refresh_at is None:
            cached, fetched_at = await self._read_cache()
            if cached and fetched_at is not None and self._clock() - fetched_at < self.ttl_seconds:
                self._pools = cached
                self._last_refresh_at = fetched_at
                return list(cached)
        return await self.refresh()

    async def _last_known_good(self) -> List[PoolRecord]:
        if self._pools:
            return list(self._pools)
        cached, _ = await self._read_cache()
        return cached

    async def _read_cache(self):
        if self.cache is None:
            return [], None
        try:
            return await self.cache.get_latest_pools()
        except Exception as e:
            logger.warning(f"Failed to read pool cache: {e}")
            return [], None

    def current(self) -> List[PoolRecord]:
        return list(self._pools)


def tracked_pools(pools: List[PoolRecord], min_tvl_usd: float) -> List[PoolRecord]:
    """Pools relevant to any configured market, largest TVL first."""
    seen: set[str] = set()
    out: List[PoolRecord] = []
    for pattern in ASSET_PATTERNS.values():
        for p in match_pools(pools, pattern):
            if p.pool_id in seen:
                continue
            seen.add(p.pool_id)
            out.append(p)
    return sort_by_tvl(filter_min_tvl(out, min_tvl_usd))
