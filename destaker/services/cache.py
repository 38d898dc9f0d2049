from __future__ import annotations

import json
import logging
import time
from typing import List, Optional, Tuple

from redis.asyncio import Redis

from destaker.models import PoolRecord

logger = logging.getLogger(__name__)

POOLS_KEY = "destaker:pools:latest"


class PoolCache:
    """Last-known-good pool set in Redis, kept beyond its freshness window."""

    def __init__(self, redis: Redis, keep_seconds: int = 24 * 3600):
        self.r = redis
        self.keep_seconds = keep_seconds

    async def save_latest_pools(self, pools: List[PoolRecord], fetched_at: Optional[float] = None) -> None:
        payload = json.dumps(
            {
                "fetched_at": fetched_at if fetched_at is not None else time.time(),
                "pools": [p.model_dump(mode="json") for p in pools],
            }
        )
        await self.r.set(POOLS_KEY, payload, ex=self.keep_seconds)

    async def get_latest_pools(self) -> Tuple[List[PoolRecord], Optional[float]]:
        data = await self.r.get(POOLS_KEY)
        if not data:
            return [], None
        try:
            obj = json.loads(data)
            pools = [PoolRecord.model_validate(x) for x in obj.get("pools", [])]
            return pools, obj.get("fetched_at")
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable pool cache entry: {e}")
            return [], None
