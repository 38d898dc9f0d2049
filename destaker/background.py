from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from destaker.services.aggregator import PoolAggregator

logger = logging.getLogger(__name__)


class BackgroundRefresher:
    """Keeps the pool set warm and, optionally, runs the settlement workflow on a schedule."""

    def __init__(
        self,
        aggregator: PoolAggregator,
        refresh_interval: float,
        settle: Optional[Callable[[asyncio.Event], Awaitable[dict]]] = None,
        settle_interval: float = 0,
    ):
        self.aggregator = aggregator
        self.refresh_interval = refresh_interval
        self.settle = settle
        self.settle_interval = settle_interval
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._refresh_loop()))
        if self.settle is not None and self.settle_interval > 0:
            self._tasks.append(asyncio.create_task(self._settle_loop()))

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            await task
        self._tasks = []

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _refresh_loop(self) -> None:
        logger.info(f"Background pool refresher started (interval={self.refresh_interval}s)")
        while not self._stopping.is_set():
            try:
                pools = await self.aggregator.refresh()
                logger.info(f"Refreshed pools: {len(pools)}")
            except Exception as e:
                logger.exception(f"Refresh iteration failed: {e}")
            await self._sleep(self.refresh_interval)

    async def _settle_loop(self) -> None:
        logger.info(f"Scheduled settlement started (interval={self.settle_interval}s)")
        # first pass waits one interval so startup is not blocked on the AI gateway
        await self._sleep(self.settle_interval)
        while not self._stopping.is_set():
            try:
                report = await self.settle(self._stopping)
                logger.info(f"Scheduled settlement finished: {report.get('execution', {}).get('status')}")
            except Exception as e:
                logger.exception(f"Scheduled settlement failed: {e}")
            await self._sleep(self.settle_interval)
