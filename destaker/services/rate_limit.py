from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RateLimitPolicy:
    """Pacing for sequential calls to a rate-limited API.

    One call at a time, at least ``min_interval`` seconds between call starts.
    Each 429 grows the backoff by ``multiplier`` up to ``max_backoff``; a
    successful call resets it.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        backoff: float = 5.0,
        multiplier: float = 2.0,
        max_backoff: float = 60.0,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self.base_backoff = max(0.0, backoff)
        self.multiplier = max(1.0, multiplier)
        self.max_backoff = max_backoff
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_call: float | None = None
        self._consecutive_limited = 0

    @property
    def max_concurrent(self) -> int:
        return 1

    def next_backoff(self) -> float:
        delay = self.base_backoff * (self.multiplier ** self._consecutive_limited)
        return min(delay, self.max_backoff)

    async def acquire(self) -> None:
        """Wait until the next call is allowed to start."""
        async with self._lock:
            if self._last_call is not None:
                wait = self.min_interval - (self._clock() - self._last_call)
                if wait > 0:
                    await self._sleep(wait)
            self._last_call = self._clock()

    def record_success(self) -> None:
        self._consecutive_limited = 0

    async def record_rate_limited(self) -> float:
        """Sleep through the current backoff and return how long that was."""
        delay = self.next_backoff()
        self._consecutive_limited += 1
        logger.warning(f"Rate limited, waiting {delay:.1f}s")
        if delay > 0:
            await self._sleep(delay)
        return delay
