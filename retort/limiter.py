"""Process-wide minimum-interval throttle for upstream calls.

One shared gate, not per caller: concurrent requests queue on an
asyncio.Lock and leave it spaced at least ``min_interval`` apart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 1.0


class RateLimiter:
    """Suspends callers so consecutive upstream calls are spaced apart."""

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.last_call_at: float | None = None

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def await_turn(self) -> None:
        """Wait out the rest of the interval since the last call, then claim a turn."""
        async with self._lock:
            if self.last_call_at is not None:
                elapsed = self._clock() - self.last_call_at
                if elapsed < self._min_interval:
                    wait = self._min_interval - elapsed
                    logger.debug("Rate limit: waiting %.3fs", wait)
                    await self._sleep(wait)
            self.last_call_at = self._clock()
