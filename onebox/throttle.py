"""Fixed-interval call spacing for the classification capability."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class IntervalScheduler:
    """Grants one slot per *interval* seconds, in request order.

    Each ``acquire()`` reserves the next free slot under a lock and then
    sleeps outside the lock until that slot is reached, so spacing is
    independent of how callers are batched.
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._interval = max(0.0, interval)
        self._clock = clock
        self._sleep = sleep
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        return self._interval

    async def acquire(self) -> float:
        """Wait for the next slot; returns the seconds waited."""
        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
            delay = slot - now
        if delay > 0:
            await self._sleep(delay)
        return delay
