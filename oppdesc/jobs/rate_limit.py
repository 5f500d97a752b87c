from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import time


class TokenBucket:
    """Shared rate limiter for the backfill workers.

    Starts full. ``acquire()`` takes one token, polling until one has refilled.
    Capacity is at least one token so rates below 1/s still make progress.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        *,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = max(1.0, capacity)
        self.refill_rate = refill_rate
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._last_refill = clock()

    @property
    def tokens(self) -> float:
        return self._tokens

    def try_take(self) -> bool:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        while not self.try_take():
            await self._sleep(self.poll_interval)
