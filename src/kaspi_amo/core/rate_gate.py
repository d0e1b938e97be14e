"""Minimum-interval pacing gate for rate-limited APIs.

amoCRM rejects clients that exceed ~7 requests/second. Every outbound
call awaits ``RateGate.wait()`` first; the gate hands out slots spaced at
least ``1 / rps`` seconds apart. Waiters queue on an asyncio.Lock, which
wakes them in arrival order.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class RateGate:
    """FIFO pacing gate enforcing a minimum interval between calls.

    Args:
        rps: Maximum requests per second.
        clock: Monotonic clock, injectable for tests.
        sleep: Async sleep, injectable for tests.
    """

    def __init__(
        self,
        rps: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rps <= 0:
            raise ValueError("rps must be positive")
        self.min_interval = 1.0 / rps
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_slot = 0.0
        self._waiting = 0

    @property
    def queue_size(self) -> int:
        """Number of callers currently waiting for a slot."""
        return self._waiting

    async def wait(self) -> None:
        """Block until this caller's slot opens."""
        self._waiting += 1
        try:
            async with self._lock:
                now = self._clock()
                delay = self._next_slot - now
                if delay > 0:
                    await self._sleep(delay)
                    now = self._clock()
                self._next_slot = max(now, self._next_slot) + self.min_interval
        finally:
            self._waiting -= 1

    def reset(self) -> None:
        self._next_slot = 0.0
