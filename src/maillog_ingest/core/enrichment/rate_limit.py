"""Sliding-window request budget for the external lookup API."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """At most ``budget`` acquisitions in any rolling ``window`` seconds.

    When the budget is spent, ``acquire`` suspends until the oldest request
    leaves the window instead of failing.
    """

    def __init__(
        self,
        budget: int,
        window: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if budget < 1:
            raise ValueError("budget must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.budget = budget
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def used(self) -> int:
        self._prune(self._clock())
        return len(self._sent)

    @property
    def remaining(self) -> int:
        return self.budget - self.used

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.window:
            self._sent.popleft()

    def reset(self) -> None:
        """Periodic housekeeping: forget requests that left the window."""
        self._prune(self._clock())

    async def acquire(self) -> None:
        async with self._lock:
            now = self._clock()
            self._prune(now)
            while len(self._sent) >= self.budget:
                wait = self._sent[0] + self.window - now
                logger.warning("Rate limit reached. Waiting %.1fs", wait)
                await self._sleep(wait)
                now = self._clock()
                self._prune(now)
            self._sent.append(now)
