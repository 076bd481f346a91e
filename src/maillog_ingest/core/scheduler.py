"""Fixed-cadence asyncio timers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Fire ``callback`` every ``interval`` seconds, like a cron tick.

    Ticks do not wait for the previous run to finish; callbacks that must not
    overlap guard themselves. A failing callback is logged and the timer keeps
    going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any] | Any],
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"timer:{self.name}")
        logger.info("Started %s every %s seconds", self.name, self.interval)

    async def _loop(self) -> None:
        if self._run_immediately:
            self._fire()
        while True:
            await asyncio.sleep(self.interval)
            self._fire()

    def _fire(self) -> None:
        task = asyncio.create_task(self._run_once(), name=f"tick:{self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_once(self) -> None:
        try:
            result = self._callback()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s failed", self.name)

    async def stop(self) -> None:
        """Clear the timer. In-flight runs are cancelled; uncommitted work is re-read later."""
        tasks = list(self._inflight)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._inflight.clear()
