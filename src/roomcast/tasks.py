"""Background tasks driven by a fixed interval.

`PeriodicTask` runs a coroutine function every N seconds on the event loop.
`stop()` sets the task's stop event and waits for the current iteration to
finish, so shutdown never interrupts a sync half-way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run `func` every `interval` seconds until stopped.

    Example:
        ```python
        worker = PeriodicTask("sync-worker", dispatcher.dispatch, 30)
        worker.start()
        ...
        await worker.stop()
        ```
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.run_immediately = run_immediately
        self.iterations = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("Started %s (every %ss)", self.name, self.interval)

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it."""
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Stopped %s", self.name)

    async def wait(self) -> None:
        """Block until the task stops."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        if not self.run_immediately and await self._sleep():
            return
        while not self._stop.is_set():
            try:
                await self.func()
            except Exception:
                logger.exception("%s iteration failed", self.name)
            self.iterations += 1
            if await self._sleep():
                return

    async def _sleep(self) -> bool:
        """Wait one interval; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True
