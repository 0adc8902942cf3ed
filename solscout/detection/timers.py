from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger(__name__)


class RepeatingTask:
    """Run an async callable every ``interval`` seconds until stopped.

    The loop waits on an internal event rather than sleeping so :meth:`stop`
    interrupts the wait immediately. Exceptions from the callable are logged
    and the loop carries on with the next tick.
    """

    def __init__(
        self,
        func: Callable[[], Awaitable[Any] | Any],
        interval: float,
        *,
        name: str = "repeating-task",
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._func = func
        self.interval = float(interval)
        self.name = name
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        self._stopped.set()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _tick(self) -> None:
        try:
            result = self._func()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("%s iteration failed", self.name)

    async def _run(self) -> None:
        if self.run_immediately:
            await self._tick()
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopped.is_set():
                break
            await self._tick()
