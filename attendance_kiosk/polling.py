from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional


class PollingTask:
    """Runs ``tick`` every ``interval`` seconds on the event loop.

    The next tick is only scheduled once the previous one has resolved, so
    slow ticks stretch the cadence instead of piling up. A tick that raises is
    reported through ``on_error`` and the loop keeps going. ``stop`` cancels
    the task and waits for it to finish.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "poll",
        on_error: Optional[Callable[[Exception], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if interval <= 0:
            raise ValueError("Polling interval must be positive.")
        self._tick = tick
        self.interval = float(interval)
        self.name = name
        self._on_error = on_error
        self._logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._logger.info("Polling task '%s' stopped", self.name)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        delay = self.interval
        while True:
            await asyncio.sleep(delay)
            started = loop.time()
            try:
                await self._tick()
            except Exception as exc:
                self._logger.warning("Polling task '%s' tick failed: %s", self.name, exc)
                if self._on_error is not None:
                    result = self._on_error(exc)
                    if inspect.isawaitable(result):
                        await result
            delay = max(0.0, self.interval - (loop.time() - started))
