"""
Interval tasks on the running asyncio loop.

A failing callback is logged and the interval keeps going; ``stop()`` may be
called any number of times, including from inside the callback.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callback,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"periodic:{self.name}")
        logger.debug(f"Periodic task '{self.name}' started every {self.interval_seconds}s")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"Periodic task '{self.name}' stopped")

    async def _run(self) -> None:
        if self.run_immediately:
            await self._invoke()
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._invoke()

    async def _invoke(self) -> None:
        try:
            result = self.callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Periodic task '{self.name}' callback failed")
