import asyncio
import typing
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger("WeatherMonitor.Scheduler")

SleepFunc = Callable[[float], Awaitable[typing.Any]]


class PeriodicTask:
    """
    Runs an async callable after `initial_delay`, then every `interval` seconds.
    A failing tick is logged and the loop keeps going. `sleep` can be swapped
    out so tests drive virtual time.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[typing.Any]],
        interval: float,
        initial_delay: float = 0.0,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.name = name
        self.func = func
        self.interval = interval
        self.initial_delay = initial_delay
        self._sleep = sleep
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Scheduled {self.name}: first run in {self.initial_delay}s, then every {self.interval}s")

    async def stop(self) -> None:
        """Cancel any pending wait and let a tick in flight finish."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info(f"Stopped {self.name}")

    async def _wait(self, delay: float) -> bool:
        """Sleep for `delay`. Returns False when stop() was called meanwhile."""
        if self._stop.is_set():
            return False
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, stopper):
                if not pending.done():
                    pending.cancel()
        return not self._stop.is_set()

    async def _loop(self) -> None:
        if not await self._wait(self.initial_delay):
            return
        while True:
            try:
                await self.func()
            except Exception as e:
                logger.exception(f"{self.name} tick failed: {e}")
            self.runs += 1
            if not await self._wait(self.interval):
                return
