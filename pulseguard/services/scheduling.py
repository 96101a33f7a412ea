"""
Time and scheduling primitives.

Every service takes a Clock instead of reading wall time or sleeping
directly, so countdowns and retry schedules can be driven by a fake clock
in tests.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class Clock(Protocol):
    """Source of wall time, monotonic time and sleeping."""

    def now(self) -> datetime:
        """Current aware UTC datetime."""
        ...

    def monotonic(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Real clock backed by the event loop."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicTask:
    """
    Cancellable repeating task.

    The callback runs once per interval on the running loop. A failing
    callback is logged and the schedule continues; stop() cancels the
    loop and waits for it to unwind.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[None]],
        interval_seconds: float,
        clock: Clock,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.callback = callback
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.logger = logger.bind(component="periodic_task", task=name)
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        self.logger.info("periodic_task_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("periodic_task_stopped")

    async def _run(self) -> None:
        while True:
            await self.clock.sleep(self.interval_seconds)
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.exception("periodic_task_failed", error=str(e))
