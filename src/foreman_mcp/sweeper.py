"""Cancellable periodic timer used for the blocked-session sweep."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[object]]


class Timer(Protocol):
    def start(self) -> None:
        ...

    def cancel(self) -> None:
        ...


TimerFactory = Callable[[TickCallback], Timer]


class PeriodicTimer:
    """Run ``callback`` every ``interval`` seconds on the running event loop."""

    def __init__(self, callback: TickCallback, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._callback()
            except Exception:  # pragma: no cover - defensive
                logger.exception("Periodic tick failed")


def periodic_timer_factory(interval: float) -> TimerFactory:
    def factory(callback: TickCallback) -> Timer:
        return PeriodicTimer(callback, interval)

    return factory


class ManualTimer:
    """Timer double whose ticks are fired explicitly."""

    def __init__(self, callback: TickCallback) -> None:
        self._callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    async def fire(self) -> None:
        await self._callback()


__all__ = [
    "ManualTimer",
    "PeriodicTimer",
    "TickCallback",
    "Timer",
    "TimerFactory",
    "periodic_timer_factory",
]
