"""Named periodic and one-shot timers on the asyncio event loop.

Device data emission, periodic sync and connectivity checks all run as
timers owned by a :class:`Scheduler`. Scheduling a name that is already in
use replaces the previous timer, and cancelling cancels the underlying
asyncio task immediately, so no callback fires after ``cancel`` returns.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


async def _invoke(name: str, callback: TimerCallback) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Timer '{name}' callback failed: {e}")


class PeriodicTask:
    """Runs a callback every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.callback = callback
        self.run_immediately = run_immediately
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the timer, replacing a running one."""
        self.stop()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")

    def stop(self) -> None:
        """Cancel the timer. Safe to call when idle."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None

    def reschedule(self, interval: float) -> None:
        """Change the interval and restart the timer."""
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")
        self.interval = interval
        self.start()

    async def _run(self) -> None:
        if self.run_immediately:
            await _invoke(self.name, self.callback)
        while True:
            await asyncio.sleep(self.interval)
            await _invoke(self.name, self.callback)


class Scheduler:
    """Owns all timers of one pipeline instance."""

    def __init__(self) -> None:
        self._periodic: dict[str, PeriodicTask] = {}
        self._oneshot: dict[str, asyncio.Task] = {}

    def schedule_periodic(
        self,
        name: str,
        interval: float,
        callback: TimerCallback,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """Schedule a recurring callback.

        Args:
            name: Timer name; an existing timer with this name is replaced
            interval: Seconds between invocations
            callback: Sync or async callable
            run_immediately: Invoke once before the first interval elapses

        Returns:
            The running periodic task
        """
        self.cancel(name)
        task = PeriodicTask(name, interval, callback, run_immediately)
        task.start()
        self._periodic[name] = task
        logger.debug(f"Scheduled periodic timer '{name}' every {interval}s")
        return task

    def schedule_once(self, name: str, delay: float, callback: TimerCallback) -> None:
        """Schedule a one-shot callback after ``delay`` seconds."""
        self.cancel(name)

        async def fire() -> None:
            await asyncio.sleep(delay)
            self._oneshot.pop(name, None)
            await _invoke(name, callback)

        self._oneshot[name] = asyncio.get_running_loop().create_task(fire(), name=f"timer:{name}")

    def reschedule(self, name: str, interval: float) -> bool:
        """Change the interval of a periodic timer. Returns False if unknown."""
        task = self._periodic.get(name)
        if task is None:
            return False
        task.reschedule(interval)
        return True

    def cancel(self, name: str) -> bool:
        """Cancel a timer. Returns True if one was scheduled."""
        cancelled = False
        periodic = self._periodic.pop(name, None)
        if periodic is not None:
            cancelled = periodic.is_running
            periodic.stop()
        oneshot = self._oneshot.pop(name, None)
        if oneshot is not None:
            if not oneshot.done():
                oneshot.cancel()
                cancelled = True
        if cancelled:
            logger.debug(f"Cancelled timer '{name}'")
        return cancelled

    def cancel_all(self) -> None:
        """Cancel every timer."""
        for name in list(self._periodic) + list(self._oneshot):
            self.cancel(name)

    def is_scheduled(self, name: str) -> bool:
        periodic = self._periodic.get(name)
        if periodic is not None and periodic.is_running:
            return True
        oneshot = self._oneshot.get(name)
        return oneshot is not None and not oneshot.done()

    def get_interval(self, name: str) -> float | None:
        periodic = self._periodic.get(name)
        return periodic.interval if periodic else None

    @property
    def active_timers(self) -> list[str]:
        return [name for name in list(self._periodic) + list(self._oneshot) if self.is_scheduled(name)]
