"""Online/offline state tracking.

The monitor keeps a single online flag, fed either by a periodic probe of
the sync endpoint or by explicit ``set_online`` calls from the host
platform. Listeners are notified only when the state actually changes.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable

from src.scheduler import Scheduler

logger = logging.getLogger(__name__)

ConnectivityProbe = Callable[[], Awaitable[bool]]
ConnectivityListener = Callable[[bool], Awaitable[None] | None]


class ConnectivityMonitor:
    """Tracks network reachability and notifies listeners on transitions."""

    TIMER_NAME = "connectivity_check"

    def __init__(
        self,
        scheduler: Scheduler,
        probe: ConnectivityProbe | None = None,
        interval_seconds: float = 30.0,
        initial_online: bool = True,
    ):
        """Initialize connectivity monitor.

        Args:
            scheduler: Scheduler owning the probe timer
            probe: Async callable returning True when the endpoint is reachable
            interval_seconds: Seconds between probes; 0 disables probing
            initial_online: Assumed state before the first probe
        """
        self.scheduler = scheduler
        self.probe = probe
        self.interval_seconds = interval_seconds
        self._online = initial_online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def set_online(self, online: bool) -> None:
        """Update the state and notify listeners if it changed."""
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Network connection restored")
        else:
            logger.warning("Network connection lost")

        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    async def check(self) -> bool:
        """Run the probe once and apply the result."""
        if self.probe is None:
            return self._online
        try:
            online = bool(await self.probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        await self.set_online(online)
        return online

    def start(self) -> None:
        """Start periodic probing. No-op without a probe."""
        if self.probe is None or self.interval_seconds <= 0:
            return
        self.scheduler.schedule_periodic(self.TIMER_NAME, self.interval_seconds, self.check)
        logger.debug(f"Connectivity checks every {self.interval_seconds}s")

    def stop(self) -> None:
        """Stop periodic probing. Safe to call when idle."""
        self.scheduler.cancel(self.TIMER_NAME)
