"""Device discovery.

Runs one adapter scan at a time and collects the discovered devices. The
filter and sort helpers are pure and never modify the list they are given.
"""

import asyncio
import logging

from src.device_adapters.base import DeviceAdapter
from src.errors import ScanInProgressError, wrap_error
from src.models import Device, DeviceType

logger = logging.getLogger(__name__)

# Extra time granted to an adapter to wind down after the scan window
SCAN_GRACE_SECONDS = 5.0


class DeviceScanner:
    """Single-flight scanner over a device adapter."""

    component = "DeviceScanner"

    def __init__(self, adapter: DeviceAdapter):
        """Initialize scanner.

        Args:
            adapter: Transport used for discovery
        """
        self.adapter = adapter
        self._scan_task: asyncio.Task | None = None
        self._last_results: list[Device] = []

    def is_scanning(self) -> bool:
        """Check if a scan is running."""
        return self._scan_task is not None and not self._scan_task.done()

    async def scan(self, duration_ms: int = 10000) -> list[Device]:
        """Discover devices for ``duration_ms`` milliseconds.

        Args:
            duration_ms: Scan window in milliseconds

        Returns:
            Discovered devices, one entry per device id. A scan cut short by
            :meth:`stop_scan` returns what was found so far.

        Raises:
            ScanInProgressError: If another scan is running
            DeviceError: If the adapter fails
        """
        if self.is_scanning():
            raise ScanInProgressError(
                "Scan already in progress",
                component=self.component,
                action="scan",
                metadata={"duration_ms": duration_ms},
            )
        if duration_ms <= 0:
            raise ValueError(f"Scan duration must be positive, got {duration_ms}")

        found: dict[str, Device] = {}

        def on_discovered(device: Device) -> None:
            # Later sightings refresh signal strength
            found[device.id] = device.copy()

        duration = duration_ms / 1000
        task = asyncio.get_running_loop().create_task(
            self.adapter.scan(duration, on_discovered), name="device-scan"
        )
        self._scan_task = task
        logger.info(f"Scanning for devices ({duration}s, adapter: {self.adapter.name})...")

        try:
            await asyncio.wait({task}, timeout=duration + SCAN_GRACE_SECONDS)
            if task.done() and not task.cancelled() and task.exception() is not None:
                exc = task.exception()
                error = wrap_error(exc, self.component, "scan", {"duration_ms": duration_ms})
                logger.error(f"Scan failed: {error}")
                raise error
            if task.cancelled():
                logger.info(f"Scan stopped early with {len(found)} device(s)")
        finally:
            if not task.done():
                task.cancel()
            if self._scan_task is task:
                self._scan_task = None

        self._last_results = [d.copy() for d in found.values()]
        logger.info(f"Scan complete: {len(self._last_results)} device(s) found")
        return [d.copy() for d in self._last_results]

    def stop_scan(self) -> None:
        """Cancel a running scan. Safe to call when idle."""
        task = self._scan_task
        self._scan_task = None
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Scan cancelled")

    def get_discovered_devices(self) -> list[Device]:
        """Devices found by the last completed scan."""
        return [d.copy() for d in self._last_results]

    # ============== PURE HELPERS ==============

    @staticmethod
    def filter_by_type(devices: list[Device], device_type: DeviceType | str) -> list[Device]:
        wanted = DeviceType(device_type)
        return [d for d in devices if d.device_type == wanted]

    @staticmethod
    def filter_by_manufacturer(devices: list[Device], manufacturer: str) -> list[Device]:
        """Case-insensitive substring match on the manufacturer name."""
        needle = manufacturer.lower()
        return [d for d in devices if d.manufacturer and needle in d.manufacturer.lower()]

    @staticmethod
    def filter_by_service(devices: list[Device], service: str) -> list[Device]:
        return [d for d in devices if d.supports(service)]

    @staticmethod
    def sort_by_signal_strength(devices: list[Device]) -> list[Device]:
        """Strongest signal first; devices without RSSI sort last."""
        return sorted(
            devices,
            key=lambda d: d.rssi if d.rssi is not None else float("-inf"),
            reverse=True,
        )
