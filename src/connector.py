"""Device connection lifecycle.

The connector owns the registry of connected devices. Each connected device
gets a periodic emission timer that drains the adapter and hands every new
data point, in emission order, to the callback registered for the device.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from src.device_adapters.base import DeviceAdapter
from src.errors import DeviceNotFoundError, PipelineError, wrap_error
from src.models import ConnectionResult, ConnectionStatus, Device, HealthDataPoint
from src.scheduler import Scheduler

logger = logging.getLogger(__name__)

DataCallback = Callable[[HealthDataPoint], Awaitable[None] | None]


def _timer_name(device_id: str) -> str:
    return f"emit:{device_id}"


class DeviceConnector:
    """Connect, stream from and disconnect devices through an adapter."""

    component = "DeviceConnector"

    def __init__(
        self,
        adapter: DeviceAdapter,
        scheduler: Scheduler,
        emission_interval: float = 60.0,
        max_retry_attempts: int = 3,
        retry_delay: float = 1.0,
        max_stream_failures: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize connector.

        Args:
            adapter: Transport used for handshakes and data
            scheduler: Scheduler owning the emission timers
            emission_interval: Seconds between data drains per device
            max_retry_attempts: Handshake retries after the first attempt
            retry_delay: Base delay for exponential handshake backoff
            max_stream_failures: Consecutive stream errors before a device is dropped
            sleep: Awaitable sleep, replaced in tests
        """
        self.adapter = adapter
        self.scheduler = scheduler
        self.emission_interval = emission_interval
        self.max_retry_attempts = max(0, max_retry_attempts)
        self.retry_delay = retry_delay
        self.max_stream_failures = max_stream_failures
        self._sleep = sleep

        self._devices: dict[str, Device] = {}
        self._callbacks: dict[str, DataCallback] = {}
        self._connecting: set[str] = set()
        self._stream_failures: dict[str, int] = {}

    async def connect(self, device_id: str, callback: DataCallback | None = None) -> ConnectionResult:
        """Connect to a device and start its emission timer.

        Args:
            device_id: Device to connect
            callback: Optional data callback, registered before the first emission

        Returns:
            ConnectionResult; ``already_connected`` is set when the device is
            already in the registry

        Raises:
            DeviceNotFoundError: If the adapter does not know the device
            DeviceConnectionError: If every handshake attempt failed
        """
        if device_id in self._devices:
            logger.info(f"Device {device_id} already connected")
            return ConnectionResult(
                success=False,
                device=self._devices[device_id].copy(),
                error="Device already connected",
                already_connected=True,
            )
        if device_id in self._connecting:
            return ConnectionResult(success=False, error="Connection already in progress")

        self._connecting.add(device_id)
        try:
            device = await self._handshake(device_id)
        finally:
            self._connecting.discard(device_id)

        device.status = ConnectionStatus.CONNECTED
        device.connected_at = datetime.now()
        device.rssi = None
        self._devices[device_id] = device
        self._stream_failures[device_id] = 0
        if callback is not None:
            self._callbacks[device_id] = callback

        self.scheduler.schedule_periodic(
            _timer_name(device_id),
            self.emission_interval,
            lambda: self._emit(device_id),
        )
        logger.info(f"Connected to {device}")
        return ConnectionResult(success=True, device=device.copy())

    async def _handshake(self, device_id: str) -> Device:
        attempt = 1
        while True:
            try:
                return await self.adapter.connect(device_id)
            except DeviceNotFoundError:
                # Unknown ids never become known by retrying
                raise
            except Exception as e:
                error: PipelineError = wrap_error(
                    e,
                    self.component,
                    "connect",
                    {"device_id": device_id, "attempt": attempt},
                )

            if attempt > self.max_retry_attempts:
                logger.error(f"Failed to connect to {device_id} after {attempt} attempts: {error}")
                raise error

            delay = self.retry_delay * (2 ** (attempt - 1))
            logger.warning(
                f"Connection attempt {attempt}/{self.max_retry_attempts + 1} to {device_id} "
                f"failed: {error}. Retrying in {delay:.1f}s"
            )
            await self._sleep(delay)
            attempt += 1

    async def _emit(self, device_id: str) -> None:
        device = self._devices.get(device_id)
        if device is None:
            return

        try:
            points = await self.adapter.stream_data(device.copy())
        except Exception as e:
            error = wrap_error(e, self.component, "stream_data", {"device_id": device_id})
            failures = self._stream_failures.get(device_id, 0) + 1
            self._stream_failures[device_id] = failures
            logger.warning(f"Stream from {device_id} failed ({failures}/{self.max_stream_failures}): {error}")
            if failures >= self.max_stream_failures:
                await self._drop(device_id, str(error))
            return

        self._stream_failures[device_id] = 0
        if not points:
            return

        device.last_sync = datetime.now()
        callback = self._callbacks.get(device_id)
        if callback is None:
            logger.debug(f"No callback for {device_id}, discarding {len(points)} point(s)")
            return

        for point in points:
            try:
                result = callback(point)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Data callback for {device_id} failed: {e}")

    async def _drop(self, device_id: str, reason: str) -> None:
        device = self._devices.pop(device_id, None)
        self._callbacks.pop(device_id, None)
        self._stream_failures.pop(device_id, None)
        if device is not None:
            device.status = ConnectionStatus.ERROR
            logger.error(f"Dropping {device_id} after repeated stream failures: {reason}")
        try:
            await self.adapter.disconnect(device_id)
        except Exception as e:
            logger.warning(f"Adapter disconnect of {device_id} failed: {e}")
        # Cancels the running emission task, so this must be last
        self.scheduler.cancel(_timer_name(device_id))

    async def disconnect(self, device_id: str) -> bool:
        """Disconnect a device.

        Returns:
            False if the device was not connected
        """
        if device_id not in self._devices:
            return False

        self.scheduler.cancel(_timer_name(device_id))
        self._devices.pop(device_id, None)
        self._callbacks.pop(device_id, None)
        self._stream_failures.pop(device_id, None)

        try:
            await self.adapter.disconnect(device_id)
        except Exception as e:
            logger.warning(f"Adapter disconnect of {device_id} failed: {e}")

        logger.info(f"Disconnected {device_id}")
        return True

    def set_data_callback(self, device_id: str, callback: DataCallback) -> None:
        """Register the receiver of a device's data points."""
        self._callbacks[device_id] = callback

    def is_connected(self, device_id: str) -> bool:
        return device_id in self._devices

    def get_device(self, device_id: str) -> Device | None:
        device = self._devices.get(device_id)
        return device.copy() if device else None

    def get_connected_devices(self) -> list[Device]:
        """Copies of all connected devices."""
        return [d.copy() for d in self._devices.values()]

    async def cleanup(self) -> None:
        """Disconnect every device and clear all state."""
        for device_id in list(self._devices):
            await self.disconnect(device_id)
        self._callbacks.clear()
        self._stream_failures.clear()
        logger.debug("Connector cleaned up")
