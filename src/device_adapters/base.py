"""Base adapter for health data sources.

Each transport (simulated catalog, Bluetooth LE, Garmin Connect) implements
this interface. Scanner and connector logic is written against it only.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from src.models import Device, HealthDataPoint

logger = logging.getLogger(__name__)

DiscoveryCallback = Callable[[Device], None]


class DeviceAdapter(ABC):
    """Abstract capability set ``{scan, connect, disconnect, stream_data}``."""

    # Human readable adapter name, used in logs and status output
    name: str = "adapter"

    @abstractmethod
    async def scan(self, timeout: float, on_discovered: DiscoveryCallback) -> None:
        """Discover devices until ``timeout`` seconds elapse.

        Each discovered device is reported through ``on_discovered`` as soon
        as it is seen; the same device may be reported more than once with
        updated signal strength. The call may be cancelled at any time.

        Args:
            timeout: Scan duration in seconds
            on_discovered: Callback receiving each discovered device
        """
        raise NotImplementedError

    @abstractmethod
    async def connect(self, device_id: str) -> Device:
        """Perform the connection handshake.

        Args:
            device_id: Identifier of a known device

        Returns:
            Device description including advertised services

        Raises:
            DeviceNotFoundError: If the device is unknown
            DeviceConnectionError: If the transport fails
        """
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self, device_id: str) -> None:
        """Tear down the transport link. Must not raise for unknown ids."""
        raise NotImplementedError

    @abstractmethod
    async def stream_data(self, device: Device) -> list[HealthDataPoint]:
        """Drain measurements produced since the previous call.

        Args:
            device: Connected device

        Returns:
            Data points in emission order
        """
        raise NotImplementedError

    def get_device(self, device_id: str) -> Device | None:
        """Look up a device seen by this adapter. Returns a copy or None."""
        return None

    async def close(self) -> None:
        """Release adapter-wide resources."""
        logger.debug(f"{self.name} adapter closed")
