"""Onboard motion and environment sensors.

Readings come from Linux IIO sysfs channels under ``/sys/bus/iio/devices``.
Each monitored sensor is polled on its own scheduler timer named
``sensor:<name>``, and every reading is handed to the callback registered when
monitoring started.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from src.capabilities import IIO_CHANNELS, IIO_DEVICES_PATH
from src.errors import SensorUnavailableError, wrap_error
from src.scheduler import Scheduler

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0

# IIO channel prefix per sensor; the barometer is the only scalar channel
IIO_PREFIXES: dict[str, str] = {
    "accelerometer": "accel",
    "gyroscope": "anglvel",
    "magnetometer": "magn",
    "barometer": "pressure",
}
AXES = ("x", "y", "z")


@dataclass(frozen=True)
class SensorReading:
    """One sample of an onboard sensor, in the units IIO reports."""

    sensor: str
    values: dict[str, float]
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def magnitude(self) -> float:
        return math.sqrt(sum(v * v for v in self.values.values()))

    def to_dict(self) -> dict:
        """Shape shared with data points so it can be queued and published the same way."""
        return {
            "type": self.sensor,
            "value": dict(self.values),
            "magnitude": round(self.magnitude, 3),
            "timestamp": self.timestamp.isoformat(),
            "device_id": None,
        }


class IioSensorReader:
    """Reads scaled channel values from Linux IIO sysfs."""

    def __init__(self, iio_path: Path | str = IIO_DEVICES_PATH):
        self.iio_path = Path(iio_path)

    def _unavailable(self, sensor: str, message: str, cause: BaseException | None = None) -> SensorUnavailableError:
        return SensorUnavailableError(
            message,
            component="SensorMonitor",
            action="read",
            metadata={"sensor": sensor, "iio_path": str(self.iio_path)},
            cause=cause,
        )

    def _device_dir(self, sensor: str) -> Path:
        channels = IIO_CHANNELS.get(sensor, ())
        if self.iio_path.is_dir():
            for device in sorted(self.iio_path.iterdir()):
                if any((device / channel).exists() for channel in channels):
                    return device
        raise self._unavailable(sensor, f"No IIO device exposes {sensor}")

    @staticmethod
    def _read_channel(device: Path, prefix: str, axis: str | None) -> float:
        base = f"in_{prefix}_{axis}" if axis else f"in_{prefix}"
        processed = device / f"{base}_input"
        if processed.exists():
            return float(processed.read_text().strip())

        raw = float((device / f"{base}_raw").read_text().strip())
        # Drivers expose either a per-channel or a shared scale
        for scale in (device / f"{base}_scale", device / f"in_{prefix}_scale"):
            if scale.exists():
                return raw * float(scale.read_text().strip())
        return raw

    def read(self, sensor: str) -> SensorReading:
        """Read one sample.

        Raises:
            SensorUnavailableError: Unknown sensor, no IIO device or unreadable channel
        """
        prefix = IIO_PREFIXES.get(sensor)
        if prefix is None:
            raise self._unavailable(sensor, f"Unknown sensor: {sensor}")

        device = self._device_dir(sensor)
        axes: tuple[str | None, ...] = (None,) if sensor == "barometer" else AXES
        try:
            values = {axis or "value": self._read_channel(device, prefix, axis) for axis in axes}
        except (OSError, ValueError) as e:
            raise self._unavailable(sensor, f"Could not read {sensor} from {device.name}: {e}", e) from e
        return SensorReading(sensor, values)


SensorCallback = Callable[[SensorReading], Awaitable[None] | None]


class SensorMonitor:
    """Polls sensors on named scheduler timers."""

    component = "SensorMonitor"

    def __init__(
        self,
        scheduler: Scheduler,
        reader: IioSensorReader | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize monitor.

        Args:
            scheduler: Scheduler owning the polling timers
            reader: Sensor reader (IIO sysfs if omitted)
            interval: Seconds between reads of each sensor
        """
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")
        self.scheduler = scheduler
        self.reader = reader or IioSensorReader()
        self.interval = interval
        self._callbacks: dict[str, SensorCallback] = {}

    @staticmethod
    def timer_name(sensor: str) -> str:
        return f"sensor:{sensor}"

    def start(self, sensor: str, callback: SensorCallback) -> bool:
        """Start polling a sensor.

        Returns:
            False if the sensor was already polled; its callback is replaced
        """
        already = self.is_monitoring(sensor)
        self._callbacks[sensor] = callback
        if already:
            return False

        self.scheduler.schedule_periodic(self.timer_name(sensor), self.interval, lambda: self._poll(sensor))
        logger.info(f"Monitoring {sensor} every {self.interval}s")
        return True

    def stop(self, sensor: str) -> bool:
        """Stop polling a sensor. Returns False if it was not polled."""
        self._callbacks.pop(sensor, None)
        stopped = self.scheduler.cancel(self.timer_name(sensor))
        if stopped:
            logger.info(f"Stopped monitoring {sensor}")
        return stopped

    def stop_all(self) -> None:
        for sensor in list(self._callbacks):
            self.stop(sensor)

    def is_monitoring(self, sensor: str) -> bool:
        return self.scheduler.is_scheduled(self.timer_name(sensor))

    @property
    def active_sensors(self) -> list[str]:
        return [sensor for sensor in self._callbacks if self.is_monitoring(sensor)]

    async def read_once(self, sensor: str) -> SensorReading:
        return await asyncio.to_thread(self.reader.read, sensor)

    async def _poll(self, sensor: str) -> None:
        callback = self._callbacks.get(sensor)
        if callback is None:
            return

        try:
            reading = await self.read_once(sensor)
        except Exception as e:
            error = wrap_error(e, self.component, "read", {"sensor": sensor})
            logger.warning(f"Sensor read failed: {error}")
            return

        result = callback(reading)
        if inspect.isawaitable(result):
            await result
