"""Host capability detection.

Probes what the host can offer the pipeline: platform, Bluetooth radio,
onboard motion/environment sensors and a health data store. A failing probe
reports the capability as unavailable; it never fails the whole snapshot.
"""

from __future__ import annotations

import inspect
import logging
import platform
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from bleak import BleakScanner

from src.config_manager import VALID_SENSORS
from src.errors import StorageError
from src.local_store import CAPABILITIES_KEY, LocalStore

logger = logging.getLogger(__name__)

IIO_DEVICES_PATH = Path("/sys/bus/iio/devices")

# Channel files exposed by Linux IIO drivers for each sensor kind
IIO_CHANNELS: dict[str, tuple[str, ...]] = {
    "accelerometer": ("in_accel_x_raw", "in_accel_x_input"),
    "gyroscope": ("in_anglvel_x_raw", "in_anglvel_x_input"),
    "magnetometer": ("in_magn_x_raw", "in_magn_x_input"),
    "barometer": ("in_pressure_raw", "in_pressure_input"),
}

PERMISSIONS = ("bluetooth", "health_data", "sensors")


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


@dataclass
class DeviceCapabilities:
    """Snapshot of host capabilities."""

    platform: str
    has_health_store: bool = False
    has_bluetooth: bool = False
    has_nfc: bool = False
    sensors: dict[str, bool] = field(default_factory=dict)
    permissions: dict[str, PermissionStatus] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=datetime.now)

    def copy(self) -> DeviceCapabilities:
        return DeviceCapabilities(
            platform=self.platform,
            has_health_store=self.has_health_store,
            has_bluetooth=self.has_bluetooth,
            has_nfc=self.has_nfc,
            sensors=dict(self.sensors),
            permissions=dict(self.permissions),
            detected_at=self.detected_at,
        )

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "has_health_store": self.has_health_store,
            "has_bluetooth": self.has_bluetooth,
            "has_nfc": self.has_nfc,
            "sensors": dict(self.sensors),
            "permissions": {k: v.value for k, v in self.permissions.items()},
            "detected_at": self.detected_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeviceCapabilities:
        return cls(
            platform=data.get("platform", "unknown"),
            has_health_store=bool(data.get("has_health_store")),
            has_bluetooth=bool(data.get("has_bluetooth")),
            has_nfc=bool(data.get("has_nfc")),
            sensors={k: bool(v) for k, v in (data.get("sensors") or {}).items()},
            permissions={
                k: PermissionStatus(v) for k, v in (data.get("permissions") or {}).items()
            },
            detected_at=datetime.fromisoformat(data["detected_at"]) if data.get("detected_at") else datetime.now(),
        )


class HostProbes:
    """Probes against the real host."""

    def __init__(
        self,
        garmin_tokens_path: str | None = None,
        bluetooth_timeout: float = 2.0,
        iio_path: Path = IIO_DEVICES_PATH,
    ):
        self.garmin_tokens_path = Path(garmin_tokens_path).expanduser() if garmin_tokens_path else None
        self.bluetooth_timeout = bluetooth_timeout
        self.iio_path = iio_path

    def platform(self) -> str:
        return platform.system().lower() or "unknown"

    async def bluetooth(self) -> bool:
        # A short discovery fails fast when no adapter is present or powered
        await BleakScanner.discover(timeout=self.bluetooth_timeout)
        return True

    def nfc(self) -> bool:
        return False

    def sensor(self, name: str) -> bool:
        if not self.iio_path.is_dir():
            return False
        channels = IIO_CHANNELS.get(name, ())
        for device in self.iio_path.iterdir():
            if any((device / channel).exists() for channel in channels):
                return True
        return False

    def health_store(self) -> bool:
        return self.garmin_tokens_path is not None and self.garmin_tokens_path.is_dir()


class CapabilityDetector:
    """Detects, caches and persists host capabilities."""

    component = "CapabilityDetector"

    def __init__(self, store: LocalStore, probes: HostProbes | None = None):
        self.store = store
        self.probes = probes or HostProbes()
        self._capabilities: DeviceCapabilities | None = None

    async def _probe(self, name: str, probe, *args) -> bool:
        try:
            result = probe(*args)
            if inspect.isawaitable(result):
                result = await result
            return bool(result)
        except Exception as e:
            logger.warning(f"Capability probe '{name}' failed, reporting unavailable: {e}")
            return False

    async def detect_capabilities(self) -> DeviceCapabilities:
        """Probe the host once per process and cache the result.

        Returns:
            Copy of the capability snapshot
        """
        if self._capabilities is not None:
            return self._capabilities.copy()

        logger.info("Detecting host capabilities...")
        try:
            platform_name = self.probes.platform()
        except Exception as e:
            logger.warning(f"Capability probe 'platform' failed: {e}")
            platform_name = "unknown"

        sensors = {name: await self._probe(name, self.probes.sensor, name) for name in VALID_SENSORS}
        capabilities = DeviceCapabilities(
            platform=platform_name,
            has_health_store=await self._probe("health_store", self.probes.health_store),
            has_bluetooth=await self._probe("bluetooth", self.probes.bluetooth),
            has_nfc=await self._probe("nfc", self.probes.nfc),
            sensors=sensors,
            permissions={name: PermissionStatus.UNDETERMINED for name in PERMISSIONS},
        )

        # Permission decisions outlive hardware probes
        previous = await self._load()
        if previous is not None:
            capabilities.permissions.update(previous.permissions)

        self._capabilities = capabilities
        await self._save()

        available = [name for name, ok in sensors.items() if ok]
        logger.info(
            f"Capabilities: platform={capabilities.platform}, bluetooth={capabilities.has_bluetooth}, "
            f"health_store={capabilities.has_health_store}, sensors={available or 'none'}"
        )
        return capabilities.copy()

    def get_cached_capabilities(self) -> DeviceCapabilities | None:
        return self._capabilities.copy() if self._capabilities else None

    def is_sensor_available(self, sensor_type: str) -> bool:
        """Read from the cached snapshot; False before detection."""
        if self._capabilities is None:
            return False
        return self._capabilities.sensors.get(sensor_type, False)

    async def update_permission_status(self, permission: str, granted: bool) -> DeviceCapabilities:
        """Record a permission decision in the snapshot and persist it."""
        if self._capabilities is None:
            await self.detect_capabilities()
        status = PermissionStatus.GRANTED if granted else PermissionStatus.DENIED
        self._capabilities.permissions[permission] = status
        await self._save()
        logger.info(f"Permission '{permission}' {status.value}")
        return self._capabilities.copy()

    def invalidate(self) -> None:
        """Force the next detection to re-probe the host."""
        self._capabilities = None

    async def _load(self) -> DeviceCapabilities | None:
        try:
            data = await self.store.get_json(CAPABILITIES_KEY)
            return DeviceCapabilities.from_dict(data) if data else None
        except (StorageError, KeyError, ValueError, TypeError) as e:
            logger.warning(f"Could not load stored capabilities: {e}")
            return None

    async def _save(self) -> None:
        if self._capabilities is None:
            return
        try:
            await self.store.set_json(CAPABILITIES_KEY, self._capabilities.to_dict())
        except StorageError as e:
            logger.warning(f"Could not persist capabilities: {e}")
