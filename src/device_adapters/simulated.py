"""Simulated device adapter.

Provides a fixed catalog of wearables that produce randomised but
physiologically plausible measurements. Used for demos, development
without hardware, and tests.
"""

import asyncio
import logging
import random
from datetime import datetime

from src.device_adapters.base import DeviceAdapter, DiscoveryCallback
from src.errors import DeviceConnectionError, DeviceNotFoundError
from src.models import (
    BloodPressureValue,
    DataQuality,
    Device,
    DeviceType,
    HealthDataPoint,
    MeasurementType,
)

logger = logging.getLogger(__name__)

SIMULATED_DEVICES: list[Device] = [
    Device(
        id="fitbit_001",
        name="Fitbit Charge 5",
        device_type=DeviceType.FITNESS_TRACKER,
        manufacturer="Fitbit",
        model="Charge 5",
        services=["heart_rate", "steps", "sleep"],
        rssi=-45,
    ),
    Device(
        id="apple_watch_001",
        name="Apple Watch Series 8",
        device_type=DeviceType.SMARTWATCH,
        manufacturer="Apple",
        model="Series 8",
        services=["heart_rate", "ecg", "blood_oxygen", "steps"],
        rssi=-38,
    ),
    Device(
        id="garmin_001",
        name="Garmin Vivosmart 5",
        device_type=DeviceType.FITNESS_TRACKER,
        manufacturer="Garmin",
        model="Vivosmart 5",
        services=["heart_rate", "stress", "steps"],
        rssi=-52,
    ),
    Device(
        id="omron_bp_001",
        name="OMRON M7 Intelli IT",
        device_type=DeviceType.GENERIC_SENSOR,
        manufacturer="OMRON",
        model="HEM-7361T",
        services=["blood_pressure", "heart_rate"],
        rssi=-61,
    ),
    Device(
        id="withings_scale_001",
        name="Withings Body+",
        device_type=DeviceType.GENERIC_SENSOR,
        manufacturer="Withings",
        model="Body+",
        services=["weight"],
        rssi=None,
    ),
]


class SimulatedAdapter(DeviceAdapter):
    """Adapter backed by an in-memory device catalog."""

    name = "simulated"

    def __init__(
        self,
        devices: list[Device] | None = None,
        rng: random.Random | None = None,
        connect_delay: float = 0.05,
        failing_devices: set[str] | None = None,
    ):
        """Initialize simulated adapter.

        Args:
            devices: Device catalog (defaults to SIMULATED_DEVICES)
            rng: Random generator, seed it for reproducible values
            connect_delay: Simulated handshake duration in seconds
            failing_devices: Device ids whose handshake always fails
        """
        catalog = devices if devices is not None else SIMULATED_DEVICES
        self._catalog: dict[str, Device] = {d.id: d.copy() for d in catalog}
        self._rng = rng or random.Random()
        self.connect_delay = connect_delay
        self.failing_devices: set[str] = set(failing_devices or ())
        self._connected: set[str] = set()
        self._weights: dict[str, float] = {}
        self.connect_attempts: dict[str, int] = {}

    def get_device(self, device_id: str) -> Device | None:
        device = self._catalog.get(device_id)
        return device.copy() if device else None

    async def scan(self, timeout: float, on_discovered: DiscoveryCallback) -> None:
        devices = list(self._catalog.values())
        if not devices:
            await asyncio.sleep(timeout)
            return

        # Spread discoveries over the scan window like a real radio would
        step = timeout / len(devices)
        for device in devices:
            await asyncio.sleep(step)
            found = device.copy()
            if found.rssi is not None:
                found.rssi = found.rssi + self._rng.randint(-3, 3)
            logger.debug(f"Discovered simulated device {found}")
            on_discovered(found)

    async def connect(self, device_id: str) -> Device:
        device = self._catalog.get(device_id)
        if device is None:
            raise DeviceNotFoundError(
                f"Unknown device: {device_id}",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id},
            )

        self.connect_attempts[device_id] = self.connect_attempts.get(device_id, 0) + 1
        await asyncio.sleep(self.connect_delay)

        if device_id in self.failing_devices:
            raise DeviceConnectionError(
                f"Handshake with {device_id} failed",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id},
            )

        self._connected.add(device_id)
        connected = device.copy()
        connected.battery_level = self._rng.randint(40, 100)
        return connected

    async def disconnect(self, device_id: str) -> None:
        self._connected.discard(device_id)

    async def stream_data(self, device: Device) -> list[HealthDataPoint]:
        if device.id not in self._connected:
            raise DeviceConnectionError(
                f"Device {device.id} is not connected",
                component=self.name,
                action="stream_data",
                metadata={"device_id": device.id},
            )

        now = datetime.now()
        return [
            self._generate_point(device.id, measurement_type, now)
            for measurement_type in device.measurement_types
        ]

    def _generate_point(
        self,
        device_id: str,
        measurement_type: MeasurementType,
        timestamp: datetime,
    ) -> HealthDataPoint:
        rng = self._rng
        quality = DataQuality.GOOD
        value: float | BloodPressureValue

        if measurement_type is MeasurementType.HEART_RATE:
            value = round(60 + rng.random() * 40, 1)
            quality = DataQuality.GOOD if rng.random() > 0.2 else DataQuality.FAIR
        elif measurement_type is MeasurementType.STEPS:
            value = rng.randint(0, 99)  # steps in the last interval
        elif measurement_type is MeasurementType.SLEEP:
            value = round(6 + rng.random() * 3, 2)
            quality = DataQuality.GOOD if 7 <= value <= 9 else DataQuality.FAIR
        elif measurement_type is MeasurementType.BLOOD_OXYGEN:
            value = round(95 + rng.random() * 5, 1)
        elif measurement_type is MeasurementType.BLOOD_PRESSURE:
            value = BloodPressureValue(
                systolic=round(110 + rng.random() * 30),
                diastolic=round(70 + rng.random() * 20),
                pulse=round(60 + rng.random() * 30),
            )
        elif measurement_type is MeasurementType.WEIGHT:
            base = self._weights.setdefault(device_id, round(60 + rng.random() * 40, 1))
            value = round(base + rng.uniform(-0.3, 0.3), 1)
            quality = DataQuality.EXCELLENT
        else:
            value = round(36.2 + rng.random(), 1)

        return HealthDataPoint(
            type=measurement_type,
            value=value,
            timestamp=timestamp,
            device_id=device_id,
            quality=quality,
            metadata={"source": "simulated"},
        )
