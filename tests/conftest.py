"""Shared pytest fixtures for health-device-bridge tests."""

import random
from datetime import datetime, timedelta

import pytest

from src.device_adapters.simulated import SimulatedAdapter
from src.local_store import LocalStore
from src.models import (
    BloodPressureValue,
    DataQuality,
    Device,
    DeviceType,
    HealthDataPoint,
    MeasurementType,
    SyncQueueItem,
)
from src.sensors import SensorReading
from src.sync_transport import SyncResponse, SyncTransport


class RecordingTransport(SyncTransport):
    """Transport that records batches and replays scripted responses.

    ``responses`` items are either a SyncResponse or an exception instance to
    raise; once exhausted every batch is acknowledged.
    """

    name = "recording"

    def __init__(self, responses=None, reachable=True):
        self.responses = list(responses or [])
        self.reachable = reachable
        self.batches: list[dict] = []
        self.closed = False

    async def send_batch(self, payload: dict) -> SyncResponse:
        self.batches.append(payload)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return SyncResponse(success=True)

    async def ping(self) -> bool:
        return self.reachable

    async def close(self) -> None:
        self.closed = True

    @property
    def sent_ids(self) -> list[str]:
        return [item["id"] for batch in self.batches for item in batch["items"]]


async def no_sleep(_delay: float) -> None:
    """Stand-in for asyncio.sleep in backoff paths."""


class StaticProbes:
    """Host probes with scripted answers and call counting."""

    def __init__(self, bluetooth=True, sensors=("accelerometer",), fail_bluetooth=False):
        self._bluetooth = bluetooth
        self._sensors = set(sensors)
        self.fail_bluetooth = fail_bluetooth
        self.calls = 0

    def platform(self):
        self.calls += 1
        return "linux"

    async def bluetooth(self):
        if self.fail_bluetooth:
            raise OSError("No Bluetooth adapter found")
        return self._bluetooth

    def nfc(self):
        return False

    def sensor(self, name):
        return name in self._sensors

    def health_store(self):
        return True


class StaticSensorReader:
    """Sensor reader returning fixed axis values and recording each read."""

    def __init__(self, values=None, fail=()):
        self.values = values or {"accelerometer": {"x": 0.0, "y": 0.0, "z": 9.81}}
        self.fail = set(fail)
        self.reads: list[str] = []

    def read(self, sensor):
        self.reads.append(sensor)
        if sensor in self.fail:
            raise OSError(f"{sensor} channel unreadable")
        return SensorReading(sensor, dict(self.values.get(sensor, {"x": 0.0, "y": 0.0, "z": 0.0})))


@pytest.fixture
def db_path(tmp_path) -> str:
    """Create a temporary database path for testing."""
    return str(tmp_path / "test_health_bridge.db")


@pytest.fixture
def store(db_path) -> LocalStore:
    """Local store backed by a temporary database."""
    return LocalStore(db_path)


@pytest.fixture
def adapter() -> SimulatedAdapter:
    """Simulated adapter with reproducible values and a fast handshake."""
    return SimulatedAdapter(rng=random.Random(42), connect_delay=0)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def sample_device() -> Device:
    """Create a sample fitness tracker."""
    return Device(
        id="tracker_1",
        name="Test Tracker",
        device_type=DeviceType.FITNESS_TRACKER,
        manufacturer="Acme",
        model="T1",
        services=["heart_rate", "steps"],
        rssi=-50,
    )


@pytest.fixture
def heart_rate_point() -> HealthDataPoint:
    """Create a sample heart rate point."""
    return HealthDataPoint(
        type=MeasurementType.HEART_RATE,
        value=72,
        timestamp=datetime(2025, 1, 15, 10, 30, 0),
        device_id="tracker_1",
    )


@pytest.fixture
def high_bp_point() -> HealthDataPoint:
    """Create a high blood pressure point."""
    return HealthDataPoint(
        type=MeasurementType.BLOOD_PRESSURE,
        value=BloodPressureValue(systolic=145, diastolic=92, pulse=80),
        timestamp=datetime(2025, 1, 15, 12, 0, 0),
        device_id="omron_bp_001",
    )


@pytest.fixture
def make_point():
    """Factory for data points spaced one hour apart from a base time."""

    def _make(
        measurement_type: MeasurementType,
        value,
        hours: float = 0,
        quality: DataQuality = DataQuality.GOOD,
        base: datetime | None = None,
        device_id: str = "tracker_1",
    ) -> HealthDataPoint:
        start = base or datetime(2025, 1, 15, 8, 0, 0)
        return HealthDataPoint(
            type=measurement_type,
            value=value,
            timestamp=start + timedelta(hours=hours),
            device_id=device_id,
            quality=quality,
        )

    return _make


@pytest.fixture
def make_item():
    """Factory for sync queue items."""

    def _make(index: int = 0, item_type: str = "wearable_data", device_id: str = "tracker_1") -> SyncQueueItem:
        return SyncQueueItem(type=item_type, data={"index": index}, device_id=device_id)

    return _make
