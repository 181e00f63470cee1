"""Data models for the health device bridge."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from numbers import Real
from typing import Any
from uuid import uuid4


class DeviceType(str, Enum):
    """Category of an external data source."""

    FITNESS_TRACKER = "fitness_tracker"
    SMARTWATCH = "smartwatch"
    HEALTH_APP_BRIDGE = "health_app_bridge"
    GENERIC_SENSOR = "generic_sensor"


class ConnectionStatus(str, Enum):
    """Connection lifecycle state of a device."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MeasurementType(str, Enum):
    """Kind of health measurement carried by a data point."""

    HEART_RATE = "heart_rate"
    STEPS = "steps"
    SLEEP = "sleep"
    WEIGHT = "weight"
    BLOOD_PRESSURE = "blood_pressure"
    TEMPERATURE = "temperature"
    BLOOD_OXYGEN = "blood_oxygen"


class DataQuality(str, Enum):
    """Quality tag attached to each measurement."""

    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


DEFAULT_UNITS: dict[MeasurementType, str] = {
    MeasurementType.HEART_RATE: "bpm",
    MeasurementType.STEPS: "count",
    MeasurementType.SLEEP: "hours",
    MeasurementType.WEIGHT: "kg",
    MeasurementType.BLOOD_PRESSURE: "mmHg",
    MeasurementType.TEMPERATURE: "celsius",
    MeasurementType.BLOOD_OXYGEN: "%",
}

# Device services that produce a measurement. Services such as "ecg" or
# "stress" are advertised by some devices but have no data point variant.
SERVICE_MEASUREMENTS: dict[str, MeasurementType] = {
    "heart_rate": MeasurementType.HEART_RATE,
    "steps": MeasurementType.STEPS,
    "sleep": MeasurementType.SLEEP,
    "weight": MeasurementType.WEIGHT,
    "blood_pressure": MeasurementType.BLOOD_PRESSURE,
    "temperature": MeasurementType.TEMPERATURE,
    "blood_oxygen": MeasurementType.BLOOD_OXYGEN,
}


@dataclass(frozen=True)
class BloodPressureValue:
    """Structured blood pressure value."""

    systolic: float  # mmHg
    diastolic: float  # mmHg
    pulse: float | None = None  # bpm, when the monitor reports it

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, float] = {"systolic": self.systolic, "diastolic": self.diastolic}
        if self.pulse is not None:
            data["pulse"] = self.pulse
        return data

    def __str__(self) -> str:
        return f"{self.systolic:.0f}/{self.diastolic:.0f}"


MeasurementValue = float | BloodPressureValue


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


@dataclass(frozen=True)
class HealthDataPoint:
    """One discrete measurement.

    The value shape is keyed by ``type``: blood pressure carries a
    :class:`BloodPressureValue`, every other type a plain number.
    """

    type: MeasurementType
    value: MeasurementValue
    timestamp: datetime
    unit: str = ""
    device_id: str | None = None
    quality: DataQuality = DataQuality.GOOD
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)

    def __post_init__(self) -> None:
        measurement_type = MeasurementType(self.type)
        object.__setattr__(self, "type", measurement_type)
        object.__setattr__(self, "quality", DataQuality(self.quality))

        value = self.value
        if measurement_type is MeasurementType.BLOOD_PRESSURE:
            if isinstance(value, dict):
                value = BloodPressureValue(
                    systolic=value["systolic"],
                    diastolic=value["diastolic"],
                    pulse=value.get("pulse"),
                )
            if not isinstance(value, BloodPressureValue):
                raise TypeError("blood_pressure value must be a BloodPressureValue")
        elif not _is_number(value):
            raise TypeError(f"{measurement_type.value} value must be a number, got {value!r}")
        object.__setattr__(self, "value", value)

        if not self.unit:
            object.__setattr__(self, "unit", DEFAULT_UNITS[measurement_type])

    @property
    def scalar(self) -> float:
        """Numeric value of a scalar measurement."""
        if isinstance(self.value, BloodPressureValue):
            raise TypeError("blood_pressure has no scalar value")
        return float(self.value)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        value = self.value.to_dict() if isinstance(self.value, BloodPressureValue) else self.value
        return {
            "id": self.id,
            "type": self.type.value,
            "value": value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
            "device_id": self.device_id,
            "quality": self.quality.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> HealthDataPoint:
        """Create a data point from its dictionary form."""
        return cls(
            id=data.get("id") or uuid4().hex,
            type=MeasurementType(data["type"]),
            value=data["value"],
            unit=data.get("unit", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            device_id=data.get("device_id"),
            quality=DataQuality(data.get("quality", DataQuality.GOOD.value)),
            metadata=dict(data.get("metadata") or {}),
        )

    def __str__(self) -> str:
        return f"{self.type.value}: {self.value} {self.unit} ({self.quality.value})"


@dataclass
class Device:
    """A discovered or connected external data source."""

    id: str
    name: str
    device_type: DeviceType = DeviceType.GENERIC_SENSOR
    manufacturer: str | None = None
    model: str | None = None
    services: list[str] = field(default_factory=list)
    rssi: int | None = None  # dBm, only while scanning
    is_connectable: bool = True
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    battery_level: int | None = None  # percent
    last_sync: datetime | None = None
    connected_at: datetime | None = None
    address: str | None = None  # transport address (BLE MAC / UUID)

    def supports(self, service: str) -> bool:
        """Check if the device advertises a service."""
        return service in self.services

    @property
    def measurement_types(self) -> list[MeasurementType]:
        """Measurement types the advertised services can produce."""
        return [SERVICE_MEASUREMENTS[s] for s in self.services if s in SERVICE_MEASUREMENTS]

    def copy(self) -> Device:
        """Return an independent copy."""
        return dataclasses.replace(self, services=list(self.services))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "device_type": self.device_type.value,
            "manufacturer": self.manufacturer,
            "model": self.model,
            "services": list(self.services),
            "rssi": self.rssi,
            "is_connectable": self.is_connectable,
            "status": self.status.value,
            "battery_level": self.battery_level,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "address": self.address,
        }

    def __str__(self) -> str:
        signal = f", RSSI {self.rssi} dBm" if self.rssi is not None else ""
        return f"{self.name} ({self.id}, {self.device_type.value}{signal})"


@dataclass
class ConnectionResult:
    """Outcome of a connection attempt."""

    success: bool
    device: Device | None = None
    error: str | None = None
    already_connected: bool = False


@dataclass(frozen=True)
class SyncQueueItem:
    """Outbound unit of work for the remote sync endpoint."""

    type: str
    data: dict[str, Any]
    device_id: str | None = None
    timestamp: datetime | None = None
    id: str | None = None

    def to_dict(self) -> dict:
        """Convert to the wire/storage dictionary form."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "deviceId": self.device_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SyncQueueItem:
        """Create an item from its dictionary form."""
        timestamp = data.get("timestamp")
        return cls(
            id=data.get("id"),
            type=data["type"],
            data=data.get("data") or {},
            device_id=data.get("deviceId"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
        )


@dataclass
class SyncResult:
    """Outcome of a sync cycle."""

    success: bool
    synced_count: int = 0
    failed_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "synced_count": self.synced_count,
            "failed_count": self.failed_count,
            "error": self.error,
        }


@dataclass
class SyncStatus:
    """Snapshot of the synchronizer state."""

    is_online: bool
    queue_size: int
    last_sync_time: datetime | None
    is_periodic_sync_active: bool
    sync_interval_minutes: float
    is_syncing: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "is_online": self.is_online,
            "queue_size": self.queue_size,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "is_periodic_sync_active": self.is_periodic_sync_active,
            "sync_interval_minutes": self.sync_interval_minutes,
            "is_syncing": self.is_syncing,
        }


@dataclass
class OperationResult:
    """Result shape returned across the integration manager boundary."""

    success: bool
    data: Any = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str | None = None, data: Any = None) -> OperationResult:
        return cls(success=False, data=data, error=error, error_code=error_code)
