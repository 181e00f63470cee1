"""Tests for src/models.py - data records shared by the pipeline."""

from datetime import datetime

import pytest

from src.models import (
    BloodPressureValue,
    ConnectionStatus,
    DataQuality,
    Device,
    HealthDataPoint,
    MeasurementType,
    OperationResult,
    SyncQueueItem,
    SyncStatus,
)


class TestHealthDataPoint:
    """Tests for HealthDataPoint construction and validation."""

    def test_default_unit_from_type(self, heart_rate_point):
        """Test that the unit defaults per measurement type."""
        assert heart_rate_point.unit == "bpm"

    def test_explicit_unit_kept(self):
        """Test that an explicit unit is not overwritten."""
        point = HealthDataPoint(
            type=MeasurementType.TEMPERATURE,
            value=98.6,
            unit="fahrenheit",
            timestamp=datetime(2025, 1, 15),
        )
        assert point.unit == "fahrenheit"

    def test_string_type_and_quality_coerced(self):
        """Test that plain strings are converted to enums."""
        point = HealthDataPoint(type="steps", value=100, quality="fair", timestamp=datetime(2025, 1, 15))
        assert point.type is MeasurementType.STEPS
        assert point.quality is DataQuality.FAIR

    def test_blood_pressure_from_dict(self):
        """Test that a blood pressure dict becomes a BloodPressureValue."""
        point = HealthDataPoint(
            type=MeasurementType.BLOOD_PRESSURE,
            value={"systolic": 120, "diastolic": 80},
            timestamp=datetime(2025, 1, 15),
        )
        assert point.value == BloodPressureValue(systolic=120, diastolic=80)
        assert point.unit == "mmHg"

    def test_blood_pressure_rejects_scalar(self):
        """Test that blood pressure requires a structured value."""
        with pytest.raises(TypeError):
            HealthDataPoint(type=MeasurementType.BLOOD_PRESSURE, value=120, timestamp=datetime(2025, 1, 15))

    def test_scalar_rejects_structured_value(self):
        """Test that scalar types reject dicts and booleans."""
        with pytest.raises(TypeError):
            HealthDataPoint(type=MeasurementType.HEART_RATE, value={"bpm": 70}, timestamp=datetime(2025, 1, 15))
        with pytest.raises(TypeError):
            HealthDataPoint(type=MeasurementType.STEPS, value=True, timestamp=datetime(2025, 1, 15))

    def test_unknown_type_rejected(self):
        """Test that an unknown measurement type raises."""
        with pytest.raises(ValueError):
            HealthDataPoint(type="ecg", value=1, timestamp=datetime(2025, 1, 15))

    def test_scalar_property(self, heart_rate_point, high_bp_point):
        """Test scalar access for scalar and structured points."""
        assert heart_rate_point.scalar == 72.0
        with pytest.raises(TypeError):
            _ = high_bp_point.scalar

    def test_point_is_immutable(self, heart_rate_point):
        """Test that points cannot be mutated after creation."""
        with pytest.raises(AttributeError):
            heart_rate_point.value = 80

    def test_dict_round_trip_blood_pressure(self, high_bp_point):
        """Test that a blood pressure point survives to_dict/from_dict."""
        data = high_bp_point.to_dict()

        assert data["value"] == {"systolic": 145, "diastolic": 92, "pulse": 80}
        assert data["timestamp"] == "2025-01-15T12:00:00"
        assert HealthDataPoint.from_dict(data) == high_bp_point

    def test_unique_ids(self):
        """Test that each point gets its own id."""
        a = HealthDataPoint(type="steps", value=1, timestamp=datetime(2025, 1, 15))
        b = HealthDataPoint(type="steps", value=1, timestamp=datetime(2025, 1, 15))
        assert a.id != b.id


class TestBloodPressureValue:
    """Tests for BloodPressureValue."""

    def test_to_dict_omits_missing_pulse(self):
        """Test that pulse is only included when known."""
        assert BloodPressureValue(120, 80).to_dict() == {"systolic": 120, "diastolic": 80}

    def test_str(self):
        """Test string representation."""
        assert str(BloodPressureValue(145, 92)) == "145/92"


class TestDevice:
    """Tests for Device."""

    def test_defaults(self, sample_device):
        """Test default status and connectability."""
        assert sample_device.status is ConnectionStatus.DISCONNECTED
        assert sample_device.is_connectable is True
        assert sample_device.battery_level is None

    def test_copy_is_independent(self, sample_device):
        """Test that copies do not share the services list."""
        copy = sample_device.copy()
        copy.services.append("sleep")
        copy.status = ConnectionStatus.CONNECTED

        assert sample_device.services == ["heart_rate", "steps"]
        assert sample_device.status is ConnectionStatus.DISCONNECTED

    def test_measurement_types_skip_unmeasured_services(self):
        """Test that services without a data point variant are ignored."""
        device = Device(id="w", name="Watch", services=["heart_rate", "ecg", "blood_oxygen"])
        assert device.measurement_types == [MeasurementType.HEART_RATE, MeasurementType.BLOOD_OXYGEN]

    def test_supports(self, sample_device):
        """Test service lookup."""
        assert sample_device.supports("steps")
        assert not sample_device.supports("sleep")

    def test_to_dict(self, sample_device):
        """Test dictionary conversion."""
        data = sample_device.to_dict()
        assert data["device_type"] == "fitness_tracker"
        assert data["status"] == "disconnected"
        assert data["connected_at"] is None


class TestSyncQueueItem:
    """Tests for SyncQueueItem wire form."""

    def test_to_dict_uses_wire_keys(self):
        """Test that the origin device is serialized as deviceId."""
        item = SyncQueueItem(
            type="wearable_data",
            data={"value": 1},
            device_id="fitbit_001",
            timestamp=datetime(2025, 1, 15, 10, 0),
            id="sync_1",
        )
        assert item.to_dict() == {
            "id": "sync_1",
            "type": "wearable_data",
            "data": {"value": 1},
            "timestamp": "2025-01-15T10:00:00",
            "deviceId": "fitbit_001",
        }

    def test_from_dict(self):
        """Test parsing the stored form."""
        item = SyncQueueItem.from_dict(
            {"id": "sync_2", "type": "sensor", "data": None, "timestamp": None, "deviceId": None}
        )
        assert item.id == "sync_2"
        assert item.data == {}
        assert item.timestamp is None

    def test_from_dict_requires_type(self):
        """Test that entries without a type are rejected."""
        with pytest.raises(KeyError):
            SyncQueueItem.from_dict({"id": "x", "data": {}})


class TestResults:
    """Tests for result records."""

    def test_operation_result_ok(self):
        """Test successful operation result."""
        result = OperationResult.ok([1, 2])
        assert result.success is True
        assert result.data == [1, 2]
        assert result.error is None

    def test_operation_result_fail(self):
        """Test failed operation result."""
        result = OperationResult.fail("Device is offline", "OFFLINE")
        assert result.success is False
        assert result.error == "Device is offline"
        assert result.error_code == "OFFLINE"

    def test_sync_status_to_dict(self):
        """Test sync status serialization."""
        status = SyncStatus(
            is_online=True,
            queue_size=3,
            last_sync_time=None,
            is_periodic_sync_active=False,
            sync_interval_minutes=15,
        )
        data = status.to_dict()
        assert data["queue_size"] == 3
        assert data["last_sync_time"] is None
        assert data["is_syncing"] is False
