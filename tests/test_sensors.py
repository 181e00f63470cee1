"""Tests for src/sensors.py - IIO sensor reads and polling timers."""

import asyncio
from datetime import datetime

import pytest

from src.errors import SensorUnavailableError
from src.scheduler import Scheduler
from src.sensors import IioSensorReader, SensorMonitor, SensorReading
from tests.conftest import StaticSensorReader


@pytest.fixture
def iio(tmp_path):
    """Fake IIO sysfs tree with a raw accelerometer and a processed barometer."""
    accel = tmp_path / "iio:device0"
    accel.mkdir()
    (accel / "in_accel_x_raw").write_text("100\n")
    (accel / "in_accel_y_raw").write_text("0\n")
    (accel / "in_accel_z_raw").write_text("1000\n")
    (accel / "in_accel_scale").write_text("0.00981\n")

    baro = tmp_path / "iio:device1"
    baro.mkdir()
    (baro / "in_pressure_input").write_text("101.325\n")
    return tmp_path


@pytest.fixture
async def scheduler():
    scheduler = Scheduler()
    yield scheduler
    scheduler.cancel_all()


class TestSensorReading:
    """Tests for SensorReading."""

    def test_to_dict(self):
        """Test the queue and publish form of a reading."""
        reading = SensorReading("accelerometer", {"x": 3.0, "y": 4.0, "z": 0.0}, datetime(2025, 1, 15, 8, 0))

        assert reading.to_dict() == {
            "type": "accelerometer",
            "value": {"x": 3.0, "y": 4.0, "z": 0.0},
            "magnitude": 5.0,
            "timestamp": "2025-01-15T08:00:00",
            "device_id": None,
        }


class TestIioSensorReader:
    """Tests for IioSensorReader."""

    def test_scaled_raw_channels(self, iio):
        """Test that raw axis values are multiplied by the shared scale."""
        reading = IioSensorReader(iio).read("accelerometer")

        assert reading.sensor == "accelerometer"
        assert reading.values["x"] == pytest.approx(0.981)
        assert reading.values["y"] == 0
        assert reading.values["z"] == pytest.approx(9.81)

    def test_processed_scalar_channel(self, iio):
        """Test that a processed channel is used as is."""
        reading = IioSensorReader(iio).read("barometer")
        assert reading.values == {"value": pytest.approx(101.325)}

    def test_missing_device(self, iio):
        """Test that a sensor without an IIO device is unavailable."""
        with pytest.raises(SensorUnavailableError) as exc_info:
            IioSensorReader(iio).read("gyroscope")

        assert exc_info.value.metadata["sensor"] == "gyroscope"

    def test_unreadable_channel(self, iio):
        """Test that a missing axis file is reported with its cause."""
        (iio / "iio:device0" / "in_accel_y_raw").unlink()

        with pytest.raises(SensorUnavailableError) as exc_info:
            IioSensorReader(iio).read("accelerometer")

        assert isinstance(exc_info.value.cause, OSError)

    def test_unknown_sensor(self, iio):
        """Test that names outside the sensor set are rejected."""
        with pytest.raises(SensorUnavailableError, match="Unknown sensor"):
            IioSensorReader(iio).read("thermometer")

    def test_no_iio_tree(self, tmp_path):
        """Test a host without IIO support."""
        with pytest.raises(SensorUnavailableError):
            IioSensorReader(tmp_path / "missing").read("accelerometer")


class TestSensorMonitor:
    """Tests for SensorMonitor polling."""

    @pytest.mark.asyncio
    async def test_readings_delivered(self, scheduler):
        """Test that a started sensor is read on every tick."""
        received = []
        monitor = SensorMonitor(scheduler, StaticSensorReader(), interval=0.01)

        assert monitor.start("accelerometer", received.append) is True
        await asyncio.sleep(0.05)
        assert monitor.stop("accelerometer") is True

        assert len(received) >= 2
        assert all(r.sensor == "accelerometer" for r in received)
        assert received[0].magnitude == pytest.approx(9.81)
        assert not scheduler.is_scheduled("sensor:accelerometer")

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_timer(self, scheduler):
        """Test that restarting replaces the callback without a second timer."""
        first, second = [], []
        monitor = SensorMonitor(scheduler, StaticSensorReader(), interval=0.01)

        monitor.start("accelerometer", first.append)
        assert monitor.start("accelerometer", second.append) is False
        await asyncio.sleep(0.03)

        assert first == []
        assert second
        assert monitor.active_sensors == ["accelerometer"]
        assert scheduler.active_timers == ["sensor:accelerometer"]

    @pytest.mark.asyncio
    async def test_read_failure_keeps_polling(self, scheduler):
        """Test that a failing read is skipped and the timer stays up."""
        reader = StaticSensorReader(fail={"gyroscope"})
        received = []
        monitor = SensorMonitor(scheduler, reader, interval=0.01)

        monitor.start("gyroscope", received.append)
        await asyncio.sleep(0.04)

        assert received == []
        assert reader.reads.count("gyroscope") >= 2
        assert monitor.is_monitoring("gyroscope")

    @pytest.mark.asyncio
    async def test_async_callback(self, scheduler):
        """Test that coroutine callbacks are awaited."""
        received = []

        async def on_reading(reading):
            received.append(reading)

        monitor = SensorMonitor(scheduler, StaticSensorReader(), interval=0.01)
        monitor.start("accelerometer", on_reading)
        await asyncio.sleep(0.03)
        monitor.stop_all()

        assert received
        assert monitor.active_sensors == []

    @pytest.mark.asyncio
    async def test_stop_unknown(self, scheduler):
        """Test that stopping an idle sensor reports False."""
        assert SensorMonitor(scheduler, StaticSensorReader()).stop("barometer") is False

    def test_rejects_invalid_interval(self):
        """Test that the poll interval must be positive."""
        with pytest.raises(ValueError):
            SensorMonitor(Scheduler(), StaticSensorReader(), interval=0)
