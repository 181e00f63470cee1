"""Tests for src/connector.py - connection lifecycle and data emission."""

import asyncio
import random

import pytest

from src.connector import DeviceConnector
from src.device_adapters.simulated import SimulatedAdapter
from src.errors import DeviceConnectionError, DeviceNotFoundError
from src.models import ConnectionStatus, MeasurementType
from src.scheduler import Scheduler
from tests.conftest import no_sleep


@pytest.fixture
async def scheduler():
    scheduler = Scheduler()
    yield scheduler
    scheduler.cancel_all()


@pytest.fixture
def connector(adapter, scheduler):
    """Connector with a fast emission timer."""
    return DeviceConnector(adapter, scheduler, emission_interval=0.02, sleep=no_sleep)


class TestConnect:
    """Tests for DeviceConnector.connect."""

    @pytest.mark.asyncio
    async def test_connect(self, connector, scheduler):
        """Test a successful connection registers the device and its timer."""
        result = await connector.connect("fitbit_001")

        assert result.success
        assert result.device.status is ConnectionStatus.CONNECTED
        assert result.device.connected_at is not None
        assert connector.is_connected("fitbit_001")
        assert scheduler.is_scheduled("emit:fitbit_001")

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, connector, adapter):
        """Test that connecting twice performs one handshake."""
        await connector.connect("fitbit_001")
        result = await connector.connect("fitbit_001")

        assert result.success is False
        assert result.already_connected is True
        assert result.device.id == "fitbit_001"
        assert adapter.connect_attempts["fitbit_001"] == 1
        assert len(connector.get_connected_devices()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_connect(self, scheduler):
        """Test that a second connect during the handshake is refused."""
        adapter = SimulatedAdapter(rng=random.Random(1), connect_delay=0.05)
        connector = DeviceConnector(adapter, scheduler, emission_interval=10)

        first, second = await asyncio.gather(connector.connect("garmin_001"), connector.connect("garmin_001"))

        assert first.success
        assert second.success is False
        assert second.error == "Connection already in progress"
        assert adapter.connect_attempts["garmin_001"] == 1

    @pytest.mark.asyncio
    async def test_unknown_device_not_retried(self, connector, adapter):
        """Test that unknown devices fail immediately."""
        with pytest.raises(DeviceNotFoundError):
            await connector.connect("missing")
        assert "missing" not in adapter.connect_attempts

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, scheduler):
        """Test exponential backoff between failed handshakes."""
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        adapter = SimulatedAdapter(connect_delay=0, failing_devices={"fitbit_001"})
        connector = DeviceConnector(
            adapter, scheduler, max_retry_attempts=3, retry_delay=1.0, sleep=record_sleep
        )

        with pytest.raises(DeviceConnectionError):
            await connector.connect("fitbit_001")

        assert adapter.connect_attempts["fitbit_001"] == 4
        assert delays == [1.0, 2.0, 4.0]
        assert not connector.is_connected("fitbit_001")
        assert not scheduler.is_scheduled("emit:fitbit_001")


class TestEmission:
    """Tests for the per-device emission timer."""

    @pytest.mark.asyncio
    async def test_points_delivered_in_order(self, connector):
        """Test that each tick delivers one point per measurement type, in order."""
        received = []
        await connector.connect("fitbit_001", callback=received.append)
        await asyncio.sleep(0.05)
        await connector.disconnect("fitbit_001")

        assert len(received) >= 3
        cycle = [MeasurementType.HEART_RATE, MeasurementType.STEPS, MeasurementType.SLEEP]
        types = [p.type for p in received]
        assert types[:3] == cycle
        assert all(t == cycle[i % 3] for i, t in enumerate(types))
        assert all(p.device_id == "fitbit_001" for p in received)

    @pytest.mark.asyncio
    async def test_async_callback(self, connector):
        """Test that coroutine callbacks are awaited."""
        received = []

        async def on_point(point):
            received.append(point)

        await connector.connect("omron_bp_001")
        connector.set_data_callback("omron_bp_001", on_point)
        await asyncio.sleep(0.05)

        assert received
        assert received[0].type is MeasurementType.BLOOD_PRESSURE

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_emission(self, connector):
        """Test that a failing callback does not drop the remaining points."""
        received = []

        def flaky(point):
            if point.type is MeasurementType.HEART_RATE:
                raise ValueError("bad point")
            received.append(point.type)

        await connector.connect("fitbit_001", callback=flaky)
        await asyncio.sleep(0.03)

        assert MeasurementType.STEPS in received
        assert connector.is_connected("fitbit_001")

    @pytest.mark.asyncio
    async def test_device_dropped_after_stream_failures(self, adapter, scheduler):
        """Test that repeated stream errors disconnect the device."""
        connector = DeviceConnector(adapter, scheduler, emission_interval=0.01, max_stream_failures=2)
        await connector.connect("fitbit_001", callback=lambda p: None)

        # Simulate link loss below the connector
        await adapter.disconnect("fitbit_001")
        await asyncio.sleep(0.06)

        assert not connector.is_connected("fitbit_001")
        assert not scheduler.is_scheduled("emit:fitbit_001")


class TestDisconnect:
    """Tests for disconnect and cleanup."""

    @pytest.mark.asyncio
    async def test_disconnect(self, connector, scheduler):
        """Test that disconnect stops emission and reports False the second time."""
        received = []
        await connector.connect("fitbit_001", callback=received.append)

        assert await connector.disconnect("fitbit_001") is True
        count = len(received)
        await asyncio.sleep(0.05)

        assert len(received) == count
        assert not scheduler.is_scheduled("emit:fitbit_001")
        assert await connector.disconnect("fitbit_001") is False

    @pytest.mark.asyncio
    async def test_disconnect_unknown(self, connector):
        """Test that disconnecting an unknown id is a no-op."""
        assert await connector.disconnect("never_seen") is False

    @pytest.mark.asyncio
    async def test_get_device_returns_copy(self, connector):
        """Test that registry entries cannot be mutated through getters."""
        await connector.connect("fitbit_001")
        connector.get_device("fitbit_001").status = ConnectionStatus.ERROR
        connector.get_connected_devices()[0].services.clear()

        device = connector.get_device("fitbit_001")
        assert device.status is ConnectionStatus.CONNECTED
        assert device.services == ["heart_rate", "steps", "sleep"]
        assert connector.get_device("missing") is None

    @pytest.mark.asyncio
    async def test_cleanup(self, connector, scheduler):
        """Test that cleanup disconnects every device."""
        await connector.connect("fitbit_001")
        await connector.connect("garmin_001")

        await connector.cleanup()

        assert connector.get_connected_devices() == []
        assert scheduler.active_timers == []
