"""Tests for src/scanner.py - single-flight device discovery."""

import asyncio

import pytest

from src.device_adapters.base import DeviceAdapter
from src.errors import DeviceConnectionError, DeviceError, ScanInProgressError
from src.models import Device, DeviceType
from src.scanner import DeviceScanner


class BrokenAdapter(DeviceAdapter):
    """Adapter whose radio fails during discovery."""

    name = "broken"

    async def scan(self, timeout, on_discovered):
        raise OSError("Bluetooth adapter not available")

    async def connect(self, device_id):
        raise DeviceConnectionError("unused")

    async def disconnect(self, device_id):
        return None

    async def stream_data(self, device):
        return []


def _devices() -> list[Device]:
    return [
        Device(id="a", name="A", device_type=DeviceType.FITNESS_TRACKER, manufacturer="Fitbit", rssi=-70),
        Device(id="b", name="B", device_type=DeviceType.SMARTWATCH, manufacturer="Apple", rssi=-40),
        Device(id="c", name="C", device_type=DeviceType.GENERIC_SENSOR, manufacturer=None, rssi=None,
               services=["weight"]),
        Device(id="d", name="D", device_type=DeviceType.FITNESS_TRACKER, manufacturer="Garmin", rssi=-55,
               services=["heart_rate", "steps"]),
    ]


class TestScan:
    """Tests for DeviceScanner.scan."""

    @pytest.mark.asyncio
    async def test_scan_finds_catalog(self, adapter):
        """Test that a scan returns every simulated device."""
        scanner = DeviceScanner(adapter)

        devices = await scanner.scan(duration_ms=50)

        assert {d.id for d in devices} == {
            "fitbit_001",
            "apple_watch_001",
            "garmin_001",
            "omron_bp_001",
            "withings_scale_001",
        }
        assert not scanner.is_scanning()
        assert [d.id for d in scanner.get_discovered_devices()] == [d.id for d in devices]

    @pytest.mark.asyncio
    async def test_second_scan_rejected(self, adapter):
        """Test that a concurrent scan raises ScanInProgressError."""
        scanner = DeviceScanner(adapter)
        first = asyncio.create_task(scanner.scan(duration_ms=100))
        await asyncio.sleep(0)

        assert scanner.is_scanning()
        with pytest.raises(ScanInProgressError):
            await scanner.scan(duration_ms=100)

        await first

    @pytest.mark.asyncio
    async def test_rejects_non_positive_duration(self, adapter):
        """Test that the scan window must be positive."""
        with pytest.raises(ValueError):
            await DeviceScanner(adapter).scan(duration_ms=0)

    @pytest.mark.asyncio
    async def test_stop_scan_returns_partial_results(self, adapter):
        """Test that stopping early returns what was found so far."""
        scanner = DeviceScanner(adapter)
        task = asyncio.create_task(scanner.scan(duration_ms=500))
        await asyncio.sleep(0.15)

        scanner.stop_scan()
        devices = await task

        assert 0 < len(devices) < 5
        assert not scanner.is_scanning()

    @pytest.mark.asyncio
    async def test_stop_scan_when_idle(self, adapter):
        """Test that stop_scan is safe without a scan."""
        DeviceScanner(adapter).stop_scan()

    @pytest.mark.asyncio
    async def test_adapter_failure_wrapped(self):
        """Test that radio errors surface as typed device errors."""
        scanner = DeviceScanner(BrokenAdapter())

        with pytest.raises(DeviceError) as exc_info:
            await scanner.scan(duration_ms=10)

        assert exc_info.value.component == "DeviceScanner"
        assert not scanner.is_scanning()

    @pytest.mark.asyncio
    async def test_results_are_copies(self, adapter):
        """Test that mutating a result does not affect scanner state."""
        scanner = DeviceScanner(adapter)
        devices = await scanner.scan(duration_ms=20)
        devices[0].services.clear()

        assert scanner.get_discovered_devices()[0].services


class TestFilters:
    """Tests for the pure filter and sort helpers."""

    def test_filter_by_type(self):
        """Test filtering by device type, enum or string."""
        devices = _devices()
        assert [d.id for d in DeviceScanner.filter_by_type(devices, DeviceType.FITNESS_TRACKER)] == ["a", "d"]
        assert [d.id for d in DeviceScanner.filter_by_type(devices, "smartwatch")] == ["b"]

    def test_filter_by_manufacturer(self):
        """Test case-insensitive substring matching."""
        assert [d.id for d in DeviceScanner.filter_by_manufacturer(_devices(), "gar")] == ["d"]

    def test_filter_by_service(self):
        """Test filtering by advertised service."""
        assert [d.id for d in DeviceScanner.filter_by_service(_devices(), "weight")] == ["c"]

    def test_sort_by_signal_strength(self):
        """Test strongest first with unknown RSSI last."""
        ordered = DeviceScanner.sort_by_signal_strength(_devices())
        assert [d.id for d in ordered] == ["b", "d", "a", "c"]

    def test_input_not_modified(self):
        """Test that helpers never reorder or shrink their input."""
        devices = _devices()
        DeviceScanner.sort_by_signal_strength(devices)
        DeviceScanner.filter_by_type(devices, DeviceType.SMARTWATCH)

        assert [d.id for d in devices] == ["a", "b", "c", "d"]
