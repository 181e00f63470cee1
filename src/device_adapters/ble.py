"""Bluetooth LE adapter for standard GATT health devices.

Discovers devices advertising the SIG health services, subscribes to their
measurement characteristics on connect and buffers decoded notifications
until the connector drains them.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from src.device_adapters import gatt
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

# Maximum buffered notifications per device between two drains
MAX_BUFFERED_POINTS = 1000


def _classify(name: str | None, services: list[str]) -> DeviceType:
    if name and "watch" in name.lower():
        return DeviceType.SMARTWATCH
    if any(s in services for s in ("blood_pressure", "weight", "temperature", "blood_oxygen")):
        return DeviceType.GENERIC_SENSOR
    if "heart_rate" in services:
        return DeviceType.FITNESS_TRACKER
    return DeviceType.GENERIC_SENSOR


class BleakAdapter(DeviceAdapter):
    """Adapter for real Bluetooth LE devices via bleak."""

    name = "ble"

    def __init__(
        self,
        connect_timeout: float = 15.0,
        lookup_timeout: float = 10.0,
        health_devices_only: bool = True,
    ):
        """Initialize BLE adapter.

        Args:
            connect_timeout: Connection handshake timeout in seconds
            lookup_timeout: Scan timeout when connecting to an unseen address
            health_devices_only: Ignore devices without a known health service
        """
        self.connect_timeout = connect_timeout
        self.lookup_timeout = lookup_timeout
        self.health_devices_only = health_devices_only
        self._discovered: dict[str, tuple[Device, BLEDevice]] = {}
        self._clients: dict[str, BleakClient] = {}
        self._buffers: dict[str, deque[HealthDataPoint]] = {}

    def get_device(self, device_id: str) -> Device | None:
        entry = self._discovered.get(device_id)
        return entry[0].copy() if entry else None

    def _to_device(self, ble_device: BLEDevice, adv: AdvertisementData) -> Device:
        services = gatt.services_from_uuids(adv.service_uuids or [])
        name = adv.local_name or ble_device.name or ble_device.address
        return Device(
            id=ble_device.address,
            name=name,
            device_type=_classify(name, services),
            services=services,
            rssi=adv.rssi,
            address=ble_device.address,
        )

    async def scan(self, timeout: float, on_discovered: DiscoveryCallback) -> None:
        def detection_callback(ble_device: BLEDevice, adv: AdvertisementData) -> None:
            device = self._to_device(ble_device, adv)
            if self.health_devices_only and not device.measurement_types:
                return
            self._discovered[device.id] = (device, ble_device)
            logger.debug(f"Found: {device.id} - {device.name} (RSSI: {device.rssi})")
            on_discovered(device.copy())

        logger.info(f"Scanning for BLE health devices ({timeout}s)...")
        async with BleakScanner(detection_callback=detection_callback):
            await asyncio.sleep(timeout)

    async def _resolve(self, device_id: str) -> tuple[Device, BLEDevice]:
        entry = self._discovered.get(device_id)
        if entry is not None:
            return entry

        logger.info(f"Device {device_id} not seen yet, scanning for it...")
        ble_device = await BleakScanner.find_device_by_address(device_id, timeout=self.lookup_timeout)
        if ble_device is None:
            raise DeviceNotFoundError(
                f"Device {device_id} not found. Make sure Bluetooth is enabled on the device.",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id},
            )
        device = Device(
            id=ble_device.address,
            name=ble_device.name or ble_device.address,
            address=ble_device.address,
        )
        return device, ble_device

    async def connect(self, device_id: str) -> Device:
        device, ble_device = await self._resolve(device_id)
        client = BleakClient(ble_device)

        try:
            await asyncio.wait_for(client.connect(), timeout=self.connect_timeout)
            if not client.is_connected:
                raise ConnectionError("Connection returned but not connected")

            service_uuids = [s.uuid for s in client.services]
            device.services = gatt.services_from_uuids(service_uuids)
            device.device_type = _classify(device.name, device.services)

            self._buffers[device.id] = deque(maxlen=MAX_BUFFERED_POINTS)
            for service in device.services:
                char_uuid = gatt.SERVICE_CHARACTERISTICS.get(service)
                if char_uuid is None or client.services.get_characteristic(char_uuid) is None:
                    continue
                await client.start_notify(char_uuid, self._make_handler(device.id, char_uuid))
                logger.debug(f"Subscribed to {service} on {device.id}")

            if "battery" in device.services:
                try:
                    battery = await client.read_gatt_char(gatt.BATTERY_LEVEL)
                    device.battery_level = int(battery[0])
                except (BleakError, IndexError) as e:
                    logger.warning(f"Battery read failed on {device.id}: {e}")

        except (BleakError, TimeoutError, ConnectionError, OSError) as e:
            logger.error(f"Connection to {device_id} failed: {e}")
            self._buffers.pop(device.id, None)
            if client.is_connected:
                await client.disconnect()
            raise DeviceConnectionError(
                f"Connection to {device_id} failed: {e}",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id},
                cause=e,
            ) from e

        self._clients[device.id] = client
        return device.copy()

    def _make_handler(self, device_id: str, char_uuid: str):
        def handler(_sender, data: bytearray) -> None:
            try:
                points = self._decode(device_id, char_uuid, bytes(data))
            except ValueError as e:
                logger.warning(f"Dropping malformed notification from {device_id}: {e}")
                return
            buffer = self._buffers.get(device_id)
            if buffer is not None:
                buffer.extend(points)

        return handler

    def _decode(self, device_id: str, char_uuid: str, data: bytes) -> list[HealthDataPoint]:
        now = datetime.now()
        metadata = {"source": "ble", "characteristic": char_uuid}

        if char_uuid == gatt.HEART_RATE_MEASUREMENT:
            hr = gatt.parse_heart_rate(data)
            quality = DataQuality.POOR if hr.sensor_contact is False else DataQuality.GOOD
            if hr.rr_intervals:
                metadata["rr_intervals"] = hr.rr_intervals
            return [
                HealthDataPoint(
                    type=MeasurementType.HEART_RATE,
                    value=hr.bpm,
                    timestamp=now,
                    device_id=device_id,
                    quality=quality,
                    metadata=metadata,
                )
            ]

        if char_uuid == gatt.BLOOD_PRESSURE_MEASUREMENT:
            bp = gatt.parse_blood_pressure(data)
            quality = DataQuality.FAIR if bp.body_movement else DataQuality.GOOD
            metadata["irregular_pulse"] = bp.irregular_pulse
            return [
                HealthDataPoint(
                    type=MeasurementType.BLOOD_PRESSURE,
                    value=BloodPressureValue(bp.systolic, bp.diastolic, bp.pulse),
                    timestamp=bp.timestamp or now,
                    device_id=device_id,
                    quality=quality,
                    metadata=metadata,
                )
            ]

        if char_uuid == gatt.TEMPERATURE_MEASUREMENT:
            temp = gatt.parse_temperature(data)
            return [
                HealthDataPoint(
                    type=MeasurementType.TEMPERATURE,
                    value=temp.celsius,
                    timestamp=temp.timestamp or now,
                    device_id=device_id,
                    metadata=metadata,
                )
            ]

        if char_uuid == gatt.WEIGHT_MEASUREMENT:
            weight = gatt.parse_weight(data)
            return [
                HealthDataPoint(
                    type=MeasurementType.WEIGHT,
                    value=weight.kilograms,
                    timestamp=weight.timestamp or now,
                    device_id=device_id,
                    quality=DataQuality.EXCELLENT,
                    metadata=metadata,
                )
            ]

        if char_uuid == gatt.PLX_CONTINUOUS_MEASUREMENT:
            plx = gatt.parse_plx_continuous(data)
            if plx.spo2 != plx.spo2:  # NaN: sensor not ready
                return []
            return [
                HealthDataPoint(
                    type=MeasurementType.BLOOD_OXYGEN,
                    value=plx.spo2,
                    timestamp=now,
                    device_id=device_id,
                    metadata=metadata,
                )
            ]

        return []

    async def disconnect(self, device_id: str) -> None:
        client = self._clients.pop(device_id, None)
        self._buffers.pop(device_id, None)
        if client is None or not client.is_connected:
            return

        logger.info(f"Disconnecting {device_id}...")
        try:
            await client.disconnect()
        except AssertionError as e:
            # Known issue with bluezdbus adapter
            logger.warning(f"Disconnect assertion error (can be ignored): {e}")
        except (BleakError, OSError) as e:
            logger.warning(f"Disconnect error: {e}")

    async def stream_data(self, device: Device) -> list[HealthDataPoint]:
        client = self._clients.get(device.id)
        if client is None or not client.is_connected:
            raise DeviceConnectionError(
                f"Link to {device.id} lost",
                component=self.name,
                action="stream_data",
                metadata={"device_id": device.id},
            )

        buffer = self._buffers.get(device.id)
        if not buffer:
            return []
        points = list(buffer)
        buffer.clear()
        return points

    async def close(self) -> None:
        for device_id in list(self._clients):
            await self.disconnect(device_id)
