"""Integration manager: the single entry point into the pipeline.

Composes the capability detector, scanner, connector, analyzer, synchronizer
and configuration manager. Every public operation returns an
:class:`OperationResult`; expected failures (already connected, offline,
validation errors) are reported through it instead of being raised.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from src.analyzer import AggregatedHealthData, AnalysisResult, DataAnalyzer, HealthSummary, classify_movement
from src.capabilities import IIO_DEVICES_PATH, CapabilityDetector, HostProbes
from src.config_manager import VALID_SENSORS, ConfigurationManager, DeviceIntegrationConfig
from src.connectivity import ConnectivityMonitor
from src.connector import DeviceConnector
from src.device_adapters.base import DeviceAdapter
from src.device_adapters.ble import BleakAdapter
from src.device_adapters.garmin import GarminConnectAdapter
from src.device_adapters.simulated import SimulatedAdapter
from src.errors import ConfigValidationError, PipelineError, SensorUnavailableError, StorageError, wrap_error
from src.local_store import LocalStore
from src.models import HealthDataPoint, MeasurementType, OperationResult, SyncQueueItem
from src.mqtt_publisher import MQTTPublisher
from src.scanner import DeviceScanner
from src.scheduler import Scheduler
from src.sensors import DEFAULT_POLL_INTERVAL, IioSensorReader, SensorMonitor, SensorReading
from src.synchronizer import DataSynchronizer
from src.sync_transport import HttpSyncTransport, MqttSyncTransport, NullSyncTransport, SyncTransport

logger = logging.getLogger(__name__)

WEARABLE_DATA = "wearable_data"
SENSOR_DATA = "sensor_data"
MAX_RECORDED_ERRORS = 50

AnalysisListener = Callable[[HealthDataPoint, AnalysisResult | None], Awaitable[None] | None]


class IntegrationManager:
    """Facade over the device integration pipeline."""

    component = "IntegrationManager"

    def __init__(
        self,
        store: LocalStore,
        adapter: DeviceAdapter,
        transport: SyncTransport,
        scheduler: Scheduler | None = None,
        analyzer: DataAnalyzer | None = None,
        capability_detector: CapabilityDetector | None = None,
        publisher: MQTTPublisher | None = None,
        sensor_reader: IioSensorReader | None = None,
        emission_interval: float = 60.0,
        connectivity_interval: float = 30.0,
        batch_size: int = 50,
        max_queue_size: int = 1000,
        retry_delay: float = 1.0,
        summary_ttl: float = 30.0,
        sensor_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the manager and its components.

        Args:
            store: Durable storage shared by all components
            adapter: Device transport
            transport: Remote sync channel
            scheduler: Timer owner (a new one is created if omitted)
            analyzer: Data analyzer (default thresholds if omitted)
            capability_detector: Host capability detector
            publisher: Optional MQTT publisher for live points and summaries
            sensor_reader: Onboard sensor reader (IIO sysfs if omitted)
            emission_interval: Seconds between device data drains
            connectivity_interval: Seconds between reachability probes
            batch_size: Items per sync batch
            max_queue_size: Sync queue ceiling
            retry_delay: Base backoff delay for handshakes and batches
            summary_ttl: Seconds a computed health summary is reused
            sensor_interval: Seconds between reads of each monitored sensor
            sleep: Awaitable sleep, replaced in tests
        """
        self.store = store
        self.adapter = adapter
        self.transport = transport
        self.scheduler = scheduler or Scheduler()
        self.publisher = publisher
        self.summary_ttl = summary_ttl

        self.config_manager = ConfigurationManager(store)
        self.capability_detector = capability_detector or CapabilityDetector(store)
        self.analyzer = analyzer or DataAnalyzer()
        self.scanner = DeviceScanner(adapter)
        self.connector = DeviceConnector(
            adapter,
            self.scheduler,
            emission_interval=emission_interval,
            retry_delay=retry_delay,
            sleep=sleep,
        )
        self.connectivity = ConnectivityMonitor(
            self.scheduler,
            probe=transport.ping,
            interval_seconds=connectivity_interval,
        )
        self.synchronizer = DataSynchronizer(
            store,
            transport,
            self.scheduler,
            connectivity=self.connectivity,
            max_queue_size=max_queue_size,
            batch_size=batch_size,
            retry_delay=retry_delay,
            sleep=sleep,
        )
        self.sensors = SensorMonitor(self.scheduler, sensor_reader, sensor_interval)

        self._initialized = False
        self._points: deque[HealthDataPoint] = deque(maxlen=DeviceIntegrationConfig().max_cache_size)
        self._sensor_readings: deque[SensorReading] = deque(maxlen=DeviceIntegrationConfig().max_cache_size)
        self._latest_analysis: dict[str, AnalysisResult] = {}
        self._analysis_listeners: list[AnalysisListener] = []
        self._summary_cache: tuple[float, HealthSummary] | None = None
        self._errors: deque[dict] = deque(maxlen=MAX_RECORDED_ERRORS)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ============== LIFECYCLE ==============

    async def initialize(self) -> OperationResult:
        """Load configuration, capabilities and the sync queue; start timers."""
        if self._initialized:
            return OperationResult.ok()

        logger.info("Initializing device integration...")
        try:
            await self.config_manager.initialize()
            capabilities = await self.capability_detector.detect_capabilities()
            await self.synchronizer.load()

            config = self.config_manager.get_configuration()
            await self._apply_configuration(config, set(config.to_dict()))
            await self._purge_history(config.health_data_retention_days)

            self.connectivity.start()
            self.synchronizer.start_periodic_sync(config.sync_interval_minutes)
        except PipelineError as e:
            # No half-started timers
            self.synchronizer.stop_periodic_sync()
            self.connectivity.stop()
            return self._fail(e, "initialize")

        self._initialized = True
        self._start_enabled_sensors(config)
        logger.info(
            f"Device integration ready (adapter={self.adapter.name}, transport={self.transport.name}, "
            f"platform={capabilities.platform}, queued={self.synchronizer.get_queue_size()})"
        )
        return OperationResult.ok(capabilities)

    async def cleanup(self) -> OperationResult:
        """Stop scanning and syncing, disconnect devices and persist the queue."""
        logger.info("Cleaning up device integration...")
        failures: list[str] = []

        self.scanner.stop_scan()
        self.sensors.stop_all()
        steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("connector", self.connector.cleanup),
            ("synchronizer", self.synchronizer.cleanup),
            ("adapter", self.adapter.close),
            ("transport", self.transport.close),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(f"Cleanup of {name} failed: {e}")
                failures.append(f"{name}: {e}")

        self.scheduler.cancel_all()
        self._initialized = False
        self._summary_cache = None

        if failures:
            return OperationResult.fail(f"Cleanup incomplete: {'; '.join(failures)}", "CLEANUP_ERROR")
        logger.info("Cleanup complete")
        return OperationResult.ok()

    # ============== DEVICES ==============

    async def scan_for_devices(self, duration_ms: int | None = None) -> OperationResult:
        """Scan for devices, strongest signal first."""
        if duration_ms is None:
            duration_ms = self.config_manager.get_configuration().bluetooth_scan_duration
        try:
            devices = await self.scanner.scan(duration_ms)
        except (PipelineError, ValueError) as e:
            return self._fail(e, "scan_for_devices", {"duration_ms": duration_ms})
        return OperationResult.ok(DeviceScanner.sort_by_signal_strength(devices))

    def stop_scan(self) -> OperationResult:
        self.scanner.stop_scan()
        return OperationResult.ok()

    async def connect_device(self, device_id: str) -> OperationResult:
        """Connect a device and route its data into analysis and sync."""
        try:
            result = await self.connector.connect(device_id, self._on_data_point)
        except PipelineError as e:
            return self._fail(e, "connect_device", {"device_id": device_id})

        if not result.success:
            code = "ALREADY_CONNECTED" if result.already_connected else "CONNECTION_IN_PROGRESS"
            return OperationResult.fail(result.error, code, data=result.device)
        return OperationResult.ok(result.device)

    async def disconnect_device(self, device_id: str) -> OperationResult:
        if not await self.connector.disconnect(device_id):
            return OperationResult.fail("Device not connected", "NOT_CONNECTED", data=False)
        return OperationResult.ok(True)

    def get_connected_devices(self) -> list:
        return self.connector.get_connected_devices()

    async def get_device_capabilities(self) -> OperationResult:
        try:
            return OperationResult.ok(await self.capability_detector.detect_capabilities())
        except PipelineError as e:
            return self._fail(e, "get_device_capabilities")

    # ============== DATA ==============

    def add_analysis_listener(self, listener: AnalysisListener) -> Callable[[], None]:
        """Receive every point with its analysis. Returns a remover."""
        self._analysis_listeners.append(listener)

        def remove() -> None:
            if listener in self._analysis_listeners:
                self._analysis_listeners.remove(listener)

        return remove

    async def _on_data_point(self, point: HealthDataPoint) -> None:
        analysis: AnalysisResult | None = None
        try:
            analysis = self.analyzer.analyze_health_data(point.type, point)
            self._latest_analysis[point.type.value] = analysis
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not analyze {point.type.value} from {point.device_id}: {e}")

        self._points.append(point)
        self._summary_cache = None

        for listener in list(self._analysis_listeners):
            try:
                result = listener(point, analysis)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Analysis listener failed: {e}")

        data = point.to_dict()
        if analysis is not None:
            data["analysis"] = analysis.to_dict()

        if self.publisher is not None and self.publisher.is_connected:
            await asyncio.to_thread(self.publisher.publish_point, data)

        try:
            await self.synchronizer.add_to_queue(
                SyncQueueItem(type=WEARABLE_DATA, data=data, device_id=point.device_id)
            )
        except StorageError as e:
            self._record(wrap_error(e, self.component, "queue_data_point", {"point_id": point.id}))
            logger.error(f"Failed to queue data point {point.id}: {e}")
            return

        logger.debug(f"Processed {point.type.value} from {point.device_id}")

    def _window(self, days: float | None = None) -> list[HealthDataPoint]:
        retention = self.config_manager.get_configuration().health_data_retention_days
        cutoff = datetime.now() - timedelta(days=min(days, retention) if days is not None else retention)
        return [p for p in self._points if p.timestamp >= cutoff]

    def _trim_buffer(self, config: DeviceIntegrationConfig) -> None:
        cutoff = datetime.now() - timedelta(days=config.health_data_retention_days)
        kept = [p for p in self._points if p.timestamp >= cutoff]
        self._points = deque(kept, maxlen=config.max_cache_size)
        readings = [r for r in self._sensor_readings if r.timestamp >= cutoff]
        self._sensor_readings = deque(readings, maxlen=config.max_cache_size)

    def get_buffered_points(self) -> list[HealthDataPoint]:
        return list(self._points)

    async def get_health_data(
        self,
        data_type: str | MeasurementType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> OperationResult:
        """Query buffered points inside the retention window, oldest first.

        Args:
            data_type: Only points of this measurement type
            start: Earliest timestamp, inclusive
            end: Latest timestamp, inclusive
            limit: Keep only the most recent ``limit`` matches

        Returns:
            Matching points, or a validation failure for an unknown type,
            a non-positive limit or a start after the end
        """
        try:
            measurement = MeasurementType(data_type) if data_type is not None else None
        except ValueError:
            return OperationResult.fail(f"Unknown data type: {data_type}", ConfigValidationError.code)
        if limit is not None and limit <= 0:
            return OperationResult.fail(f"limit must be positive, got {limit}", ConfigValidationError.code)
        if start is not None and end is not None and start > end:
            return OperationResult.fail("start must not be after end", ConfigValidationError.code)

        points = sorted(
            (
                p
                for p in self._window()
                if (measurement is None or p.type is measurement)
                and (start is None or p.timestamp >= start)
                and (end is None or p.timestamp <= end)
            ),
            key=lambda p: p.timestamp,
        )
        if limit is not None:
            points = points[-limit:]
        return OperationResult.ok(points)

    def get_latest_analysis(self, measurement_type: str | None = None) -> OperationResult:
        """Most recent analysis per measurement type, or for one type."""
        if measurement_type is None:
            return OperationResult.ok(dict(self._latest_analysis))
        analysis = self._latest_analysis.get(str(measurement_type))
        if analysis is None:
            return OperationResult.fail(f"No analysis for {measurement_type}", "NO_DATA")
        return OperationResult.ok(analysis)

    async def get_aggregated_health_data(self, days: float = 7) -> OperationResult:
        if days <= 0:
            return OperationResult.fail(f"days must be positive, got {days}", ConfigValidationError.code)
        return OperationResult.ok(AggregatedHealthData.from_points(self._window(days)))

    async def get_health_summary(self) -> OperationResult:
        """Summary of the buffered window, reused for ``summary_ttl`` seconds."""
        now = time.monotonic()
        if self._summary_cache is not None and now - self._summary_cache[0] < self.summary_ttl:
            return OperationResult.ok(self._summary_cache[1])

        try:
            summary = self.analyzer.generate_health_summary(AggregatedHealthData.from_points(self._window()))
        except (TypeError, ValueError) as e:
            return self._fail(e, "get_health_summary")

        self._summary_cache = (now, summary)
        if self.publisher is not None and self.publisher.is_connected:
            await asyncio.to_thread(self.publisher.publish_summary, summary.to_dict())
        return OperationResult.ok(summary)

    # ============== SENSORS ==============

    async def start_sensor_monitoring(self, sensor_type: str) -> OperationResult:
        """Poll an onboard sensor and queue its readings for sync.

        The sensor must be enabled in the configuration and present on the host.
        Starting a sensor that is already polled succeeds without a second timer.
        """
        if sensor_type not in VALID_SENSORS:
            return OperationResult.fail(f"Unknown sensor: {sensor_type}", ConfigValidationError.code)
        if sensor_type not in self.config_manager.get_configuration().enabled_sensors:
            return OperationResult.fail(f"Sensor {sensor_type} is not enabled", "SENSOR_DISABLED")

        try:
            await self.capability_detector.detect_capabilities()
        except PipelineError as e:
            return self._fail(e, "start_sensor_monitoring", {"sensor": sensor_type})
        if not self.capability_detector.is_sensor_available(sensor_type):
            return OperationResult.fail(
                f"Sensor {sensor_type} is not available on this host", SensorUnavailableError.code
            )

        self.sensors.start(sensor_type, self._on_sensor_reading)
        return OperationResult.ok(True)

    def stop_sensor_monitoring(self, sensor_type: str) -> OperationResult:
        if not self.sensors.stop(sensor_type):
            return OperationResult.fail(f"Sensor {sensor_type} is not monitored", "NOT_MONITORING", data=False)
        return OperationResult.ok(True)

    def get_monitored_sensors(self) -> list[str]:
        return self.sensors.active_sensors

    def get_sensor_readings(self, sensor_type: str | None = None) -> list[SensorReading]:
        return [r for r in self._sensor_readings if sensor_type is None or r.sensor == sensor_type]

    def _start_enabled_sensors(self, config: DeviceIntegrationConfig) -> None:
        for sensor in config.enabled_sensors:
            if self.capability_detector.is_sensor_available(sensor) and not self.sensors.is_monitoring(sensor):
                self.sensors.start(sensor, self._on_sensor_reading)

    async def _on_sensor_reading(self, reading: SensorReading) -> None:
        self._sensor_readings.append(reading)

        data = reading.to_dict()
        if reading.sensor == "accelerometer":
            data["movement"] = classify_movement(reading.magnitude, self.analyzer.thresholds)

        if self.publisher is not None and self.publisher.is_connected:
            await asyncio.to_thread(self.publisher.publish_point, data, retain=False, qos=0)

        try:
            await self.synchronizer.add_to_queue(SyncQueueItem(type=SENSOR_DATA, data=data))
        except StorageError as e:
            self._record(wrap_error(e, self.component, "queue_sensor_reading", {"sensor": reading.sensor}))
            logger.error(f"Failed to queue {reading.sensor} reading: {e}")

    # ============== CONFIGURATION & SYNC ==============

    def get_configuration(self) -> DeviceIntegrationConfig:
        return self.config_manager.get_configuration()

    async def update_configuration(self, updates: dict[str, Any]) -> OperationResult:
        """Validate and apply a partial configuration.

        Returns:
            The new configuration, or a failed result naming the offending
            field; a rejected update changes nothing
        """
        try:
            config = await self.config_manager.update_configuration(updates)
        except ConfigValidationError as e:
            self._record(e)
            return OperationResult.fail(e.message, e.code, data={"field": e.field})
        except StorageError as e:
            return self._fail(e, "update_configuration")

        await self._apply_configuration(config, set(updates))
        return OperationResult.ok(config)

    async def _apply_configuration(self, config: DeviceIntegrationConfig, changed: set[str]) -> None:
        # max_retry_attempts counts retries after the first try, for handshakes and batches alike
        if "max_retry_attempts" in changed:
            self.connector.max_retry_attempts = config.max_retry_attempts
            self.synchronizer.retry_attempts = config.max_retry_attempts
        if "sync_interval_minutes" in changed:
            if self._initialized:
                self.synchronizer.update_sync_interval(config.sync_interval_minutes)
            else:
                self.synchronizer.sync_interval_minutes = config.sync_interval_minutes
        if changed & {"max_cache_size", "health_data_retention_days"}:
            self._trim_buffer(config)
            self._summary_cache = None
        if "enabled_sensors" in changed:
            for sensor in self.sensors.active_sensors:
                if sensor not in config.enabled_sensors:
                    self.sensors.stop(sensor)
            missing = [s for s in config.enabled_sensors if not self.capability_detector.is_sensor_available(s)]
            if missing:
                logger.warning(f"Enabled sensors not available on this host: {', '.join(missing)}")
            if self._initialized:
                self._start_enabled_sensors(config)
        if "offline_mode" in changed and config.offline_mode != self.synchronizer.offline_mode:
            await self.synchronizer.set_offline_mode(config.offline_mode)

    async def _purge_history(self, retention_days: int) -> None:
        try:
            removed = await self.store.delete_old_records(retention_days)
        except StorageError as e:
            logger.warning(f"Could not purge sync history: {e}")
            return
        if removed:
            logger.info(f"Purged {removed} synced records older than {retention_days} days")

    def get_sync_status(self):
        return self.synchronizer.get_sync_status()

    async def sync_now(self) -> OperationResult:
        result = await self.synchronizer.sync_now()
        if result.success:
            if result.synced_count and self.publisher is not None and self.publisher.is_connected:
                await asyncio.to_thread(
                    self.publisher.publish_status, "synced", f"Synced {result.synced_count} items"
                )
            return OperationResult.ok(result)
        code = "OFFLINE" if not self.synchronizer.is_online else "SYNC_FAILED"
        return OperationResult.fail(result.error, code, data=result)

    async def set_online(self, online: bool) -> None:
        """Forward a platform connectivity change."""
        await self.synchronizer.set_online(online)

    # ============== STATUS ==============

    def get_status(self) -> dict[str, Any]:
        capabilities = self.capability_detector.get_cached_capabilities()
        last_sync = self.synchronizer.get_last_sync_time()
        return {
            "is_initialized": self._initialized,
            "adapter": self.adapter.name,
            "transport": self.transport.name,
            "capabilities": capabilities.to_dict() if capabilities else None,
            "connected_devices_count": len(self.connector.get_connected_devices()),
            "cache_size": len(self._points),
            "monitored_sensors": self.sensors.active_sensors,
            "sync_queue_size": self.synchronizer.get_queue_size(),
            "is_online": self.synchronizer.is_online,
            "last_sync_time": last_sync.isoformat() if last_sync else None,
            "errors": list(self._errors),
        }

    def _record(self, error: PipelineError) -> None:
        self._errors.append(error.to_dict())

    def _fail(self, exc: Exception, action: str, metadata: dict | None = None) -> OperationResult:
        error = wrap_error(exc, self.component, action, metadata)
        self._record(error)
        logger.error(f"{action} failed: {error}")
        return OperationResult.fail(error.message, error.code)


def create_transport(config: dict, publisher: MQTTPublisher | None = None) -> SyncTransport:
    """Build the sync transport named by ``sync.transport``."""
    sync_config = config.get("sync", {})
    kind = sync_config.get("transport", "none")
    if kind == "http":
        endpoint = sync_config.get("endpoint")
        if not endpoint:
            raise ValueError("sync.endpoint is required for the http transport")
        return HttpSyncTransport(
            endpoint,
            api_key=sync_config.get("api_key"),
            timeout=sync_config.get("timeout_seconds", 10.0),
            ping_url=sync_config.get("ping_url"),
        )
    if kind == "mqtt":
        if publisher is None:
            raise ValueError("The mqtt transport needs the mqtt section to be enabled")
        return MqttSyncTransport(publisher)
    if kind == "none":
        return NullSyncTransport()
    raise ValueError(f"Unknown sync transport: {kind}")


def create_adapter(config: dict) -> DeviceAdapter:
    """Build the device adapter named by ``devices.adapter``."""
    device_config = config.get("devices", {})
    kind = device_config.get("adapter", "simulated")
    if kind == "simulated":
        return SimulatedAdapter()
    if kind == "ble":
        return BleakAdapter(health_devices_only=device_config.get("health_devices_only", True))
    if kind == "garmin":
        return GarminConnectAdapter(tokens_path=config.get("garmin", {}).get("tokens_path"))
    raise ValueError(f"Unknown device adapter: {kind}")


def create_integration_manager(config: dict) -> IntegrationManager:
    """Wire an IntegrationManager from the bootstrap configuration.

    Args:
        config: Merged bootstrap configuration (see ``src.main.DEFAULT_CONFIG``)

    Returns:
        Uninitialized manager
    """
    publisher = None
    mqtt_config = config.get("mqtt", {})
    if mqtt_config.get("enabled"):
        publisher = MQTTPublisher(
            host=mqtt_config.get("host", "localhost"),
            port=mqtt_config.get("port", 1883),
            username=mqtt_config.get("username"),
            password=mqtt_config.get("password"),
            base_topic=mqtt_config.get("base_topic", "health_bridge"),
        )

    sync_config = config.get("sync", {})
    sensor_config = config.get("sensors", {})
    iio_path = sensor_config.get("iio_path") or IIO_DEVICES_PATH
    store = LocalStore(config.get("storage", {}).get("database_path", "data/health_bridge.db"))
    return IntegrationManager(
        store=store,
        adapter=create_adapter(config),
        transport=create_transport(config, publisher),
        capability_detector=CapabilityDetector(
            store,
            HostProbes(garmin_tokens_path=config.get("garmin", {}).get("tokens_path"), iio_path=Path(iio_path)),
        ),
        publisher=publisher,
        sensor_reader=IioSensorReader(iio_path),
        emission_interval=config.get("devices", {}).get("emission_interval_seconds", 60.0),
        connectivity_interval=sync_config.get("connectivity_check_seconds", 30.0),
        batch_size=sync_config.get("batch_size", 50),
        max_queue_size=sync_config.get("max_queue_size", 1000),
        retry_delay=sync_config.get("retry_delay_seconds", 1.0),
        sensor_interval=sensor_config.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL),
    )
