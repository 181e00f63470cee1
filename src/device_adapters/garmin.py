"""Garmin Connect adapter.

Treats a Garmin Connect account as a health-app bridge: one virtual device
whose measurements are pulled from the Garmin Connect API. Only samples newer
than the previously emitted one are returned per measurement type.
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from pathlib import Path

from garminconnect import (
    Garmin,
    GarminConnectAuthenticationError,
    GarminConnectConnectionError,
    GarminConnectTooManyRequestsError,
)

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

# Default token storage path
DEFAULT_TOKENS_PATH = Path("~/.garminconnect").expanduser()

GARMIN_DEVICE_ID = "garmin_connect"

SLEEP_QUALITY = {
    "EXCELLENT": DataQuality.EXCELLENT,
    "GOOD": DataQuality.GOOD,
    "FAIR": DataQuality.FAIR,
    "POOR": DataQuality.POOR,
}

# Errors that make one metric unavailable without failing the whole pull
_METRIC_ERRORS = (
    GarminConnectConnectionError,
    GarminConnectTooManyRequestsError,
    KeyError,
    TypeError,
    ValueError,
)


def parse_garmin_timestamp(value: str, utc: bool = False) -> datetime:
    """Parse a Garmin timestamp string like ``2025-12-26T22:59:00.0``.

    Args:
        value: Timestamp string, fractional seconds optional
        utc: Value is GMT and should be converted to local time

    Returns:
        Naive local datetime
    """
    value = value.replace("Z", "")
    if "." in value:
        # Garmin sends a single fractional digit that fromisoformat rejects
        value = value.split(".")[0]
    parsed = datetime.fromisoformat(value)
    if utc:
        parsed = parsed.replace(tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
    return parsed


def _from_epoch_ms(value: int, local: bool = False) -> datetime:
    if local:
        # "Local" epoch values encode wall-clock time as if it were UTC
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    return datetime.fromtimestamp(value / 1000)


def garmin_device(tokens_path: Path) -> Device:
    """Describe the Garmin Connect account as a device."""
    return Device(
        id=GARMIN_DEVICE_ID,
        name="Garmin Connect",
        device_type=DeviceType.HEALTH_APP_BRIDGE,
        manufacturer="Garmin",
        model="Connect",
        services=["heart_rate", "steps", "sleep", "blood_oxygen", "blood_pressure", "weight"],
        address=str(tokens_path),
    )


class GarminConnectAdapter(DeviceAdapter):
    """Pull health data from Garmin Connect using stored OAuth tokens.

    Features:
    - OAuth token-based authentication (tokens valid for 1 year)
    - Support for multiple user accounts
    - Incremental pulls: each stream call returns only new samples
    """

    name = "garmin"

    def __init__(
        self,
        tokens_path: str | None = None,
        email: str | None = None,
        client_factory=Garmin,
    ):
        """Initialize Garmin Connect adapter.

        Args:
            tokens_path: Path to directory with OAuth tokens.
                        If None, uses ~/.garminconnect
            email: Optional email for multi-user support.
                   If provided, tokens are loaded from tokens_path/email/
            client_factory: Callable returning a Garmin client
        """
        base = Path(tokens_path).expanduser() if tokens_path else DEFAULT_TOKENS_PATH
        self.token_dir = base / email.replace("@", "_at_") if email else base
        self._client_factory = client_factory
        self._client: Garmin | None = None
        self._last_emitted: dict[MeasurementType, datetime] = {}

    @property
    def is_logged_in(self) -> bool:
        """Check if currently logged in."""
        return self._client is not None

    def get_device(self, device_id: str) -> Device | None:
        if device_id != GARMIN_DEVICE_ID or not self.token_dir.exists():
            return None
        return garmin_device(self.token_dir)

    async def scan(self, timeout: float, on_discovered: DiscoveryCallback) -> None:
        device = self.get_device(GARMIN_DEVICE_ID)
        if device is None:
            logger.info(f"No Garmin tokens in {self.token_dir}, nothing to discover")
            return
        on_discovered(device)

    def _login(self) -> Garmin:
        if not self.token_dir.exists():
            raise FileNotFoundError(
                f"Token directory not found: {self.token_dir}\n"
                f"Log in once with garminconnect to generate tokens."
            )
        client = self._client_factory()
        client.login(tokenstore=str(self.token_dir))
        display_name = getattr(client, "display_name", None) or "Unknown"
        logger.info(f"Logged in to Garmin Connect as {display_name}")
        return client

    async def connect(self, device_id: str) -> Device:
        if device_id != GARMIN_DEVICE_ID:
            raise DeviceNotFoundError(
                f"Unknown device: {device_id}",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id},
            )

        try:
            self._client = await asyncio.to_thread(self._login)
        except (
            GarminConnectAuthenticationError,
            GarminConnectConnectionError,
            GarminConnectTooManyRequestsError,
            FileNotFoundError,
            OSError,
        ) as e:
            logger.error(f"Garmin login failed: {e}")
            self._client = None
            raise DeviceConnectionError(
                f"Garmin login failed: {e}",
                component=self.name,
                action="connect",
                metadata={"device_id": device_id, "token_dir": str(self.token_dir)},
                cause=e,
            ) from e

        self._last_emitted.clear()
        return garmin_device(self.token_dir)

    async def disconnect(self, device_id: str) -> None:
        if device_id == GARMIN_DEVICE_ID and self._client is not None:
            self._client = None
            logger.info("Logged out from Garmin Connect")

    async def stream_data(self, device: Device) -> list[HealthDataPoint]:
        client = self._client
        if client is None:
            raise DeviceConnectionError(
                "Not logged in to Garmin Connect",
                component=self.name,
                action="stream_data",
                metadata={"device_id": device.id},
            )

        today = date.today().isoformat()
        fetchers = [
            (MeasurementType.HEART_RATE, self._fetch_heart_rate),
            (MeasurementType.STEPS, self._fetch_steps),
            (MeasurementType.SLEEP, self._fetch_sleep),
            (MeasurementType.BLOOD_OXYGEN, self._fetch_spo2),
            (MeasurementType.BLOOD_PRESSURE, self._fetch_blood_pressure),
            (MeasurementType.WEIGHT, self._fetch_weight),
        ]

        points: list[HealthDataPoint] = []
        for measurement_type, fetch in fetchers:
            try:
                samples = await asyncio.to_thread(fetch, client, today)
            except _METRIC_ERRORS as e:
                logger.warning(f"Failed to fetch Garmin {measurement_type.value}: {e}")
                continue
            points.extend(self._new_points(measurement_type, samples, device.id))

        logger.debug(f"Garmin pull returned {len(points)} new points")
        return points

    def _new_points(
        self,
        measurement_type: MeasurementType,
        samples: list[tuple[datetime, object, DataQuality]],
        device_id: str,
    ) -> list[HealthDataPoint]:
        last = self._last_emitted.get(measurement_type)
        fresh = sorted(
            (s for s in samples if last is None or s[0] > last),
            key=lambda s: s[0],
        )
        if fresh:
            self._last_emitted[measurement_type] = fresh[-1][0]
        return [
            HealthDataPoint(
                type=measurement_type,
                value=value,
                timestamp=timestamp,
                device_id=device_id,
                quality=quality,
                metadata={"source": "garmin_connect"},
            )
            for timestamp, value, quality in fresh
        ]

    # ============== METRIC FETCHERS (run in worker thread) ==============

    @staticmethod
    def _fetch_heart_rate(client: Garmin, cdate: str) -> list:
        # {"heartRateValues": [[1735250400000, 62], [1735250520000, null], ...]}
        response = client.get_heart_rates(cdate) or {}
        return [
            (_from_epoch_ms(ts), float(bpm), DataQuality.GOOD)
            for ts, bpm in response.get("heartRateValues") or []
            if bpm is not None
        ]

    @staticmethod
    def _fetch_steps(client: Garmin, cdate: str) -> list:
        # [{"startGMT": "...", "endGMT": "2025-12-26T08:15:00.0", "steps": 120}, ...]
        return [
            (parse_garmin_timestamp(interval["endGMT"], utc=True), interval["steps"], DataQuality.GOOD)
            for interval in client.get_steps_data(cdate) or []
            if interval.get("steps")
        ]

    @staticmethod
    def _fetch_sleep(client: Garmin, cdate: str) -> list:
        summary = (client.get_sleep_data(cdate) or {}).get("dailySleepDTO") or {}
        seconds = summary.get("sleepTimeSeconds")
        end = summary.get("sleepEndTimestampLocal")
        if not seconds or not end:
            return []
        qualifier = ((summary.get("sleepScores") or {}).get("overall") or {}).get("qualifierKey")
        quality = SLEEP_QUALITY.get(qualifier or "", DataQuality.FAIR)
        return [(_from_epoch_ms(end, local=True), round(seconds / 3600, 2), quality)]

    @staticmethod
    def _fetch_spo2(client: Garmin, cdate: str) -> list:
        # {"spO2HourlyAverages": [[1735250400000, 96], ...]}
        response = client.get_spo2_data(cdate) or {}
        return [
            (_from_epoch_ms(ts), float(value), DataQuality.GOOD)
            for ts, value in response.get("spO2HourlyAverages") or []
            if value is not None
        ]

    @staticmethod
    def _fetch_blood_pressure(client: Garmin, cdate: str) -> list:
        # Response structure:
        # {"measurementSummaries": [
        #     {"startDate": "...", "measurements": [
        #         {"systolic": 120, "diastolic": 80, "pulse": 70,
        #          "measurementTimestampLocal": "2025-12-26T23:00:00.0", ...},
        #         ...
        #     ]},
        #     ...
        # ]}
        response = client.get_blood_pressure(cdate, cdate) or {}
        samples = []
        for summary in response.get("measurementSummaries", []):
            for m in summary.get("measurements", []):
                ts = m.get("measurementTimestampLocal")
                if not ts:
                    continue
                value = BloodPressureValue(m["systolic"], m["diastolic"], m.get("pulse"))
                samples.append((parse_garmin_timestamp(ts), value, DataQuality.GOOD))
        return samples

    @staticmethod
    def _fetch_weight(client: Garmin, cdate: str) -> list:
        # {"dateWeightList": [{"date": 1735250400000, "weight": 81250.0}, ...]} weight in grams
        response = client.get_body_composition(cdate) or {}
        return [
            (_from_epoch_ms(entry["date"], local=True), round(entry["weight"] / 1000, 2), DataQuality.EXCELLENT)
            for entry in response.get("dateWeightList") or []
            if entry.get("weight")
        ]
