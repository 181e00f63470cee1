"""Decoders for standard Bluetooth SIG health characteristics.

Covers the measurement characteristics of the Heart Rate, Blood Pressure,
Health Thermometer, Weight Scale and Pulse Oximeter services, plus the
IEEE-11073 16-bit SFLOAT and 32-bit FLOAT number formats they use.
All multi-byte fields are little-endian.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime

BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

KPA_TO_MMHG = 7.50062
LB_TO_KG = 0.45359237


def uuid16(short: int) -> str:
    """Expand a 16-bit SIG identifier to a full 128-bit UUID string."""
    return f"0000{short:04x}{BASE_UUID_SUFFIX}"


# Services
HEART_RATE_SERVICE = uuid16(0x180D)
BLOOD_PRESSURE_SERVICE = uuid16(0x1810)
HEALTH_THERMOMETER_SERVICE = uuid16(0x1809)
WEIGHT_SCALE_SERVICE = uuid16(0x181D)
PULSE_OXIMETER_SERVICE = uuid16(0x1822)
BATTERY_SERVICE = uuid16(0x180F)

# Characteristics
HEART_RATE_MEASUREMENT = uuid16(0x2A37)
BLOOD_PRESSURE_MEASUREMENT = uuid16(0x2A35)
TEMPERATURE_MEASUREMENT = uuid16(0x2A1C)
WEIGHT_MEASUREMENT = uuid16(0x2A9D)
PLX_CONTINUOUS_MEASUREMENT = uuid16(0x2A5F)
BATTERY_LEVEL = uuid16(0x2A19)

# GATT service UUID -> pipeline service names
SERVICE_NAMES: dict[str, list[str]] = {
    HEART_RATE_SERVICE: ["heart_rate"],
    BLOOD_PRESSURE_SERVICE: ["blood_pressure"],
    HEALTH_THERMOMETER_SERVICE: ["temperature"],
    WEIGHT_SCALE_SERVICE: ["weight"],
    PULSE_OXIMETER_SERVICE: ["blood_oxygen", "heart_rate"],
    BATTERY_SERVICE: ["battery"],
}

# Pipeline service name -> characteristic carrying its measurement
SERVICE_CHARACTERISTICS: dict[str, str] = {
    "heart_rate": HEART_RATE_MEASUREMENT,
    "blood_pressure": BLOOD_PRESSURE_MEASUREMENT,
    "temperature": TEMPERATURE_MEASUREMENT,
    "weight": WEIGHT_MEASUREMENT,
    "blood_oxygen": PLX_CONTINUOUS_MEASUREMENT,
}


def services_from_uuids(uuids: list[str]) -> list[str]:
    """Map advertised GATT service UUIDs to pipeline service names."""
    services: list[str] = []
    for uuid in uuids:
        for name in SERVICE_NAMES.get(uuid.lower(), []):
            if name not in services:
                services.append(name)
    return services


# ============== NUMBER FORMATS ==============

_SFLOAT_SPECIAL = {0x07FF, 0x0800, 0x07FE, 0x0802, 0x0801}
_FLOAT_SPECIAL = {0x007FFFFF, 0x00800000, 0x007FFFFE, 0x00800002, 0x00800001}


def _signed(value: int, bits: int) -> int:
    if value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def decode_sfloat(data: bytes, offset: int = 0) -> float:
    """Decode an IEEE-11073 16-bit SFLOAT.

    Layout: 4-bit signed exponent (high nibble) and 12-bit signed mantissa.
    Reserved values (NaN, NRes, +/-INF) decode to ``math.nan``.
    """
    if len(data) < offset + 2:
        raise ValueError("SFLOAT needs 2 bytes")
    raw = int.from_bytes(data[offset : offset + 2], "little")
    mantissa = raw & 0x0FFF
    if mantissa in _SFLOAT_SPECIAL:
        return math.nan
    exponent = _signed(raw >> 12, 4)
    return _signed(mantissa, 12) * (10.0**exponent)


def decode_float(data: bytes, offset: int = 0) -> float:
    """Decode an IEEE-11073 32-bit FLOAT (8-bit exponent, 24-bit mantissa)."""
    if len(data) < offset + 4:
        raise ValueError("FLOAT needs 4 bytes")
    raw = int.from_bytes(data[offset : offset + 4], "little")
    mantissa = raw & 0x00FFFFFF
    if mantissa in _FLOAT_SPECIAL:
        return math.nan
    exponent = _signed(raw >> 24, 8)
    return _signed(mantissa, 24) * (10.0**exponent)


def decode_datetime(data: bytes, offset: int = 0) -> datetime | None:
    """Decode a 7-byte Date Time field. Returns None for unset dates."""
    if len(data) < offset + 7:
        raise ValueError("Date Time needs 7 bytes")
    year = int.from_bytes(data[offset : offset + 2], "little")
    month, day, hour, minute, second = data[offset + 2 : offset + 7]
    if year == 0 or month == 0 or day == 0:
        return None
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


# ============== MEASUREMENTS ==============


@dataclass
class HeartRateMeasurement:
    bpm: int
    sensor_contact: bool | None = None  # None when contact detection unsupported
    energy_expended: int | None = None  # kJ
    rr_intervals: list[float] = field(default_factory=list)  # seconds


@dataclass
class BloodPressureMeasurement:
    systolic: float  # mmHg
    diastolic: float  # mmHg
    mean_arterial: float  # mmHg
    pulse: float | None = None
    timestamp: datetime | None = None
    user_id: int | None = None
    body_movement: bool = False
    irregular_pulse: bool = False


@dataclass
class TemperatureMeasurement:
    celsius: float
    timestamp: datetime | None = None


@dataclass
class WeightMeasurement:
    kilograms: float
    timestamp: datetime | None = None


@dataclass
class OximetryMeasurement:
    spo2: float  # percent
    pulse: float


def parse_heart_rate(data: bytes) -> HeartRateMeasurement:
    """Parse Heart Rate Measurement (0x2A37).

    Flags:
    - Bit 0: value format (0 = uint8, 1 = uint16)
    - Bits 1-2: sensor contact status
    - Bit 3: energy expended present
    - Bit 4: RR intervals present
    """
    if len(data) < 2:
        raise ValueError(f"Heart rate measurement too short: {len(data)} bytes")
    flags = data[0]
    offset = 1

    if flags & 0x01:
        bpm = int.from_bytes(data[offset : offset + 2], "little")
        offset += 2
    else:
        bpm = data[offset]
        offset += 1

    sensor_contact = bool(flags & 0x02) if flags & 0x04 else None

    energy = None
    if flags & 0x08:
        energy = int.from_bytes(data[offset : offset + 2], "little")
        offset += 2

    rr_intervals: list[float] = []
    if flags & 0x10:
        while offset + 2 <= len(data):
            rr_intervals.append(int.from_bytes(data[offset : offset + 2], "little") / 1024)
            offset += 2

    return HeartRateMeasurement(bpm, sensor_contact, energy, rr_intervals)


def parse_blood_pressure(data: bytes) -> BloodPressureMeasurement:
    """Parse Blood Pressure Measurement (0x2A35).

    Flags:
    - Bit 0: units (0 = mmHg, 1 = kPa)
    - Bit 1: timestamp present
    - Bit 2: pulse rate present
    - Bit 3: user id present
    - Bit 4: measurement status present
    """
    if len(data) < 7:
        raise ValueError(f"Blood pressure measurement too short: {len(data)} bytes")
    flags = data[0]
    scale = KPA_TO_MMHG if flags & 0x01 else 1.0

    systolic = decode_sfloat(data, 1) * scale
    diastolic = decode_sfloat(data, 3) * scale
    mean_arterial = decode_sfloat(data, 5) * scale
    offset = 7

    timestamp = None
    if flags & 0x02:
        timestamp = decode_datetime(data, offset)
        offset += 7

    pulse = None
    if flags & 0x04:
        pulse = decode_sfloat(data, offset)
        offset += 2

    user_id = None
    if flags & 0x08:
        user_id = data[offset]
        offset += 1

    body_movement = irregular_pulse = False
    if flags & 0x10 and offset + 2 <= len(data):
        status = int.from_bytes(data[offset : offset + 2], "little")
        body_movement = bool(status & 0x0001)
        irregular_pulse = bool(status & 0x0004)

    return BloodPressureMeasurement(
        systolic=round(systolic, 1),
        diastolic=round(diastolic, 1),
        mean_arterial=round(mean_arterial, 1),
        pulse=pulse,
        timestamp=timestamp,
        user_id=user_id,
        body_movement=body_movement,
        irregular_pulse=irregular_pulse,
    )


def parse_temperature(data: bytes) -> TemperatureMeasurement:
    """Parse Temperature Measurement (0x2A1C). Bit 0 of flags selects Fahrenheit."""
    if len(data) < 5:
        raise ValueError(f"Temperature measurement too short: {len(data)} bytes")
    flags = data[0]
    value = decode_float(data, 1)
    if flags & 0x01:
        value = (value - 32) * 5 / 9
    timestamp = decode_datetime(data, 5) if flags & 0x02 and len(data) >= 12 else None
    return TemperatureMeasurement(round(value, 2), timestamp)


def parse_weight(data: bytes) -> WeightMeasurement:
    """Parse Weight Measurement (0x2A9D).

    SI resolution is 0.005 kg, imperial resolution is 0.01 lb.
    """
    if len(data) < 3:
        raise ValueError(f"Weight measurement too short: {len(data)} bytes")
    flags = data[0]
    raw = int.from_bytes(data[1:3], "little")
    kilograms = raw * 0.01 * LB_TO_KG if flags & 0x01 else raw * 0.005
    timestamp = decode_datetime(data, 3) if flags & 0x02 and len(data) >= 10 else None
    return WeightMeasurement(round(kilograms, 2), timestamp)


def parse_plx_continuous(data: bytes) -> OximetryMeasurement:
    """Parse PLX Continuous Measurement (0x2A5F), normal SpO2/PR fields only."""
    if len(data) < 5:
        raise ValueError(f"PLX measurement too short: {len(data)} bytes")
    return OximetryMeasurement(spo2=decode_sfloat(data, 1), pulse=decode_sfloat(data, 3))
