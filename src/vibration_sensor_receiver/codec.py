"""Binary codec for vibration sensor measurement records.

Every measurement travels as a fixed 30-byte record, either as one slot of a
240-byte historical log packet or as a single live notification. All fields are
big-endian:

    [0, 4)    timestamp      uint32, seconds since epoch
    [4, 6)    temperature    int16, tenths of a degree Celsius
    [6, 12)   acceleration   3 x int16, raw units (x, y, z)
    [12, 20)  frequencies    4 x uint16, Hz
    [20, 28)  amplitudes     4 x uint16, raw units
    [28, 30)  voltage        uint16, millivolts

The field functions are pure: they take one record and return one value. They
log values that look implausible but never reject them. Only the timestamp has
a validity window, and what happens outside it depends on TimestampPolicy.
"""

from __future__ import annotations

import enum
import logging
import struct
import time
from dataclasses import asdict, dataclass
from typing import Optional

from .errors import InvalidTimestamp, MalformedRecord

logger = logging.getLogger(__name__)

RECORD_SIZE = 30

# Plausible timestamp window: not before Sept 2020, not more than a year ahead
MIN_VALID_TIMESTAMP = 1_600_000_000
MAX_FUTURE_SKEW = 365 * 24 * 3600

TEMPERATURE_RANGE = (-40.0, 125.0)
MAX_PLAUSIBLE_FREQUENCY = 20000
MAX_PLAUSIBLE_AMPLITUDE = 5000

_TIMESTAMP = struct.Struct(">I")
_TEMPERATURE = struct.Struct(">h")
_ACCELEROMETER = struct.Struct(">hhh")
_QUAD_U16 = struct.Struct(">HHHH")
_VOLTAGE = struct.Struct(">H")

_TEMPERATURE_OFFSET = 4
_ACCELEROMETER_OFFSET = 6
_FREQUENCY_OFFSET = 12
_AMPLITUDE_OFFSET = 20
_VOLTAGE_OFFSET = RECORD_SIZE - _VOLTAGE.size


class TimestampPolicy(enum.Enum):
    """What to do with a timestamp outside the plausible window.

    SUBSTITUTE keeps the device's historical behaviour: the value is replaced
    by the current wall-clock time and the record is flagged. REJECT raises
    InvalidTimestamp so that a skewed device clock surfaces as an error.
    """

    SUBSTITUTE = "substitute"
    REJECT = "reject"


def current_unix_time() -> int:
    """Return the wall-clock time in whole seconds since the epoch."""
    return int(time.time())


@dataclass(frozen=True)
class MeasurementRecord:
    """One decoded sensor reading.

    Attributes:
        timestamp: Seconds since epoch. Device time unless
            timestamp_substituted is set, in which case it is the receiver's
            wall-clock time at decode.
        voltage: Battery voltage in volts.
        temperature: Temperature in degrees Celsius.
        acceleration: Raw accelerometer counts (x, y, z).
        frequencies: Dominant vibration frequencies in Hz (freq1..freq4).
        amplitudes: Raw amplitudes matching the frequencies (ampl1..ampl4).
        timestamp_substituted: True when the device timestamp was out of range
            and replaced.
    """

    timestamp: int
    voltage: float
    temperature: float
    acceleration: tuple[int, int, int]
    frequencies: tuple[int, int, int, int]
    amplitudes: tuple[int, int, int, int]
    timestamp_substituted: bool = False

    @staticmethod
    def csv_header() -> str:
        return (
            "timestamp,voltage,temperature,accel_x,accel_y,accel_z,"
            "freq1,freq2,freq3,freq4,ampl1,ampl2,ampl3,ampl4"
        )

    def to_csv(self) -> str:
        ax, ay, az = self.acceleration
        f1, f2, f3, f4 = self.frequencies
        a1, a2, a3, a4 = self.amplitudes
        return (
            f"{self.timestamp},{self.voltage:.3f},{self.temperature:.1f},"
            f"{ax},{ay},{az},{f1},{f2},{f3},{f4},{a1},{a2},{a3},{a4}"
        )

    def as_dict(self) -> dict[str, object]:
        """Flatten the record into the field names used by the metrics API."""
        data = asdict(self)
        ax, ay, az = self.acceleration
        data.pop("acceleration")
        data.update(accel_x=ax, accel_y=ay, accel_z=az)
        for prefix, values in (
            ("freq", data.pop("frequencies")),
            ("ampl", data.pop("amplitudes")),
        ):
            for index, value in enumerate(values, start=1):
                data[f"{prefix}{index}"] = value
        return data


def _require_record(record: bytes) -> None:
    if len(record) < RECORD_SIZE:
        raise MalformedRecord(
            f"Record too short: {len(record)} bytes (need {RECORD_SIZE})"
        )


def _check_timestamp(
    raw: int, now: Optional[int], policy: TimestampPolicy
) -> tuple[int, bool]:
    if now is None:
        now = current_unix_time()
    upper = now + MAX_FUTURE_SKEW
    if MIN_VALID_TIMESTAMP <= raw <= upper:
        return raw, False
    if policy is TimestampPolicy.REJECT:
        raise InvalidTimestamp(raw, MIN_VALID_TIMESTAMP, upper)
    logger.warning(
        "Timestamp %d outside [%d, %d], substituting current time %d",
        raw,
        MIN_VALID_TIMESTAMP,
        upper,
        now,
    )
    return now, True


def decode_timestamp(
    record: bytes,
    *,
    now: Optional[int] = None,
    policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
) -> int:
    """Decode the record timestamp (bytes [0, 4), uint32 BE).

    Args:
        record: A 30-byte record.
        now: Reference wall-clock time; defaults to the current time.
        policy: Handling of values outside
            [MIN_VALID_TIMESTAMP, now + MAX_FUTURE_SKEW].

    Returns:
        The device timestamp, or ``now`` when it was substituted.

    Raises:
        InvalidTimestamp: Out-of-window value under TimestampPolicy.REJECT.
    """
    _require_record(record)
    (raw,) = _TIMESTAMP.unpack_from(record, 0)
    value, _ = _check_timestamp(raw, now, policy)
    return value


def decode_voltage(record: bytes) -> float:
    """Decode battery voltage from the last two bytes of the record."""
    _require_record(record)
    (raw,) = _VOLTAGE.unpack_from(record, _VOLTAGE_OFFSET)
    return raw / 1000


def decode_temperature(record: bytes) -> float:
    """Decode temperature (bytes [4, 6), int16 BE, tenths of a degree)."""
    _require_record(record)
    (raw,) = _TEMPERATURE.unpack_from(record, _TEMPERATURE_OFFSET)
    temperature = raw / 10
    low, high = TEMPERATURE_RANGE
    if temperature < low or temperature > high:
        logger.warning(
            "Temperature out of range (%.1f C) from raw 0x%04X",
            temperature,
            raw & 0xFFFF,
        )
    else:
        logger.debug("Temperature raw=0x%04X -> %.1f C", raw & 0xFFFF, temperature)
    return temperature


def decode_accelerometer(record: bytes) -> tuple[int, int, int]:
    """Decode the accelerometer axes (bytes [6, 12), 3 x int16 BE).

    Args:
        record: A 30-byte record.

    Returns:
        Raw signed counts as (x, y, z). No scaling is applied; the unit
        depends on the sensor range configured in firmware.
    """
    _require_record(record)
    x, y, z = _ACCELEROMETER.unpack_from(record, _ACCELEROMETER_OFFSET)
    logger.debug("Accelerometer x=%d y=%d z=%d", x, y, z)
    return x, y, z


def decode_frequencies(record: bytes) -> tuple[int, int, int, int]:
    """Decode the four dominant frequencies (bytes [12, 20), 4 x uint16 BE).

    Args:
        record: A 30-byte record.

    Returns:
        (freq1, freq2, freq3, freq4) in Hz.

    Note:
        Values above MAX_PLAUSIBLE_FREQUENCY are logged as suspicious and
        returned unchanged.
    """
    _require_record(record)
    values = _QUAD_U16.unpack_from(record, _FREQUENCY_OFFSET)
    for index, value in enumerate(values, start=1):
        if value > MAX_PLAUSIBLE_FREQUENCY:
            logger.warning("Suspicious frequency freq%d=%d Hz", index, value)
    return values


def decode_amplitudes(record: bytes) -> tuple[int, int, int, int]:
    """Decode the amplitudes matching each frequency (bytes [20, 28)).

    Args:
        record: A 30-byte record.

    Returns:
        (ampl1, ampl2, ampl3, ampl4) in raw units. Values above
        MAX_PLAUSIBLE_AMPLITUDE are logged and returned unchanged.
    """
    _require_record(record)
    values = _QUAD_U16.unpack_from(record, _AMPLITUDE_OFFSET)
    for index, value in enumerate(values, start=1):
        if value > MAX_PLAUSIBLE_AMPLITUDE:
            logger.warning("Suspicious amplitude ampl%d=%d", index, value)
    return values


def raw_timestamp(record: bytes) -> int:
    """Return the device timestamp as sent, without window checks."""
    _require_record(record)
    (raw,) = _TIMESTAMP.unpack_from(record, 0)
    return raw


def is_empty_slot(slot: bytes) -> bool:
    """True for padding: an all-zero slot or one whose timestamp field is zero."""
    return not any(slot) or not any(slot[: _TIMESTAMP.size])


def decode_record(
    slot: bytes,
    *,
    now: Optional[int] = None,
    policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
) -> Optional[MeasurementRecord]:
    """Decode one 30-byte slot into a MeasurementRecord.

    The same decoder serves packet slots and live notifications. A payload
    longer than RECORD_SIZE is cut to its first RECORD_SIZE bytes.

    Returns:
        The decoded record, or None when the slot is padding (all zero, or a
        zero timestamp field regardless of the other bytes).

    Raises:
        MalformedRecord: The payload is shorter than RECORD_SIZE.
        InvalidTimestamp: Out-of-window timestamp under TimestampPolicy.REJECT.
    """
    _require_record(slot)
    if len(slot) > RECORD_SIZE:
        logger.debug(
            "Payload of %d bytes truncated to %d", len(slot), RECORD_SIZE
        )
        slot = slot[:RECORD_SIZE]
    slot = bytes(slot)

    if is_empty_slot(slot):
        return None

    (raw_timestamp,) = _TIMESTAMP.unpack_from(slot, 0)
    timestamp, substituted = _check_timestamp(raw_timestamp, now, policy)

    return MeasurementRecord(
        timestamp=timestamp,
        voltage=decode_voltage(slot),
        temperature=decode_temperature(slot),
        acceleration=decode_accelerometer(slot),
        frequencies=decode_frequencies(slot),
        amplitudes=decode_amplitudes(slot),
        timestamp_substituted=substituted,
    )


def encode_timestamp(timestamp: int) -> bytes:
    """Encode a timestamp as the 4-byte big-endian frame the device expects."""
    return _TIMESTAMP.pack(timestamp & 0xFFFFFFFF)


def encode_record(record: MeasurementRecord) -> bytes:
    """Encode a record into its 30-byte wire form (inverse of decode_record)."""
    buf = bytearray(RECORD_SIZE)
    _TIMESTAMP.pack_into(buf, 0, record.timestamp)
    _TEMPERATURE.pack_into(
        buf, _TEMPERATURE_OFFSET, int(round(record.temperature * 10))
    )
    _ACCELEROMETER.pack_into(buf, _ACCELEROMETER_OFFSET, *record.acceleration)
    _QUAD_U16.pack_into(buf, _FREQUENCY_OFFSET, *record.frequencies)
    _QUAD_U16.pack_into(buf, _AMPLITUDE_OFFSET, *record.amplitudes)
    _VOLTAGE.pack_into(buf, _VOLTAGE_OFFSET, int(round(record.voltage * 1000)))
    return bytes(buf)
