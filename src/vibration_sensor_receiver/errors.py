"""Exception hierarchy for the vibration sensor receiver.

Out-of-range field values (temperature, frequency, amplitude) are never
raised; they are logged by the codec and decoding proceeds with the raw value.
"""

from __future__ import annotations


class SensorProtocolError(Exception):
    """Base class for every error raised by this package."""


class CharacteristicUnavailable(SensorProtocolError):
    """A required GATT characteristic is missing at call time."""

    def __init__(self, uuid: str, role: str = "") -> None:
        self.uuid = uuid
        self.role = role
        label = f"{role} characteristic" if role else "characteristic"
        super().__init__(f"Required {label} not available: {uuid}")


class FrameTimeout(SensorProtocolError):
    """The per-packet read budget ran out before a full packet arrived."""

    def __init__(self, reads: int, buffered: int) -> None:
        self.reads = reads
        self.buffered = buffered
        super().__init__(
            f"No complete packet after {reads} reads ({buffered} bytes buffered)"
        )


class InvalidTimestamp(SensorProtocolError):
    """A record timestamp falls outside the plausible window."""

    def __init__(self, value: int, lower: int, upper: int) -> None:
        self.value = value
        self.lower = lower
        self.upper = upper
        super().__init__(f"Timestamp {value} outside [{lower}, {upper}]")


class MalformedRecord(SensorProtocolError, ValueError):
    """A record payload is too short to hold a measurement."""


class TransportError(SensorProtocolError):
    """A read, write or subscription on the transport failed."""


class TransportDisconnected(TransportError):
    """The underlying link went away."""
