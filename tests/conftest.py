"""Shared fixtures: a scripted in-memory transport, a memory sink and a fixed clock."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import Iterable, Optional, Union

import pytest

from vibration_sensor_receiver.codec import MeasurementRecord, encode_record
from vibration_sensor_receiver.errors import TransportDisconnected
from vibration_sensor_receiver.framing import PACKET_SIZE, SLOT_SIZE
from vibration_sensor_receiver.sink import MemorySink
from vibration_sensor_receiver.transport import (
    NotificationCallback,
    SensorProfile,
    Transport,
)

NOW = 1_700_000_100

ReadItem = Union[bytes, Exception]


def make_record(timestamp: int = 1_700_000_000, **overrides) -> MeasurementRecord:
    fields = dict(
        timestamp=timestamp,
        voltage=3.7,
        temperature=25.0,
        acceleration=(12, -34, 1000),
        frequencies=(50, 100, 150, 200),
        amplitudes=(800, 300, 120, 40),
    )
    fields.update(overrides)
    return MeasurementRecord(**fields)


def make_slot(timestamp: int = 1_700_000_000, **overrides) -> bytes:
    return encode_record(make_record(timestamp, **overrides))


def make_packet(slots: Iterable[bytes]) -> bytes:
    data = b"".join(slots)
    assert len(data) <= PACKET_SIZE
    return data + bytes(PACKET_SIZE - len(data))


def fragments(data: bytes, size: int = 20) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


TERMINAL = bytes(PACKET_SIZE)
EMPTY_SLOT = bytes(SLOT_SIZE)


class ScriptedTransport(Transport):
    """Transport whose reads come from per-characteristic scripts.

    Read scripts hold bytes or exceptions; an exhausted script yields b"".
    ``notify_on_subscribe`` payloads are delivered right after subscribe().
    """

    def __init__(
        self,
        profile: SensorProfile = SensorProfile(),
        missing: Iterable[str] = (),
    ) -> None:
        super().__init__()
        self.profile = profile
        excluded = {uuid.lower() for uuid in missing}
        self.characteristics = {
            uuid.lower()
            for uuid in (
                profile.measurement,
                profile.log_read,
                profile.set_time,
                profile.sleep_control,
            )
        } - excluded
        self.connected = True
        self.read_scripts: dict[str, deque[ReadItem]] = defaultdict(deque)
        self.write_errors: dict[str, Exception] = {}
        self.writes: list[tuple[str, bytes]] = []
        self.reads: list[str] = []
        self.callbacks: dict[str, NotificationCallback] = {}
        self.subscribed: list[str] = []
        self.unsubscribed: list[str] = []
        self.notify_on_subscribe: list[bytes] = []
        self.disconnect_after_reads: Optional[int] = None

    def script_reads(self, uuid: str, items: Iterable[ReadItem]) -> None:
        self.read_scripts[uuid.lower()].extend(items)

    @property
    def is_connected(self) -> bool:
        return self.connected

    def has_characteristic(self, uuid: str) -> bool:
        return uuid.lower() in self.characteristics

    def writes_to(self, uuid: str) -> list[bytes]:
        return [data for target, data in self.writes if target == uuid]

    def notify(self, uuid: str, data: bytes) -> None:
        self.callbacks[uuid.lower()](data)

    def disconnect(self) -> None:
        self.connected = False
        self._notify_disconnected()

    async def _read(self, uuid: str) -> bytes:
        await asyncio.sleep(0)
        self.reads.append(uuid)
        if (
            self.disconnect_after_reads is not None
            and len(self.reads) > self.disconnect_after_reads
        ):
            self.disconnect()
            raise TransportDisconnected(f"read {uuid}: link lost")
        script = self.read_scripts[uuid.lower()]
        if not script:
            return b""
        item = script.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    async def _write(self, uuid: str, data: bytes) -> None:
        await asyncio.sleep(0)
        error = self.write_errors.get(uuid.lower())
        if error is not None:
            raise error
        self.writes.append((uuid, bytes(data)))

    async def _subscribe(self, uuid: str, callback: NotificationCallback) -> None:
        self.callbacks[uuid.lower()] = callback
        self.subscribed.append(uuid)
        loop = asyncio.get_running_loop()
        for payload in self.notify_on_subscribe:
            loop.call_soon(callback, payload)

    async def _unsubscribe(self, uuid: str) -> None:
        self.callbacks.pop(uuid.lower(), None)
        self.unsubscribed.append(uuid)


@pytest.fixture
def profile() -> SensorProfile:
    return SensorProfile()


@pytest.fixture
def transport(profile) -> ScriptedTransport:
    return ScriptedTransport(profile)


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def clock():
    return lambda: NOW
