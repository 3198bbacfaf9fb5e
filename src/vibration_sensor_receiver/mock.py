"""Simulated vibration sensor for development and tests.

MockSensorTransport answers like the real device: a 4-byte timestamp echo
after the handshake write, then the stored log as 240-byte packets split into
fragments of ``fragment_size`` bytes, then an all-zero terminal packet.
Subscribing to the measurement characteristic starts a generator task that
notifies one synthetic live reading every ``notify_interval`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections import deque
from typing import Callable, Iterable, Optional

from .codec import MeasurementRecord, current_unix_time, encode_record
from .framing import HANDSHAKE_FRAME_SIZE, PACKET_SIZE, SLOTS_PER_PACKET
from .transport import SLEEP_ON, NotificationCallback, SensorProfile, Transport

logger = logging.getLogger(__name__)

LOG_INTERVAL = 60


class MockSensorTransport(Transport):
    """In-process device simulation behind the Transport interface.

    Args:
        profile: Characteristic UUIDs the simulated device exposes.
        packets: Number of stored log packets served after the handshake.
        readings_per_packet: Records per packet; the rest of the packet is
            zero padding. 0 makes the device answer with the terminal packet
            right away.
        fragment_size: Bytes returned per log read.
        notify_interval: Seconds between live notifications.
        missing: UUIDs to leave out of the simulated GATT table.
        seed: Seed for the reading generator.
        clock: Wall-clock source in epoch seconds.
    """

    def __init__(
        self,
        *,
        profile: SensorProfile = SensorProfile(),
        packets: int = 3,
        readings_per_packet: int = SLOTS_PER_PACKET,
        fragment_size: int = 20,
        notify_interval: float = 1.0,
        missing: Iterable[str] = (),
        seed: Optional[int] = None,
        clock: Callable[[], int] = current_unix_time,
    ) -> None:
        super().__init__()
        if not 0 <= readings_per_packet <= SLOTS_PER_PACKET:
            raise ValueError(
                f"readings_per_packet must be within 0..{SLOTS_PER_PACKET}"
            )
        if fragment_size <= 0 or fragment_size == HANDSHAKE_FRAME_SIZE:
            # A 4-byte fragment at a packet boundary reads as a handshake echo
            raise ValueError(
                f"fragment_size must be positive and not {HANDSHAKE_FRAME_SIZE}"
            )

        self._profile = profile
        self._packets = packets
        self._readings_per_packet = readings_per_packet
        self._fragment_size = fragment_size
        self._notify_interval = notify_interval
        self._rng = random.Random(seed)
        self._clock = clock

        excluded = {uuid.lower() for uuid in missing}
        self._characteristics = {
            uuid.lower()
            for uuid in (
                profile.measurement,
                profile.log_read,
                profile.set_time,
                profile.sleep_control,
            )
        } - excluded

        self._connected = True
        self._pending_reads: deque[bytes] = deque()
        self._notify_tasks: dict[str, asyncio.Task[None]] = {}
        self.writes: list[tuple[str, bytes]] = []
        self.device_time: Optional[int] = None
        self.sleeping = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def has_characteristic(self, uuid: str) -> bool:
        return uuid.lower() in self._characteristics

    def generate_reading(self, timestamp: int) -> MeasurementRecord:
        """Produce one plausible reading: a 50 Hz hum with harmonics."""
        rng = self._rng
        phase = timestamp % 3600 / 3600
        return MeasurementRecord(
            timestamp=timestamp,
            voltage=round(3.0 + 0.3 * rng.random(), 3),
            temperature=round(
                22.0 + 4.0 * math.sin(2 * math.pi * phase) + rng.gauss(0, 0.3), 1
            ),
            acceleration=(
                int(rng.gauss(0, 40)),
                int(rng.gauss(0, 40)),
                int(1000 + rng.gauss(0, 40)),
            ),
            frequencies=(50, 100, 150, int(200 + rng.random() * 800)),
            amplitudes=tuple(
                int(abs(rng.gauss(base, base * 0.1))) for base in (800, 300, 120, 40)
            ),
        )

    def build_packet(self, timestamps: Iterable[int]) -> bytes:
        """Encode readings for ``timestamps`` into one zero-padded packet."""
        packet = bytearray(PACKET_SIZE)
        offset = 0
        for timestamp in timestamps:
            slot = encode_record(self.generate_reading(timestamp))
            packet[offset : offset + len(slot)] = slot
            offset += len(slot)
        return bytes(packet)

    def _fragments(self, data: bytes) -> list[bytes]:
        size = self._fragment_size
        return [data[i : i + size] for i in range(0, len(data), size)]

    def _load_log(self, handshake: bytes) -> None:
        now = int.from_bytes(handshake, "big")
        self._pending_reads.clear()
        self._pending_reads.append(bytes(handshake))

        packets = self._packets if self._readings_per_packet else 0
        index = 0
        for _ in range(packets):
            timestamps = []
            for _ in range(self._readings_per_packet):
                index += 1
                timestamps.append(now - index * LOG_INTERVAL)
            self._pending_reads.extend(self._fragments(self.build_packet(timestamps)))
        self._pending_reads.extend(self._fragments(bytes(PACKET_SIZE)))
        logger.debug(
            "Mock log loaded: %d packets, %d fragments",
            packets,
            len(self._pending_reads),
        )

    async def _read(self, uuid: str) -> bytes:
        await asyncio.sleep(0)
        if uuid.lower() == self._profile.log_read.lower() and self._pending_reads:
            return self._pending_reads.popleft()
        return b""

    async def _write(self, uuid: str, data: bytes) -> None:
        await asyncio.sleep(0)
        data = bytes(data)
        self.writes.append((uuid, data))
        key = uuid.lower()
        if key == self._profile.log_read.lower() and len(data) == 4:
            self._load_log(data)
        elif key == self._profile.set_time.lower() and len(data) == 4:
            self.device_time = int.from_bytes(data, "big")
            logger.debug("Mock device clock set: %d", self.device_time)
        elif key == self._profile.sleep_control.lower():
            self.sleeping = data == SLEEP_ON
            logger.debug("Mock device sleep mode: %s", self.sleeping)

    async def _subscribe(self, uuid: str, callback: NotificationCallback) -> None:
        key = uuid.lower()
        if key != self._profile.measurement.lower() or key in self._notify_tasks:
            return
        self._notify_tasks[key] = asyncio.create_task(self._notify_loop(callback))

    async def _unsubscribe(self, uuid: str) -> None:
        task = self._notify_tasks.pop(uuid.lower(), None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _notify_loop(self, callback: NotificationCallback) -> None:
        while self._connected:
            await asyncio.sleep(self._notify_interval)
            reading = self.generate_reading(self._clock())
            callback(encode_record(reading))

    def disconnect(self) -> None:
        """Simulate link loss: stop notifying and tell the listeners."""
        if not self._connected:
            return
        self._connected = False
        for task in self._notify_tasks.values():
            task.cancel()
        self._notify_tasks.clear()
        self._notify_disconnected()

    async def close(self) -> None:
        for uuid in list(self._notify_tasks):
            await self._unsubscribe(uuid)
        self._connected = False
