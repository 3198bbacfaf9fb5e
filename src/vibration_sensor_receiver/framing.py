"""Packet reassembly and slot processing for historical log retrieval.

The device has no framing or length prefix on the log-read characteristic:
each read returns an arbitrary number of bytes. FrameReassembler accumulates
them into fixed 240-byte packets. PacketProcessor then cuts each packet into
eight 30-byte slots and turns them into records.

All per-retrieval state (buffer, dedup set, last packet) lives in a
RetrievalSession that the caller owns and discards when the retrieval ends.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from .codec import (
    RECORD_SIZE,
    MeasurementRecord,
    TimestampPolicy,
    current_unix_time,
    decode_record,
    raw_timestamp,
)
from .errors import InvalidTimestamp

logger = logging.getLogger(__name__)

SLOT_SIZE = RECORD_SIZE
SLOTS_PER_PACKET = 8
PACKET_SIZE = SLOT_SIZE * SLOTS_PER_PACKET
HANDSHAKE_FRAME_SIZE = 4
MAX_READS_PER_PACKET = 200


class FeedResult(enum.Enum):
    """Outcome of FrameReassembler.feed().

    NEED_MORE: keep reading. PACKET_READY: take_packet() will succeed.
    EXHAUSTED: the read budget is spent and no full packet is buffered.
    """

    NEED_MORE = "need_more"
    PACKET_READY = "packet_ready"
    EXHAUSTED = "exhausted"


class FrameReassembler:
    """Accumulate raw fragments into fixed-size packets.

    Every fragment counts as one read against ``max_reads``. A 4-byte fragment
    that arrives while the buffer is empty is the device echoing the handshake
    timestamp and is dropped. Bytes past the first full packet stay buffered
    for the next one.

    Example:
        reassembler = FrameReassembler()
        reassembler.feed(ack)            # NEED_MORE, ack discarded
        reassembler.feed(first_half)     # NEED_MORE
        reassembler.feed(second_half)    # PACKET_READY
        packet = reassembler.take_packet()
    """

    def __init__(
        self,
        packet_size: int = PACKET_SIZE,
        max_reads: int = MAX_READS_PER_PACKET,
    ) -> None:
        self._packet_size = packet_size
        self._max_reads = max_reads
        self._buffer = bytearray()
        self._reads = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def reads(self) -> int:
        """Reads consumed toward the current packet."""
        return self._reads

    @property
    def max_reads(self) -> int:
        return self._max_reads

    @property
    def has_packet(self) -> bool:
        return len(self._buffer) >= self._packet_size

    def feed(self, fragment: bytes) -> FeedResult:
        """Account for one read and append its bytes.

        Returns:
            PACKET_READY once at least one full packet is buffered, EXHAUSTED
            when the read budget is spent without one, NEED_MORE otherwise.
        """
        self._reads += 1

        if not self._buffer and len(fragment) == HANDSHAKE_FRAME_SIZE:
            logger.debug("Discarding handshake frame: %s", bytes(fragment).hex())
        elif fragment:
            self._buffer.extend(fragment)
            logger.debug(
                "Fragment %d: +%d bytes, %d/%d buffered",
                self._reads,
                len(fragment),
                len(self._buffer),
                self._packet_size,
            )

        if self.has_packet:
            return FeedResult.PACKET_READY
        if self._reads >= self._max_reads:
            logger.warning(
                "Read budget exhausted: %d reads, %d/%d bytes buffered",
                self._reads,
                len(self._buffer),
                self._packet_size,
            )
            return FeedResult.EXHAUSTED
        return FeedResult.NEED_MORE

    def take_packet(self) -> bytes:
        """Slice one packet off the front of the buffer and reset the budget."""
        if not self.has_packet:
            raise RuntimeError("No complete packet buffered")
        packet = bytes(self._buffer[: self._packet_size])
        del self._buffer[: self._packet_size]
        self._reads = 0
        return packet

    def reset(self) -> None:
        self._buffer.clear()
        self._reads = 0


@dataclass
class RetrievalSession:
    """State scoped to one historical retrieval.

    The dedup set only grows while the session lives; discard() drops all of
    it so that a new retrieval always starts clean.
    """

    reassembler: FrameReassembler = field(default_factory=FrameReassembler)
    seen_timestamps: set[int] = field(default_factory=set)
    last_packet: Optional[bytes] = None
    packets: int = 0
    duplicate_packets: int = 0
    duplicate_timestamps: int = 0
    empty_slots: int = 0

    def discard(self) -> None:
        self.reassembler.reset()
        self.seen_timestamps.clear()
        self.last_packet = None


class PacketKind(enum.Enum):
    TERMINAL = "terminal"
    DUPLICATE = "duplicate"
    RECORDS = "records"


@dataclass(frozen=True)
class PacketResult:
    kind: PacketKind
    records: tuple[MeasurementRecord, ...] = ()


def iter_slots(packet: bytes) -> list[bytes]:
    """Split a packet into its slots, in arrival order."""
    return [packet[i : i + SLOT_SIZE] for i in range(0, len(packet), SLOT_SIZE)]


class PacketProcessor:
    """Classify a reassembled packet and decode its slots.

    Args:
        policy: Timestamp policy handed to the record decoder.
        clock: Wall-clock source in epoch seconds; used as the substitution
            value and for the upper bound of the timestamp window.
    """

    def __init__(
        self,
        policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
        clock: Callable[[], int] = current_unix_time,
    ) -> None:
        self._policy = policy
        self._clock = clock

    def process(self, packet: bytes, session: RetrievalSession) -> PacketResult:
        if len(packet) != PACKET_SIZE:
            raise ValueError(
                f"Packet must be {PACKET_SIZE} bytes, got {len(packet)}"
            )

        if not any(packet):
            logger.info("Terminal packet received: historical log exhausted")
            return PacketResult(PacketKind.TERMINAL)

        if session.last_packet == packet:
            session.duplicate_packets += 1
            logger.info("Duplicate packet skipped")
            return PacketResult(PacketKind.DUPLICATE)

        session.last_packet = packet
        session.packets += 1
        now = self._clock()

        records: list[MeasurementRecord] = []
        for index, slot in enumerate(iter_slots(packet)):
            try:
                record = decode_record(slot, now=now, policy=self._policy)
            except InvalidTimestamp as e:
                logger.warning("Slot %d rejected: %s", index, e)
                continue

            if record is None:
                session.empty_slots += 1
                logger.debug("Slot %d empty", index)
                continue

            # Substituted records all carry the same wall-clock time, so they
            # dedup on the device value instead
            key = raw_timestamp(slot) if record.timestamp_substituted else record.timestamp
            if key in session.seen_timestamps:
                session.duplicate_timestamps += 1
                logger.debug("Slot %d duplicate timestamp %d skipped", index, key)
                continue

            session.seen_timestamps.add(key)
            records.append(record)

        logger.debug("Packet decoded: %d new records", len(records))
        return PacketResult(PacketKind.RECORDS, tuple(records))
