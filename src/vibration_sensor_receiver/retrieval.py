"""Historical log retrieval state machine.

    IDLE -> HANDSHAKE -> READ_LOOP -> STREAMING_HANDOFF -> DONE
    READ_LOOP -> DONE       packet budget reached without a terminal packet
    READ_LOOP -> ABORTED    frame timeout, link loss or cancellation

The receiver announces itself by writing the current time to the log-read
characteristic. The device echoes it (4 bytes) and then serves its log as a
sequence of 240-byte packets, ending with an all-zero packet. After that the
receiver takes one live measurement and writes its timestamp back to the
set-time characteristic so the device clock is resynchronized.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .codec import (
    MeasurementRecord,
    TimestampPolicy,
    current_unix_time,
    encode_timestamp,
)
from .errors import (
    CharacteristicUnavailable,
    FrameTimeout,
    TransportDisconnected,
    TransportError,
)
from .framing import (
    HANDSHAKE_FRAME_SIZE,
    MAX_READS_PER_PACKET,
    FeedResult,
    FrameReassembler,
    PacketKind,
    PacketProcessor,
    RetrievalSession,
)
from .sink import RecordSink, emit_safely
from .streaming import decode_notification, write_time
from .transport import SensorProfile, Transport

logger = logging.getLogger(__name__)

MAX_PACKETS = 8
HANDOFF_TIMEOUT = 10.0
HANDSHAKE_ACK_DELAY = 1.0


class RetrievalState(enum.Enum):
    IDLE = "idle"
    HANDSHAKE = "handshake"
    READ_LOOP = "read_loop"
    STREAMING_HANDOFF = "streaming_handoff"
    ABORTED = "aborted"
    DONE = "done"


@dataclass
class RetrievalResult:
    """Outcome of one LogRetriever.run() call."""

    state: RetrievalState = RetrievalState.IDLE
    records_emitted: int = 0
    packets_processed: int = 0
    duplicate_packets: int = 0
    terminal_seen: bool = False
    handoff_record: Optional[MeasurementRecord] = None
    error: Optional[Exception] = None


class LogRetriever:
    """Drive one historical log retrieval against a connected transport.

    Args:
        transport: Connected transport.
        sink: Receives every new record, in arrival order.
        device_id: Identifier handed to the sink with each record.
        profile: Characteristic UUIDs.
        max_packets: Packet budget for the read loop. Duplicate packets count.
        max_reads_per_packet: Read budget per packet before giving up.
        handoff_timeout: Seconds to wait for the live measurement after the
            terminal packet.
        ack_delay: Seconds between the handshake write and the ack read.
        policy: Timestamp policy for the record decoder.
        clock: Wall-clock source in epoch seconds.

    Each run() starts from IDLE with a fresh session; the dedup set and the
    reassembly buffer never outlive the call.
    """

    def __init__(
        self,
        transport: Transport,
        sink: RecordSink,
        device_id: int,
        *,
        profile: SensorProfile = SensorProfile(),
        max_packets: int = MAX_PACKETS,
        max_reads_per_packet: int = MAX_READS_PER_PACKET,
        handoff_timeout: float = HANDOFF_TIMEOUT,
        ack_delay: float = HANDSHAKE_ACK_DELAY,
        policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
        clock: Callable[[], int] = current_unix_time,
    ) -> None:
        self._transport = transport
        self._sink = sink
        self._device_id = device_id
        self._profile = profile
        self._max_packets = max_packets
        self._max_reads_per_packet = max_reads_per_packet
        self._handoff_timeout = handoff_timeout
        self._ack_delay = ack_delay
        self._policy = policy
        self._clock = clock
        self._processor = PacketProcessor(policy=policy, clock=clock)
        self._state = RetrievalState.IDLE
        self._running = False

    @property
    def state(self) -> RetrievalState:
        return self._state

    def _transition(self, state: RetrievalState) -> None:
        logger.info("Retrieval state: %s -> %s", self._state.name, state.name)
        self._state = state

    async def run(self) -> RetrievalResult:
        """Run the retrieval to DONE or ABORTED.

        Frame timeouts and link loss end the run in ABORTED with the error on
        the result. Records emitted before that stay emitted.

        Raises:
            CharacteristicUnavailable: A characteristic needed by the current
                phase is missing (the run ends in ABORTED).
            TransportDisconnected: The link is already down when run() starts
                (the run ends in ABORTED).
            RuntimeError: run() is already in progress on this instance.
        """
        if self._running:
            raise RuntimeError("Retrieval already in progress")
        self._state = RetrievalState.IDLE
        try:
            self._transport.require(self._profile.log_read, "log-read")
            if not self._transport.is_connected:
                raise TransportDisconnected("Cannot start retrieval: not connected")
        except (CharacteristicUnavailable, TransportDisconnected) as e:
            logger.error("Retrieval cannot start: %s", e)
            self._transition(RetrievalState.ABORTED)
            raise

        self._running = True
        session = RetrievalSession(
            reassembler=FrameReassembler(max_reads=self._max_reads_per_packet)
        )
        result = RetrievalResult()
        try:
            await self._handshake(session)
            next_state = await self._read_loop(session, result)
            if next_state is RetrievalState.STREAMING_HANDOFF:
                self._transition(RetrievalState.STREAMING_HANDOFF)
                result.handoff_record = await self._streaming_handoff(result)
                next_state = RetrievalState.DONE
            self._transition(next_state)
        except (FrameTimeout, TransportDisconnected) as e:
            logger.error("Retrieval aborted in %s: %s", self._state.name, e)
            result.error = e
            self._transition(RetrievalState.ABORTED)
        except asyncio.CancelledError:
            logger.warning("Retrieval cancelled in %s", self._state.name)
            self._transition(RetrievalState.ABORTED)
            raise
        except Exception:
            self._transition(RetrievalState.ABORTED)
            raise
        finally:
            result.duplicate_packets = session.duplicate_packets
            session.discard()
            self._running = False

        result.state = self._state
        logger.info(
            "Retrieval finished: state=%s records=%d packets=%d duplicates=%d",
            result.state.name,
            result.records_emitted,
            result.packets_processed,
            result.duplicate_packets,
        )
        return result

    async def _handshake(self, session: RetrievalSession) -> None:
        self._transition(RetrievalState.HANDSHAKE)
        uuid = self._profile.log_read
        now = self._clock()

        try:
            await self._transport.write(uuid, encode_timestamp(now))
            logger.info("Handshake timestamp sent: %d", now)
        except TransportDisconnected:
            raise
        except TransportError as e:
            logger.warning("Handshake write failed (continuing): %s", e)

        if self._ack_delay > 0:
            await asyncio.sleep(self._ack_delay)

        try:
            ack = await self._transport.read(uuid)
        except TransportDisconnected:
            raise
        except TransportError as e:
            logger.warning("Handshake acknowledgment read failed (continuing): %s", e)
            return

        if len(ack) == HANDSHAKE_FRAME_SIZE:
            logger.info("Handshake acknowledged: %s", ack.hex())
        elif ack:
            logger.info("Handshake read returned %d data bytes; buffering", len(ack))
            session.reassembler.feed(ack)
        else:
            logger.info("Handshake read returned no data")

    async def _read_loop(
        self, session: RetrievalSession, result: RetrievalResult
    ) -> RetrievalState:
        self._transition(RetrievalState.READ_LOOP)

        while result.packets_processed < self._max_packets:
            packet = await self._read_packet(session)
            outcome = self._processor.process(packet, session)

            if outcome.kind is PacketKind.TERMINAL:
                result.terminal_seen = True
                return RetrievalState.STREAMING_HANDOFF

            result.packets_processed += 1
            if outcome.kind is PacketKind.DUPLICATE:
                continue

            for record in outcome.records:
                if emit_safely(self._sink, self._device_id, record):
                    result.records_emitted += 1
            logger.info(
                "Packet %d/%d: %d new records",
                result.packets_processed,
                self._max_packets,
                len(outcome.records),
            )

        logger.info(
            "Packet budget of %d reached without terminal packet", self._max_packets
        )
        return RetrievalState.DONE

    async def _read_packet(self, session: RetrievalSession) -> bytes:
        reassembler = session.reassembler
        uuid = self._profile.log_read

        while not reassembler.has_packet:
            if not self._transport.is_connected:
                raise TransportDisconnected("Link lost during log read")
            try:
                fragment = await self._transport.read(uuid)
            except TransportDisconnected:
                raise
            except TransportError as e:
                logger.warning(
                    "Log read failed (%d/%d): %s",
                    reassembler.reads + 1,
                    reassembler.max_reads,
                    e,
                )
                fragment = b""

            if reassembler.feed(fragment) is FeedResult.EXHAUSTED:
                raise FrameTimeout(reassembler.reads, reassembler.buffered)

        return reassembler.take_packet()

    async def _streaming_handoff(
        self, result: RetrievalResult
    ) -> Optional[MeasurementRecord]:
        profile = self._profile
        self._transport.require(profile.measurement, "measurement")
        self._transport.require(profile.set_time, "set-time")

        received: asyncio.Future[bytes] = asyncio.get_running_loop().create_future()

        def on_notification(data: bytes) -> None:
            if not received.done():
                received.set_result(bytes(data))

        await self._transport.subscribe(profile.measurement, on_notification)
        try:
            try:
                payload = await asyncio.wait_for(received, self._handoff_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "No live measurement within %.1fs; device clock not resynchronized",
                    self._handoff_timeout,
                )
                return None

            record = decode_notification(payload, now=self._clock(), policy=self._policy)
            if record is None:
                return None

            if await write_time(self._transport, profile.set_time, record.timestamp):
                logger.info("Device clock resynchronized: %d", record.timestamp)
            if emit_safely(self._sink, self._device_id, record):
                result.records_emitted += 1
            return record
        finally:
            try:
                await self._transport.unsubscribe(profile.measurement)
            except TransportError as e:
                logger.warning("Unsubscribe after handoff failed: %s", e)
