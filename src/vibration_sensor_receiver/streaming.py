"""Live measurement streaming.

Once historical retrieval is over (or skipped) the device pushes one 30-byte
record per notification on the measurement characteristic. Each notification
is decoded on its own (no packet slicing, no dedup set; the device does not
repeat live readings), its timestamp is written back to the set-time
characteristic, and the record goes to the sink.

The bleak notification callback runs synchronously, so it only puts the
payload on a bounded asyncio.Queue. A single consumer coroutine does the
decoding and the write-back. That keeps the set-time writes strictly
sequential and shares the record decoder with the packet path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .codec import (
    MeasurementRecord,
    TimestampPolicy,
    current_unix_time,
    decode_record,
    encode_timestamp,
)
from .errors import InvalidTimestamp, MalformedRecord, TransportError
from .sink import RecordSink, emit_safely
from .transport import SensorProfile, Transport

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64


def decode_notification(
    payload: bytes,
    *,
    now: Optional[int] = None,
    policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
) -> Optional[MeasurementRecord]:
    """Decode one notification payload, logging instead of raising."""
    try:
        record = decode_record(payload, now=now, policy=policy)
    except MalformedRecord as e:
        logger.warning("Ignoring notification (%s): %s", e, bytes(payload).hex())
        return None
    except InvalidTimestamp as e:
        logger.warning("Rejected notification: %s", e)
        return None
    if record is None:
        logger.info("Notification carries an empty record; ignored")
    return record


async def write_time(transport: Transport, uuid: str, timestamp: int) -> bool:
    """Write ``timestamp`` to ``uuid`` as 4 big-endian bytes.

    Returns:
        False if the write failed. Failures are logged, never raised.
    """
    try:
        await transport.write(uuid, encode_timestamp(timestamp))
    except TransportError as e:
        logger.warning("Timestamp write failed (ts=%d): %s", timestamp, e)
        return False
    logger.debug("Timestamp written: %d -> %s", timestamp, uuid)
    return True


@dataclass
class StreamStats:
    notifications: int = 0
    records_emitted: int = 0
    dropped: int = 0
    skipped: int = 0
    write_back_failures: int = 0


class LiveStreamHandler:
    """Single-subscriber consumer of live measurement notifications.

    Args:
        transport: Connected transport.
        sink: Receives every decoded record.
        device_id: Identifier handed to the sink with each record.
        profile: Characteristic UUIDs.
        queue_size: Bound on payloads waiting for the consumer. When full, the
            oldest payload is dropped.
        policy: Timestamp policy for the record decoder.
        clock: Wall-clock source in epoch seconds.
    """

    def __init__(
        self,
        transport: Transport,
        sink: RecordSink,
        device_id: int,
        *,
        profile: SensorProfile = SensorProfile(),
        queue_size: int = DEFAULT_QUEUE_SIZE,
        policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
        clock: Callable[[], int] = current_unix_time,
    ) -> None:
        self._transport = transport
        self._sink = sink
        self._device_id = device_id
        self._profile = profile
        self._queue_size = queue_size
        self._policy = policy
        self._clock = clock
        self._queue: Optional[asyncio.Queue[Optional[bytes]]] = None
        self._subscribed = False
        self._stopping = False
        self.stats = StreamStats()

    @property
    def is_running(self) -> bool:
        return self._subscribed

    def _put(self, item: Optional[bytes]) -> None:
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            evicted = queue.get_nowait()
            if evicted is None:
                # a queued stop sentinel always survives
                queue.put_nowait(None)
                if item is None:
                    return
            else:
                queue.put_nowait(item)
            self.stats.dropped += 1
            logger.warning(
                "Notification queue full (%d); dropped a payload", queue.maxsize
            )

    def _on_notification(self, data: bytes) -> None:
        if self._stopping:
            return
        self.stats.notifications += 1
        logger.debug("Measurement received (hex): %s", bytes(data).hex())
        self._put(bytes(data))

    def _on_disconnect(self) -> None:
        logger.warning("Link lost; ending live stream")
        self._put(None)

    async def start(self) -> None:
        """Subscribe to measurement notifications.

        Raises:
            CharacteristicUnavailable: The measurement or set-time
                characteristic is missing.
        """
        if self._subscribed:
            return
        self._transport.require(self._profile.measurement, "measurement")
        self._transport.require(self._profile.set_time, "set-time")

        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._stopping = False
        self._transport.add_disconnect_listener(self._on_disconnect)
        try:
            await self._transport.subscribe(
                self._profile.measurement, self._on_notification
            )
        except BaseException:
            self._transport.remove_disconnect_listener(self._on_disconnect)
            raise
        self._subscribed = True
        logger.info("Live streaming started: device_id=%d", self._device_id)

    async def stop(self) -> None:
        """Unsubscribe and wake the consumer. Safe to call more than once."""
        self._stopping = True
        self._transport.remove_disconnect_listener(self._on_disconnect)
        if self._subscribed:
            self._subscribed = False
            try:
                await self._transport.unsubscribe(self._profile.measurement)
            except TransportError as e:
                logger.warning("Unsubscribe failed: %s", e)
        self._put(None)

    async def run(self, duration: Optional[float] = None) -> StreamStats:
        """Consume notifications until stop(), link loss or ``duration`` seconds."""
        await self.start()
        queue = self._queue
        if queue is None:
            raise RuntimeError("Stream handler not started")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration is not None else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                if payload is None:
                    break
                await self._handle(payload)
        finally:
            await self.stop()

        logger.info(
            "Live streaming stopped: %d notifications, %d records, %d dropped",
            self.stats.notifications,
            self.stats.records_emitted,
            self.stats.dropped,
        )
        return self.stats

    async def _handle(self, payload: bytes) -> None:
        record = decode_notification(payload, now=self._clock(), policy=self._policy)
        if record is None:
            self.stats.skipped += 1
            return

        if not await write_time(self._transport, self._profile.set_time, record.timestamp):
            self.stats.write_back_failures += 1

        if emit_safely(self._sink, self._device_id, record):
            self.stats.records_emitted += 1
