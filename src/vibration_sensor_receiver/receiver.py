"""Session-level entry points: the SensorReceiver façade and the CLI runner."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Coroutine, Optional, TypeVar

from .codec import TimestampPolicy, current_unix_time
from .errors import TransportDisconnected
from .framing import MAX_READS_PER_PACKET
from .mock import MockSensorTransport
from .retrieval import (
    HANDOFF_TIMEOUT,
    HANDSHAKE_ACK_DELAY,
    MAX_PACKETS,
    LogRetriever,
    RetrievalResult,
    RetrievalState,
)
from .sink import CsvFileSink, CsvStreamSink, RecordSink
from .streaming import DEFAULT_QUEUE_SIZE, LiveStreamHandler, StreamStats, write_time
from .transport import (
    SERVICE_UUID,
    SLEEP_OFF,
    SLEEP_ON,
    SensorProfile,
    Transport,
    connect,
    resolve_address,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODES = ("logs", "stream", "both")


class SensorReceiver:
    """Everything one connected sensor supports, behind a single lock.

    Historical retrieval and live streaming share the measurement
    characteristic, so the receiver runs at most one of them at a time. A
    second call waits until the first has unsubscribed and returned.

    When the transport reports link loss the running operation is cancelled;
    the caller sees TransportDisconnected.
    """

    def __init__(
        self,
        transport: Transport,
        sink: RecordSink,
        device_id: int = 0,
        *,
        profile: SensorProfile = SensorProfile(),
        policy: TimestampPolicy = TimestampPolicy.SUBSTITUTE,
        clock: Callable[[], int] = current_unix_time,
        max_packets: int = MAX_PACKETS,
        max_reads_per_packet: int = MAX_READS_PER_PACKET,
        handoff_timeout: float = HANDOFF_TIMEOUT,
        ack_delay: float = HANDSHAKE_ACK_DELAY,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._transport = transport
        self._sink = sink
        self._device_id = device_id
        self._profile = profile
        self._policy = policy
        self._clock = clock
        self._max_packets = max_packets
        self._max_reads_per_packet = max_reads_per_packet
        self._handoff_timeout = handoff_timeout
        self._ack_delay = ack_delay
        self._queue_size = queue_size
        self._lock = asyncio.Lock()
        self._active: Optional[asyncio.Task] = None
        self._link_lost = False
        transport.add_disconnect_listener(self.handle_disconnect)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def link_lost(self) -> bool:
        return self._link_lost

    def close(self) -> None:
        """Detach from the transport. Safe to call more than once."""
        self._transport.remove_disconnect_listener(self.handle_disconnect)

    async def _exclusive(self, coro: Coroutine[Any, Any, T]) -> T:
        async with self._lock:
            if self._link_lost:
                coro.close()
                raise TransportDisconnected("Link lost; reconnect before retrying")
            task = asyncio.ensure_future(coro)
            self._active = task
            try:
                return await task
            except asyncio.CancelledError:
                if self._link_lost and task.cancelled():
                    raise TransportDisconnected("Link lost; operation aborted") from None
                raise
            finally:
                self._active = None

    async def retrieve_logs(self) -> RetrievalResult:
        """Retrieve the stored log, then resync the device clock."""
        retriever = LogRetriever(
            self._transport,
            self._sink,
            self._device_id,
            profile=self._profile,
            max_packets=self._max_packets,
            max_reads_per_packet=self._max_reads_per_packet,
            handoff_timeout=self._handoff_timeout,
            ack_delay=self._ack_delay,
            policy=self._policy,
            clock=self._clock,
        )
        return await self._exclusive(retriever.run())

    async def stream(self, duration: Optional[float] = None) -> StreamStats:
        """Forward live measurements to the sink for ``duration`` seconds (or forever)."""
        handler = LiveStreamHandler(
            self._transport,
            self._sink,
            self._device_id,
            profile=self._profile,
            queue_size=self._queue_size,
            policy=self._policy,
            clock=self._clock,
        )
        return await self._exclusive(handler.run(duration))

    async def sync_time(self) -> bool:
        """Write the current wall-clock time to the set-time characteristic."""
        self._transport.require(self._profile.set_time, "set-time")
        now = self._clock()
        ok = await write_time(self._transport, self._profile.set_time, now)
        if ok:
            logger.info("Device clock set to %d", now)
        return ok

    async def set_sleep(self, enabled: bool) -> None:
        """Switch the device sleep mode on or off.

        Raises:
            CharacteristicUnavailable: The sleep-control characteristic is missing.
            TransportError: The write failed.
        """
        self._transport.require(self._profile.sleep_control, "sleep-control")
        await self._transport.write(
            self._profile.sleep_control, SLEEP_ON if enabled else SLEEP_OFF
        )
        logger.info("Sleep mode %s", "enabled" if enabled else "disabled")

    def handle_disconnect(self) -> None:
        self._link_lost = True
        task = self._active
        if task is not None and not task.done():
            logger.warning("Link lost; cancelling running operation")
            task.cancel()


@asynccontextmanager
async def open_transport(
    address: Optional[str] = None,
    *,
    mock: bool = False,
    device_name: Optional[str] = None,
    service_uuid: str = SERVICE_UUID,
    scan_timeout: float = 10.0,
    connect_timeout: float = 15.0,
) -> AsyncIterator[Transport]:
    """Yield a connected transport: a simulated device or a real one via bleak."""
    if mock:
        logger.info("Using mock sensor (no BLE device required)")
        transport = MockSensorTransport()
        try:
            yield transport
        finally:
            await transport.close()
        return

    target = await resolve_address(
        address,
        device_name=device_name,
        service_uuid=service_uuid,
        scan_timeout=scan_timeout,
    )
    async with connect(target, timeout=connect_timeout) as transport:
        yield transport


async def run_session(
    address: Optional[str] = None,
    *,
    mode: str = "both",
    device_id: int = 0,
    device_name: Optional[str] = None,
    scan_timeout: float = 10.0,
    duration: Optional[float] = None,
    handoff_timeout: float = HANDOFF_TIMEOUT,
    max_packets: int = MAX_PACKETS,
    strict_timestamps: bool = False,
    outfile: Optional[str] = None,
    show_header: bool = True,
    sleep: Optional[bool] = None,
    mock: bool = False,
) -> bool:
    """Connect, optionally switch sleep mode, then retrieve and/or stream.

    Returns:
        False if the log retrieval ended in ABORTED.
    """
    if mode not in MODES:
        raise ValueError(f"mode must be one of {MODES}, got {mode!r}")

    policy = TimestampPolicy.REJECT if strict_timestamps else TimestampPolicy.SUBSTITUTE
    sink: RecordSink
    if outfile:
        sink = CsvFileSink(Path(outfile)).open()
    else:
        sink = CsvStreamSink(show_header=show_header)

    ok = True
    try:
        async with open_transport(
            address, mock=mock, device_name=device_name, scan_timeout=scan_timeout
        ) as transport:
            receiver = SensorReceiver(
                transport,
                sink,
                device_id,
                policy=policy,
                max_packets=max_packets,
                handoff_timeout=handoff_timeout,
            )
            try:
                if sleep is not None:
                    await receiver.set_sleep(sleep)

                if mode in ("logs", "both"):
                    result = await receiver.retrieve_logs()
                    if result.state is RetrievalState.ABORTED:
                        logger.error("Log retrieval aborted: %s", result.error)
                        ok = False

                if mode in ("stream", "both") and ok:
                    await receiver.stream(duration)
            finally:
                receiver.close()
    finally:
        sink.close()
    return ok


def run(**kwargs) -> int:
    """Synchronous wrapper around run_session() for the command line.

    Returns:
        int: Exit code following Unix conventions:
            0: Normal completion
            1: Error termination (scan/connection failures, aborted retrieval)
            130: Keyboard interrupt (SIGINT/Ctrl+C)
    """
    try:
        ok = asyncio.run(run_session(**kwargs))
        return 0 if ok else 1
    except KeyboardInterrupt:
        # SIGINT: Return 130 by convention
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
