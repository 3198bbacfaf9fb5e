"""Unit tests for the live streaming handler."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import NOW, ScriptedTransport, make_slot
from vibration_sensor_receiver.codec import encode_timestamp
from vibration_sensor_receiver.errors import CharacteristicUnavailable, TransportError
from vibration_sensor_receiver.streaming import (
    LiveStreamHandler,
    decode_notification,
    write_time,
)


async def wait_for_records(sink, count, timeout=1.0):
    async def _poll():
        while len(sink.items) < count:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


class TestLiveStreamHandler:
    """Tests for LiveStreamHandler"""

    @pytest.mark.asyncio
    async def test_notifications_decoded_written_back_and_emitted(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 3, clock=clock)
        run_task = asyncio.create_task(handler.run())
        await asyncio.sleep(0.01)

        transport.notify(transport.profile.measurement, make_slot(NOW - 2))
        transport.notify(transport.profile.measurement, make_slot(NOW - 1))
        await wait_for_records(sink, 2)
        await handler.stop()
        stats = await run_task

        assert [(device_id, r.timestamp) for device_id, r in sink.items] == [
            (3, NOW - 2),
            (3, NOW - 1),
        ]
        assert transport.writes_to(transport.profile.set_time) == [
            encode_timestamp(NOW - 2),
            encode_timestamp(NOW - 1),
        ]
        assert stats.notifications == 2
        assert stats.records_emitted == 2
        assert transport.unsubscribed == [transport.profile.measurement]

    @pytest.mark.asyncio
    async def test_no_dedup_on_live_path(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)
        run_task = asyncio.create_task(handler.run())
        await asyncio.sleep(0.01)

        for _ in range(3):
            transport.notify(transport.profile.measurement, make_slot(NOW))
        await wait_for_records(sink, 3)
        await handler.stop()
        await run_task

        assert len(sink.records) == 3

    @pytest.mark.asyncio
    async def test_bad_payloads_skipped(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)
        run_task = asyncio.create_task(handler.run())
        await asyncio.sleep(0.01)

        transport.notify(transport.profile.measurement, b"\x01\x02")
        transport.notify(transport.profile.measurement, bytes(30))
        transport.notify(transport.profile.measurement, make_slot(NOW))
        await wait_for_records(sink, 1)
        await handler.stop()
        stats = await run_task

        assert stats.skipped == 2
        assert stats.records_emitted == 1

    @pytest.mark.asyncio
    async def test_queue_overflow_drops_oldest(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, queue_size=2, clock=clock)
        await handler.start()

        for offset in (3, 2, 1):
            transport.notify(transport.profile.measurement, make_slot(NOW - offset))
        stats = await handler.run(duration=0.05)

        assert stats.dropped == 1
        assert [r.timestamp for r in sink.records] == [NOW - 2, NOW - 1]

    @pytest.mark.asyncio
    async def test_stop_on_full_queue_counts_evicted_payload(self, transport, sink, clock):
        """The stop sentinel evicting a payload still counts as a drop."""
        handler = LiveStreamHandler(transport, sink, 0, queue_size=2, clock=clock)
        await handler.start()

        for offset in (2, 1):
            transport.notify(transport.profile.measurement, make_slot(NOW - offset))
        await handler.stop()

        assert handler.stats.dropped == 1

    @pytest.mark.asyncio
    async def test_queued_sentinel_survives_overflow(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, queue_size=1, clock=clock)
        await handler.start()

        transport.disconnect()
        handler._on_notification(make_slot(NOW))
        stats = await asyncio.wait_for(handler.run(), 1.0)

        assert stats.dropped == 1
        assert sink.records == []

    @pytest.mark.asyncio
    async def test_run_without_queue_raises(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)

        with patch.object(handler, "start", AsyncMock()):
            with pytest.raises(RuntimeError):
                await handler.run()

    @pytest.mark.asyncio
    async def test_write_back_failure_is_not_fatal(self, transport, sink, clock):
        transport.write_errors[transport.profile.set_time.lower()] = TransportError("nope")
        transport.notify_on_subscribe = [make_slot(NOW)]
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)

        stats = await handler.run(duration=0.05)

        assert stats.write_back_failures == 1
        assert stats.records_emitted == 1

    @pytest.mark.asyncio
    async def test_duration_ends_stream(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)

        stats = await handler.run(duration=0.02)

        assert stats.notifications == 0
        assert not handler.is_running
        assert transport.unsubscribed == [transport.profile.measurement]

    @pytest.mark.asyncio
    async def test_disconnect_ends_stream(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)
        run_task = asyncio.create_task(handler.run())
        await asyncio.sleep(0.01)

        transport.disconnect()
        await asyncio.wait_for(run_task, 1.0)

        assert not handler.is_running

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, transport, sink, clock):
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)
        await handler.start()

        await handler.stop()
        await handler.stop()

        assert transport.unsubscribed == [transport.profile.measurement]

    @pytest.mark.asyncio
    async def test_requires_measurement_characteristic(self, profile, sink, clock):
        transport = ScriptedTransport(profile, missing=[profile.measurement])
        handler = LiveStreamHandler(transport, sink, 0, clock=clock)

        with pytest.raises(CharacteristicUnavailable):
            await handler.start()

        assert transport.subscribed == []


class TestHelpers:
    """Tests for the shared notification helpers"""

    def test_decode_notification_logs_instead_of_raising(self):
        assert decode_notification(b"\x00" * 5, now=NOW) is None

    def test_decode_notification(self):
        assert decode_notification(make_slot(NOW), now=NOW).timestamp == NOW

    @pytest.mark.asyncio
    async def test_write_time(self, transport):
        assert await write_time(transport, transport.profile.set_time, 0x01020304)
        assert transport.writes == [(transport.profile.set_time, b"\x01\x02\x03\x04")]

    @pytest.mark.asyncio
    async def test_write_time_failure(self, transport):
        transport.write_errors[transport.profile.set_time.lower()] = TransportError("x")
        assert not await write_time(transport, transport.profile.set_time, NOW)
