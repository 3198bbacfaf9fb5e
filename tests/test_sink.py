"""Unit tests for record sinks."""

import io
import json
from unittest.mock import MagicMock

import pytest

from conftest import make_record
from vibration_sensor_receiver.codec import MeasurementRecord
from vibration_sensor_receiver.sink import (
    CsvFileSink,
    CsvStreamSink,
    MemorySink,
    emit_safely,
)


class TestMemorySink:
    def test_keeps_order_and_device_id(self):
        sink = MemorySink()
        first, second = make_record(1_700_000_000), make_record(1_700_000_060)

        sink.emit(1, first)
        sink.emit(2, second)

        assert sink.items == [(1, first), (2, second)]
        assert sink.records == [first, second]


class TestCsvStreamSink:
    """Tests for CsvStreamSink"""

    def test_header_once_then_lines(self):
        stream = io.StringIO()
        sink = CsvStreamSink(stream)

        sink.emit(0, make_record(1_700_000_000))
        sink.emit(0, make_record(1_700_000_060))

        lines = stream.getvalue().splitlines()
        assert lines[0] == MeasurementRecord.csv_header()
        assert lines[1].startswith("1700000000,3.700,25.0,")
        assert len(lines) == 3

    def test_no_header(self):
        stream = io.StringIO()
        CsvStreamSink(stream, show_header=False).emit(0, make_record())

        assert stream.getvalue().count("\n") == 1

    def test_device_id_column(self):
        stream = io.StringIO()
        CsvStreamSink(stream, include_device_id=True).emit(9, make_record())

        header, line = stream.getvalue().splitlines()
        assert header.startswith("device_id,timestamp")
        assert line.startswith("9,1700000000")


class TestCsvFileSink:
    """Tests for CsvFileSink"""

    def test_writes_rows_and_metadata(self, tmp_path):
        path = tmp_path / "out" / "session.csv"
        sink = CsvFileSink(path, buffer_size=2).open()

        for i in range(3):
            sink.emit(4, make_record(1_700_000_000 + i))
        info = sink.close()

        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "device_id," + MeasurementRecord.csv_header()
        assert len(lines) == 4
        assert lines[3].startswith("4,1700000002,")
        assert info.total_records == 3
        assert info.file_size_bytes == path.stat().st_size

        metadata = json.loads(path.with_suffix(".meta.json").read_text(encoding="utf-8"))
        assert metadata["total_records"] == 3
        assert metadata["device_ids"] == [4]

    def test_flush_writes_buffer(self, tmp_path):
        path = tmp_path / "session.csv"
        sink = CsvFileSink(path, buffer_size=100).open()
        sink.emit(0, make_record())

        sink.flush()

        assert len(path.read_text(encoding="utf-8").splitlines()) == 2
        assert sink.records_written == 1
        sink.close()

    def test_emit_before_open(self, tmp_path):
        with pytest.raises(RuntimeError):
            CsvFileSink(tmp_path / "x.csv").emit(0, make_record())

    def test_close_twice(self, tmp_path):
        sink = CsvFileSink(tmp_path / "x.csv").open()
        sink.close()

        with pytest.raises(RuntimeError):
            sink.close()


def test_emit_safely_swallows_and_reports():
    sink = MagicMock()
    sink.emit.side_effect = OSError("disk full")

    assert emit_safely(sink, 0, make_record()) is False


def test_emit_safely_success():
    sink = MemorySink()

    assert emit_safely(sink, 0, make_record()) is True
    assert len(sink.items) == 1
