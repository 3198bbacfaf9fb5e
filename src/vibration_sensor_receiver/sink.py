"""Record sinks: the boundary to storage and reporting.

A sink receives ``(device_id, record)`` pairs from the retrieval state machine
and the live stream handler. Delivery from the decoder side is at-least-once;
duplicate suppression already happened before emit() is called.

emit() runs on the event loop, so file output is buffered and flushed in
batches.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, TextIO

from .codec import MeasurementRecord

logger = logging.getLogger(__name__)


class RecordSink(ABC):
    """Consumer of decoded measurement records."""

    @abstractmethod
    def emit(self, device_id: int, record: MeasurementRecord) -> None:
        """Accept one record. May raise; callers log and carry on."""

    def close(self) -> None:
        """Release resources. Default does nothing."""


class MemorySink(RecordSink):
    """Keep every emitted pair in memory, in emission order."""

    def __init__(self) -> None:
        self.items: list[tuple[int, MeasurementRecord]] = []

    def emit(self, device_id: int, record: MeasurementRecord) -> None:
        self.items.append((device_id, record))

    @property
    def records(self) -> list[MeasurementRecord]:
        return [record for _, record in self.items]


class CsvStreamSink(RecordSink):
    """Write one CSV line per record to a text stream (stdout by default)."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        show_header: bool = True,
        include_device_id: bool = False,
    ) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._include_device_id = include_device_id
        self._header_pending = show_header

    def emit(self, device_id: int, record: MeasurementRecord) -> None:
        if self._header_pending:
            header = MeasurementRecord.csv_header()
            if self._include_device_id:
                header = "device_id," + header
            logger.info("CSV header: %s", header)
            print(header, file=self._stream)
            self._header_pending = False
        line = record.to_csv()
        if self._include_device_id:
            line = f"{device_id},{line}"
        logger.debug("CSV output: %s", line)
        print(line, file=self._stream, flush=True)


@dataclass
class SessionInfo:
    """Summary of a closed recording file."""

    session_id: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_seconds: float
    total_records: int
    file_path: Path
    file_size_bytes: int


class CsvFileSink(RecordSink):
    """Buffered CSV file writer with a companion ``.meta.json``.

    Records are formatted immediately and flushed to disk every
    ``buffer_size`` rows, on flush() and on close().
    """

    def __init__(self, filepath: Path, buffer_size: int = 64) -> None:
        self._filepath = Path(filepath)
        self._buffer_size = buffer_size
        self._write_buffer: List[str] = []
        self._file_handle: Optional[TextIO] = None
        self._record_count = 0
        self._device_ids: set[int] = set()
        self._start_time = datetime.now(timezone.utc)
        self._lock = threading.Lock()

    @property
    def filepath(self) -> Path:
        return self._filepath

    def open(self) -> "CsvFileSink":
        """Open the file and write the header."""
        try:
            self._filepath.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = open(self._filepath, "w", newline="", encoding="utf-8")
            self._file_handle.write("device_id," + MeasurementRecord.csv_header() + "\n")
            self._file_handle.flush()
            logger.info("Opened recording file: %s", self._filepath)
        except Exception as e:
            logger.error("Failed to open recording file %s: %s", self._filepath, e)
            raise
        return self

    def emit(self, device_id: int, record: MeasurementRecord) -> None:
        if not self._file_handle:
            raise RuntimeError("File not open for writing")

        with self._lock:
            self._write_buffer.append(f"{device_id},{record.to_csv()}\n")
            self._record_count += 1
            self._device_ids.add(device_id)
            if len(self._write_buffer) >= self._buffer_size:
                self._flush_internal()

    def _flush_internal(self) -> None:
        if not self._write_buffer or not self._file_handle:
            return
        try:
            self._file_handle.writelines(self._write_buffer)
            self._write_buffer.clear()
            self._file_handle.flush()
        except Exception as e:
            logger.error("Error flushing records to file: %s", e)
            raise

    def flush(self, force_fsync: bool = False) -> None:
        with self._lock:
            self._flush_internal()
            if force_fsync and self._file_handle:
                try:
                    os.fsync(self._file_handle.fileno())
                except OSError as e:
                    logger.warning("fsync failed: %s", e)

    def close(self) -> SessionInfo:
        """Flush, close and write the metadata file."""
        with self._lock:
            if not self._file_handle:
                raise RuntimeError("File not open")

            try:
                self._flush_internal()
                self._file_handle.close()

                end_time = datetime.now(timezone.utc)
                duration = (end_time - self._start_time).total_seconds()
                file_size = self._filepath.stat().st_size
                self._write_metadata_file(end_time, duration, file_size)

                logger.info(
                    "Closed recording: %d records, %.1fs, %d bytes",
                    self._record_count,
                    duration,
                    file_size,
                )
                return SessionInfo(
                    session_id=self._filepath.stem,
                    start_time=self._start_time,
                    end_time=end_time,
                    duration_seconds=duration,
                    total_records=self._record_count,
                    file_path=self._filepath,
                    file_size_bytes=file_size,
                )
            finally:
                self._file_handle = None

    def _write_metadata_file(
        self, end_time: datetime, duration: float, file_size: int
    ) -> None:
        metadata_path = self._filepath.with_suffix(".meta.json")
        metadata = {
            "session_id": self._filepath.stem,
            "start_time": self._start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": duration,
            "total_records": self._record_count,
            "device_ids": sorted(self._device_ids),
            "file_path": str(self._filepath),
            "file_size_bytes": file_size,
            "recording_settings": {"buffer_size": self._buffer_size},
        }
        try:
            with open(metadata_path, "w", encoding="utf-8") as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            logger.warning("Failed to write metadata file: %s", e)

    @property
    def records_written(self) -> int:
        with self._lock:
            return self._record_count


def emit_safely(
    sink: RecordSink, device_id: int, record: MeasurementRecord
) -> bool:
    """Hand a record to ``sink``; log and report False if the sink raises."""
    try:
        sink.emit(device_id, record)
        return True
    except Exception:
        logger.exception(
            "Sink %s failed for record ts=%d", type(sink).__name__, record.timestamp
        )
        return False
