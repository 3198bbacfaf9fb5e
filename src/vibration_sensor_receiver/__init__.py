from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .codec import MeasurementRecord, TimestampPolicy, decode_record
from .receiver import MODES, SensorReceiver, run
from .retrieval import HANDOFF_TIMEOUT, MAX_PACKETS, LogRetriever, RetrievalState
from .sink import CsvFileSink, CsvStreamSink, MemorySink, RecordSink
from .streaming import LiveStreamHandler
from .transport import SensorProfile, Transport

__all__ = [
    "LiveStreamHandler",
    "LogRetriever",
    "MeasurementRecord",
    "MemorySink",
    "CsvFileSink",
    "CsvStreamSink",
    "RecordSink",
    "RetrievalState",
    "SensorProfile",
    "SensorReceiver",
    "TimestampPolicy",
    "Transport",
    "decode_record",
    "main",
]

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vibration-sensor-receiver",
        description="Retrieve the stored log of a BLE vibration sensor and/or stream its live measurements as CSV.",
    )
    parser.add_argument(
        "--address", help="BLE address of the device (discovered when omitted)"
    )
    parser.add_argument(
        "--device-name",
        default=None,
        help="Device name to prefer during discovery",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="Scan timeout in seconds",
    )
    parser.add_argument(
        "--device-id",
        type=int,
        default=0,
        help="Identifier passed to the sink with every record (default: 0)",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default="both",
        help="logs: stored log only, stream: live only, both: log then live (default)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop live streaming after this many seconds (default: run until Ctrl+C)",
    )
    parser.add_argument(
        "--handoff-timeout",
        type=float,
        default=HANDOFF_TIMEOUT,
        help=f"Seconds to wait for the live reading after the log (default: {HANDOFF_TIMEOUT:g})",
    )
    parser.add_argument(
        "--max-packets",
        type=int,
        default=MAX_PACKETS,
        help=f"Log packets to read per retrieval (default: {MAX_PACKETS})",
    )
    parser.add_argument(
        "--strict-timestamps",
        action="store_true",
        help="Drop records with implausible timestamps instead of substituting the current time",
    )
    parser.add_argument(
        "--outfile",
        default=None,
        help="Write CSV to this file (plus a .meta.json) instead of standard output",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="Do not print the CSV header line (standard output only)",
    )
    parser.add_argument(
        "--sleep",
        choices=["on", "off"],
        default=None,
        help="Switch the device sleep mode before anything else",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated sensor (no BLE device required)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
            "NOTSET",
        ],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: standard error only)",
    )
    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    # CSV goes to stdout, logs to stderr and the optional file
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    if args.address:
        logger.info("Connecting to BLE address: %s", args.address)
    elif not args.mock:
        logger.info("Searching for the sensor; make sure it is powered on and advertising")

    code = run(
        address=args.address,
        mode=args.mode,
        device_id=args.device_id,
        device_name=args.device_name,
        scan_timeout=args.scan_timeout,
        duration=args.duration,
        handoff_timeout=args.handoff_timeout,
        max_packets=args.max_packets,
        strict_timestamps=args.strict_timestamps,
        outfile=args.outfile,
        show_header=not args.no_header,
        sleep=None if args.sleep is None else args.sleep == "on",
        mock=args.mock,
    )
    raise SystemExit(code)
