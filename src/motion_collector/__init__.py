from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .collector import MotionCollector
from .errors import MotionCollectorError
from .recording import DEFAULT_DURATION, DEFAULT_GRACE_PERIOD
from .transport import (
    DEFAULT_CHARACTERISTIC_UUID,
    DEFAULT_DEVICE_NAME,
    DEFAULT_SERVICE_UUID,
    MATCH_MODES,
    MATCH_SERVICE,
    BleakTransport,
    DeviceSelector,
    MockTransport,
    PeripheralHandle,
    Transport,
)

logger = logging.getLogger(__name__)

__all__ = ["MotionCollector", "build_parser", "main", "record_once"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="motion-collector",
        description="Connect to a BLE IMU, record labeled motions and export them as CSV.",
    )
    parser.add_argument("--address", help="BLE address of the device (skips scanning)")
    parser.add_argument(
        "--match",
        default=MATCH_SERVICE,
        choices=MATCH_MODES,
        help="How to pick the device while scanning (default: advertised service)",
    )
    parser.add_argument(
        "--device-name",
        default=DEFAULT_DEVICE_NAME,
        help="Device name used with --match name",
    )
    parser.add_argument("--service-uuid", default=DEFAULT_SERVICE_UUID, help="GATT service UUID")
    parser.add_argument(
        "--characteristic-uuid",
        default=DEFAULT_CHARACTERISTIC_UUID,
        help="GATT characteristic UUID used for telemetry and commands",
    )
    parser.add_argument(
        "--choose",
        action="store_true",
        help="List matching devices and ask which one to connect to (with --record)",
    )
    parser.add_argument("--scan-timeout", type=float, default=10.0, help="Scan timeout in seconds")
    parser.add_argument(
        "--duration",
        type=float,
        default=DEFAULT_DURATION,
        help=f"Recording duration in seconds (default: {DEFAULT_DURATION:g})",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        default=DEFAULT_GRACE_PERIOD,
        help="Seconds to wait for in-flight samples after a recording stops",
    )
    parser.add_argument(
        "--record",
        metavar="LABEL",
        default=None,
        help="Headless mode: connect, calibrate, record one motion with this label and export it",
    )
    parser.add_argument(
        "--export-dir",
        type=Path,
        default=Path.cwd() / "exports",
        help="Directory for CSV exports in headless mode (default: ./exports)",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Dashboard host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8050, help="Dashboard port (default: 8050)")
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated device instead of BLE",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    return parser


def _setup_logging(level_name: str, log_file: Optional[str]) -> None:
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


def _prompt_choice(candidates: Sequence[PeripheralHandle]) -> Optional[PeripheralHandle]:
    for i, candidate in enumerate(candidates, start=1):
        print(f"  [{i}] {candidate}", file=sys.stderr)
    answer = input("Select device number (empty to cancel): ").strip()
    if not answer:
        return None
    try:
        return candidates[int(answer) - 1]
    except (ValueError, IndexError):
        return None


def selector_from_args(args: argparse.Namespace) -> DeviceSelector:
    return DeviceSelector(
        mode=args.match,
        service_uuid=args.service_uuid,
        characteristic_uuid=args.characteristic_uuid,
        device_name=args.device_name,
        address=args.address,
        scan_timeout=args.scan_timeout,
        chooser=_prompt_choice if args.choose else None,
    )


async def record_once(
    collector: MotionCollector, label: str, export_dir: Path
) -> Path:
    """Connect, calibrate, record one motion for the configured duration and export it."""
    await collector.connect()
    try:
        await collector.calibrate()
        await collector.start_recording(label)
        while collector.session.is_recording:
            await asyncio.sleep(0.1)
        if collector.last_error and not len(collector.recordings):
            raise MotionCollectorError(collector.last_error)
        return collector.save_export(export_dir)
    finally:
        await collector.disconnect()


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.choose and args.record is None:
        # The chooser prompt blocks the collector loop
        parser.error("--choose is only available with --record")
    _setup_logging(args.log_level, args.log_file)

    transport: Transport
    if args.mock:
        logger.info("🔧 Using mock device (no BLE hardware required)")
        transport = MockTransport(
            service_uuid=args.service_uuid,
            characteristic_uuid=args.characteristic_uuid,
            name=args.device_name,
            stream_interval=0.04,
        )
    else:
        transport = BleakTransport()

    collector = MotionCollector(
        transport,
        selector_from_args(args),
        duration=args.duration,
        grace_period=args.grace_period,
    )

    if args.record is not None:
        try:
            path = asyncio.run(record_once(collector, args.record, args.export_dir))
        except KeyboardInterrupt:
            raise SystemExit(130)
        except MotionCollectorError as e:
            logger.error(f"❌ {e}")
            print(f"Error: {e}", file=sys.stderr)
            raise SystemExit(1)
        print(path)
        raise SystemExit(0)

    from .dashboard import create_app

    logger.info("🔧 IMU Motion Collector")
    logger.info("=" * 50)
    logger.info(f"🔍 Open http://{args.host}:{args.port} in your browser")
    logger.info("=" * 50)

    app = create_app(collector)
    try:
        app.run(host=args.host, port=args.port, debug=False)
    except KeyboardInterrupt:
        logger.info("\n🛑 Shutting down...")
    logger.info("🏁 Motion collector stopped")
