"""Client controller wiring link, stream, session and export together.

:class:`MotionCollector` is what a user interface talks to. It owns one
instance of each component, routes notifications from the link into the
sample stream and on to the recording session, aborts an in-flight recording
when the link goes away, and keeps exactly one human-readable message for the
most recent failure.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import export
from .errors import LinkClosed, MotionCollectorError
from .link_manager import ConnectionState, DeviceSelector, DisconnectEvent, LinkManager
from .recording import (
    DEFAULT_DURATION,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_TICK_INTERVAL,
    RecordedMotion,
    RecordingSession,
    RecordingSet,
    SessionState,
    utc_now,
)
from .sample_stream import SampleStream, StreamStats
from .transport import PeripheralHandle, Transport
from .wire_codec import TEST_MESSAGE, SensorSample

logger = logging.getLogger(__name__)

ErrorListener = Callable[[str], None]


@dataclass
class CollectorStatus:
    """Point-in-time view of the collector for display."""

    connection_state: ConnectionState
    peripheral: Optional[PeripheralHandle]
    calibrated: bool
    session_state: SessionState
    label: str
    progress: float
    samples_recorded: int
    recordings: int
    latest: Optional[SensorSample]
    stream: StreamStats
    decode_errors: int
    last_error: Optional[str]


class MotionCollector:
    """Connect, calibrate, record labeled motions and export them.

    Args:
        transport: Radio transport (``BleakTransport`` or ``MockTransport``).
        selector: Discovery filter and GATT endpoint configuration.
        duration: Default recording duration in seconds.
        tick_interval: Seconds between progress updates.
        grace_period: Grace delay before a stopped recording is frozen.
        clock: Monotonic clock shared by arrival stamping and the session timer.
        wall_clock: Source of recording timestamps.
    """

    def __init__(
        self,
        transport: Transport,
        selector: Optional[DeviceSelector] = None,
        *,
        duration: float = DEFAULT_DURATION,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.recordings = RecordingSet()
        self.link = LinkManager(transport, selector, clock=clock)
        self.session = RecordingSession(
            self.recordings,
            duration=duration,
            tick_interval=tick_interval,
            grace_period=grace_period,
            calibration_check=lambda: self.link.is_calibrated,
            clock=clock,
            wall_clock=wall_clock,
        )
        self.stream = SampleStream(sink=self.session, clock=clock)

        self._last_error: Optional[str] = None
        self._last_exception: Optional[BaseException] = None
        self._error_listeners: list[ErrorListener] = []

        self.link.add_disconnect_listener(self._on_disconnect)
        self.session.add_error_listener(self._report)

    # -- observation ---------------------------------------------------

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def received_text(self) -> str:
        """Latest sample as comma-separated export fields, empty before the first sample."""
        latest = self.stream.latest
        if latest is None:
            return ""
        return ",".join(latest.to_csv_fields())

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def status(self) -> CollectorStatus:
        return CollectorStatus(
            connection_state=self.link.state,
            peripheral=self.link.peripheral,
            calibrated=self.link.is_calibrated,
            session_state=self.session.state,
            label=self.session.label,
            progress=self.session.progress,
            samples_recorded=self.session.sample_count,
            recordings=len(self.recordings),
            latest=self.stream.latest,
            stream=self.stream.stats,
            decode_errors=self.link.decode_errors,
            last_error=self._last_error,
        )

    def _report(self, error: MotionCollectorError) -> None:
        if error is self._last_exception:
            return
        self._last_exception = error
        self._last_error = error.user_message
        logger.error("%s", self._last_error)
        for listener in list(self._error_listeners):
            try:
                listener(self._last_error)
            except Exception:
                logger.exception("Error listener failed")

    def clear_error(self) -> None:
        self._last_error = None
        self._last_exception = None

    # -- link ----------------------------------------------------------

    async def connect(self) -> PeripheralHandle:
        """Discover, connect and subscribe to telemetry."""
        try:
            peripheral = await self.link.discover_and_connect()
        except MotionCollectorError as e:
            self._report(e)
            raise

        channel = self.link.channel
        assert channel is not None
        try:
            await self.link.subscribe(
                channel, self.stream.publish, self.stream.report_decode_error
            )
        except MotionCollectorError as e:
            self._report(e)
            await self.link.disconnect()
            raise

        self.clear_error()
        return peripheral

    async def disconnect(self) -> None:
        await self.link.disconnect()

    async def calibrate(self) -> None:
        try:
            await self.link.calibrate()
        except MotionCollectorError as e:
            self._report(e)
            raise
        logger.info("Calibration command sent")

    async def send_test_message(self) -> None:
        try:
            await self.link.send_command(TEST_MESSAGE)
        except MotionCollectorError as e:
            self._report(e)
            raise

    def _on_disconnect(self, event: DisconnectEvent) -> None:
        self.stream.reset()
        aborted = self.session.abort()
        if aborted is None and event.unexpected:
            self._report(LinkClosed("Device disconnected"))

    # -- recording -----------------------------------------------------

    async def start_recording(self, label: str, duration: Optional[float] = None) -> None:
        try:
            self.session.arm(label, duration)
        except MotionCollectorError as e:
            self._report(e)
            raise

    async def stop_recording(self) -> Optional[RecordedMotion]:
        try:
            return await self.session.stop()
        except MotionCollectorError as e:
            self._report(e)
            raise

    # -- export --------------------------------------------------------

    def export_csv(self) -> str:
        try:
            return export.encode(self.recordings)
        except MotionCollectorError as e:
            self._report(e)
            raise

    def save_export(self, directory: Path, *, discard: bool = False) -> Path:
        """Write all recordings to ``directory``; optionally clear them afterwards."""
        try:
            path = export.save_export(self.recordings.snapshot(), directory)
        except MotionCollectorError as e:
            self._report(e)
            raise
        if discard:
            self.clear_recordings()
        return path

    def clear_recordings(self) -> None:
        self.recordings.clear()
        logger.info("Recordings cleared")
