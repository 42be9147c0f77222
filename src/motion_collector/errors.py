"""Error taxonomy for the motion collector.

Every failure the client can surface is one of the classes below. Each class
carries a default human-readable ``message`` so that callers (CLI, dashboard)
can show exactly one line to the user without inspecting the exception type.
"""

from __future__ import annotations

from typing import Optional


class MotionCollectorError(Exception):
    """Base class for all motion collector failures."""

    message = "Unexpected motion collector error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)

    @property
    def user_message(self) -> str:
        return str(self)


class LinkError(MotionCollectorError):
    """Failures of the radio link (discovery, connection, I/O)."""

    message = "Bluetooth link error"


class UserCancelled(LinkError):
    message = "Device selection was cancelled"


class NoAdapter(LinkError):
    message = "No usable Bluetooth adapter found. Check that Bluetooth is enabled"


class NotFound(LinkError):
    message = "Target device not found. Check that it is powered on and advertising"


class IncompatibleDevice(LinkError):
    message = "Connected device does not expose the expected service/characteristic"


class LinkClosed(LinkError):
    message = "Device is not connected"


class TransportError(LinkError):
    message = "Bluetooth transport operation failed"


class ParseError(MotionCollectorError):
    """A single telemetry frame could not be decoded."""

    message = "Malformed telemetry frame"

    def __init__(self, message: Optional[str] = None, frame: str = "") -> None:
        super().__init__(message)
        self.frame = frame


class SessionError(MotionCollectorError):
    message = "Recording session error"


class InvalidLabel(SessionError):
    message = "Please enter a motion name before recording"


class InvalidDuration(SessionError):
    message = "Recording duration must be a positive number of seconds"


class NotCalibrated(SessionError):
    message = "Please calibrate the sensor before recording"


class RecordingInProgress(SessionError):
    message = "A recording is already in progress"


class EmptyRecording(SessionError):
    message = "No samples were received during the recording; nothing was saved"


class SessionAborted(SessionError):
    message = "Recording aborted: device disconnected"


class ExportError(MotionCollectorError):
    message = "Export failed"


class NothingToExport(ExportError):
    message = "No recorded motions to export"
