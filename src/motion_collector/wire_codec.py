"""Wire codec for IMU telemetry frames and outbound commands.

The peripheral pushes one telemetry frame per BLE notification. A frame is
UTF-8 text holding comma-separated decimal numbers in the order::

    accelX,accelY,accelZ,gyroX,gyroY,gyroZ,temp

Firmware revisions may append extra fields (timestamps, battery level, ...);
anything after the seventh field is ignored. Commands travel the other way as
plain UTF-8 text, the calibration trigger being the single character ``"0"``.

The codec is stateless: decoding one frame never depends on, or affects, the
decoding of any other frame.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

from .errors import ParseError

logger = logging.getLogger(__name__)

FIELD_COUNT = 7

CALIBRATE_COMMAND = "0"
TEST_MESSAGE = "Hello from Web"

# Trailing terminators some firmwares append to each notification
_FRAME_TERMINATORS = "\r\n\x00"


@dataclass(frozen=True)
class Vector3:
    """Three-axis reading (accelerometer or gyroscope)."""

    x: float
    y: float
    z: float


@dataclass(frozen=True)
class SensorSample:
    """One decoded telemetry frame.

    The frozen dataclass mirrors how a sample flows through the pipeline: it
    is produced once by :func:`decode` and then shared between the latest-value
    slot, observers and the recording buffer without ever being copied or
    mutated.

    Attributes:
        accel: Accelerometer reading (x, y, z).
        gyro: Gyroscope reading (x, y, z).
        temp: IMU die temperature.
    """

    accel: Vector3
    gyro: Vector3
    temp: float

    @classmethod
    def from_fields(cls, fields: "list[float]") -> "SensorSample":
        return cls(
            accel=Vector3(fields[0], fields[1], fields[2]),
            gyro=Vector3(fields[3], fields[4], fields[5]),
            temp=fields[6],
        )

    def to_csv_fields(self) -> "list[str]":
        """Format the sample for export (4 decimals for motion, 2 for temperature)."""
        return [
            f"{self.accel.x:.4f}",
            f"{self.accel.y:.4f}",
            f"{self.accel.z:.4f}",
            f"{self.gyro.x:.4f}",
            f"{self.gyro.y:.4f}",
            f"{self.gyro.z:.4f}",
            f"{self.temp:.2f}",
        ]


def _parse_field(token: str, text: str) -> float:
    try:
        value = float(token)
    except ValueError:
        raise ParseError(f"Non-numeric field {token!r} in frame {text!r}", frame=text)
    if not math.isfinite(value):
        raise ParseError(f"Non-finite field {token!r} in frame {text!r}", frame=text)
    return value


def decode(raw: Union[bytes, bytearray, memoryview, str]) -> Optional[SensorSample]:
    """Decode one telemetry frame into a :class:`SensorSample`.

    Args:
        raw: Notification payload. ``str`` input is accepted for callers that
            already hold decoded text (tests, log replays).

    Returns:
        The decoded sample, or ``None`` when the frame is empty or holds only
        whitespace. An empty frame is a keep-alive, not an error.

    Raises:
        ParseError: If the payload is not valid UTF-8, holds fewer than seven
            fields, or any of the first seven fields is non-numeric, NaN or
            infinite.
    """
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = bytes(raw).decode("utf-8", errors="strict")
        except UnicodeDecodeError as e:
            raise ParseError(f"Frame is not valid UTF-8: {bytes(raw)!r}", frame=repr(bytes(raw))) from e

    text = text.strip().strip(_FRAME_TERMINATORS).strip()
    if not text:
        return None

    parts = [p.strip() for p in text.split(",")]
    if len(parts) < FIELD_COUNT:
        raise ParseError(
            f"Unexpected CSV fields count: {len(parts)} in {text!r} (need {FIELD_COUNT})",
            frame=text,
        )

    fields = [_parse_field(token, text) for token in parts[:FIELD_COUNT]]
    return SensorSample.from_fields(fields)


def encode_command(command: str) -> bytes:
    """UTF-8 encode a command string for a characteristic write.

    Writes are fire-and-forget from the codec's point of view; the transport
    write reports success or failure.
    """
    if not command:
        raise ValueError("Command must not be empty")
    return command.encode("utf-8")
