"""CSV export of recorded motions.

The column layout and numeric precision (4 decimals for accelerometer and
gyroscope, 2 for temperature) are relied upon by downstream tooling and must
not change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .errors import NothingToExport
from .recording import RecordedMotion, iso_timestamp, utc_now

logger = logging.getLogger(__name__)

HEADER = "Motion Name,Timestamp,Accel_X,Accel_Y,Accel_Z,Gyro_X,Gyro_Y,Gyro_Z,Temperature"


def _quote(value: str) -> str:
    if any(c in value for c in ',"\r\n'):
        return '"' + value.replace('"', '""') + '"'
    return value


def encode(recordings: Iterable[RecordedMotion]) -> str:
    """Serialize motions to CSV text.

    One header row, then one row per sample; motions in recording order,
    samples in capture order. Rows are separated by ``\\n`` with no trailing
    newline.

    Raises:
        NothingToExport: ``recordings`` is empty.
    """
    motions = list(recordings)
    if not motions:
        raise NothingToExport()

    lines = [HEADER]
    for motion in motions:
        prefix = f"{_quote(motion.motion_name)},{motion.timestamp}"
        for sample in motion.data:
            lines.append(prefix + "," + ",".join(sample.to_csv_fields()))
    return "\n".join(lines)


def export_filename(now: Optional[datetime] = None) -> str:
    """``motion_data_<ISO-8601 timestamp with ':' replaced by '-'>.csv``."""
    stamp = iso_timestamp(now or utc_now()).replace(":", "-")
    return f"motion_data_{stamp}.csv"


def save_export(
    recordings: Iterable[RecordedMotion],
    directory: Path,
    now: Optional[datetime] = None,
) -> Path:
    """Encode ``recordings`` and write them to ``directory``."""
    text = encode(recordings)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / export_filename(now)
    try:
        with open(path, "w", newline="", encoding="utf-8") as f:
            f.write(text)
    except OSError as e:
        logger.error("Failed to write export file %s: %s", path, e)
        raise
    logger.info("Exported %d rows to %s", text.count("\n"), path)
    return path
