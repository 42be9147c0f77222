from __future__ import annotations

from datetime import datetime, timezone

import pytest

from motion_collector import export
from motion_collector.errors import NothingToExport
from motion_collector.recording import RecordedMotion
from motion_collector.wire_codec import SensorSample, Vector3

WALK = RecordedMotion(
    motion_name="walk",
    timestamp="2024-03-01T12:00:00.000Z",
    data=(
        SensorSample(Vector3(1, 2, 3), Vector3(0.1, 0.2, 0.3), 25.5),
        SensorSample(Vector3(1.5, 2.5, 3.5), Vector3(0.15, 0.25, 0.35), 25.6),
    ),
)
RUN = RecordedMotion(
    motion_name="run",
    timestamp="2024-03-01T12:00:10.000Z",
    data=(
        SensorSample(Vector3(-1, 0, 9.81), Vector3(0, 0, 0), 26.0),
    ),
)


def test_encode_rows_in_recording_order() -> None:
    text = export.encode([WALK, RUN])

    assert text.split("\n") == [
        export.HEADER,
        "walk,2024-03-01T12:00:00.000Z,1.0000,2.0000,3.0000,0.1000,0.2000,0.3000,25.50",
        "walk,2024-03-01T12:00:00.000Z,1.5000,2.5000,3.5000,0.1500,0.2500,0.3500,25.60",
        "run,2024-03-01T12:00:10.000Z,-1.0000,0.0000,9.8100,0.0000,0.0000,0.0000,26.00",
    ]
    assert not text.endswith("\n")


def test_encode_quotes_labels_with_separators() -> None:
    motion = RecordedMotion('arm "up", fast', WALK.timestamp, WALK.data[:1])

    row = export.encode([motion]).split("\n")[1]

    assert row.startswith('"arm ""up"", fast",2024-03-01T12:00:00.000Z,')


def test_encode_nothing_to_export() -> None:
    with pytest.raises(NothingToExport):
        export.encode([])


def test_export_filename() -> None:
    now = datetime(2024, 3, 1, 12, 30, 45, 500000, tzinfo=timezone.utc)

    assert export.export_filename(now) == "motion_data_2024-03-01T12-30-45.500Z.csv"


def test_save_export_writes_file(tmp_path) -> None:
    now = datetime(2024, 3, 1, 12, 30, 45, tzinfo=timezone.utc)

    path = export.save_export([WALK], tmp_path / "out", now=now)

    assert path.parent == tmp_path / "out"
    assert path.name == "motion_data_2024-03-01T12-30-45.000Z.csv"
    assert path.read_text(encoding="utf-8") == export.encode([WALK])


def test_save_export_nothing_to_export_creates_no_file(tmp_path) -> None:
    with pytest.raises(NothingToExport):
        export.save_export([], tmp_path)

    assert list(tmp_path.iterdir()) == []
