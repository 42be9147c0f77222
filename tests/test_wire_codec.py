from __future__ import annotations

import pytest

from motion_collector.errors import ParseError
from motion_collector.wire_codec import (
    CALIBRATE_COMMAND,
    SensorSample,
    Vector3,
    decode,
    encode_command,
)


def test_decode_maps_fields_in_order() -> None:
    sample = decode(b"1.0,2.0,3.0,0.1,0.2,0.3,25.5")

    assert sample == SensorSample(
        accel=Vector3(1.0, 2.0, 3.0),
        gyro=Vector3(0.1, 0.2, 0.3),
        temp=25.5,
    )


def test_decode_accepts_text_and_surrounding_whitespace() -> None:
    sample = decode(" -1.5 , 0 ,9.81, 10,-20, 30 , 24.75\r\n")

    assert sample is not None
    assert sample.accel == Vector3(-1.5, 0.0, 9.81)
    assert sample.gyro == Vector3(10.0, -20.0, 30.0)
    assert sample.temp == 24.75


def test_decode_ignores_fields_beyond_the_seventh() -> None:
    sample = decode(b"1,2,3,4,5,6,7,8,9")

    assert sample is not None
    assert sample.temp == 7.0


@pytest.mark.parametrize("frame", [b"", b"   ", b"\r\n", "\t"])
def test_empty_frames_decode_to_no_sample(frame) -> None:
    assert decode(frame) is None


@pytest.mark.parametrize(
    "frame",
    [
        b"1.0,2.0",
        b"1,2,3,4,5,6",
        b"1,2,3,4,5,abc,7",
        b"1,2,3,4,5,,7",
        b"1,2,3,nan,5,6,7",
        b"1,2,3,4,5,6,inf",
        b"1,2,3,4,5,6,-Infinity",
        b"\xff\xfe\x00garbage",
    ],
)
def test_malformed_frames_raise_parse_error(frame: bytes) -> None:
    with pytest.raises(ParseError):
        decode(frame)


def test_parse_error_carries_frame_text() -> None:
    with pytest.raises(ParseError) as excinfo:
        decode(b"1.0,2.0")

    assert excinfo.value.frame == "1.0,2.0"


def test_bad_frame_does_not_affect_next_frame() -> None:
    with pytest.raises(ParseError):
        decode(b"1,2,oops")

    assert decode(b"1,2,3,4,5,6,7") == SensorSample(
        accel=Vector3(1, 2, 3), gyro=Vector3(4, 5, 6), temp=7
    )


def test_to_csv_fields_precision() -> None:
    sample = SensorSample(accel=Vector3(1, 2.5, -3.14159), gyro=Vector3(0.1, 0.2, 0.3), temp=25.5)

    assert sample.to_csv_fields() == [
        "1.0000",
        "2.5000",
        "-3.1416",
        "0.1000",
        "0.2000",
        "0.3000",
        "25.50",
    ]


def test_encode_command() -> None:
    assert encode_command(CALIBRATE_COMMAND) == b"0"
    assert encode_command("Hello from Web") == b"Hello from Web"
    assert encode_command("café") == "café".encode("utf-8")


def test_encode_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        encode_command("")
