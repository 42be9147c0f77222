from __future__ import annotations

import pytest

from motion_collector.wire_codec import SensorSample, Vector3


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_sample(i: float = 0.0) -> SensorSample:
    return SensorSample(
        accel=Vector3(1.0 + i, 2.0 + i, 3.0 + i),
        gyro=Vector3(0.1 * i, 0.2 * i, 0.3 * i),
        temp=25.0 + i,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
