from __future__ import annotations

import time

from motion_collector.collector import MotionCollector
from motion_collector.dashboard import create_app
from motion_collector.dashboard.app import ACTIONS
from motion_collector.dashboard.plots import create_motion_plot, format_sample
from motion_collector.recording import RecordedMotion
from motion_collector.transport import MockTransport

from conftest import make_sample


def test_format_sample() -> None:
    assert format_sample(None) == "No data"
    assert format_sample(make_sample(0)) == (
        "Accel: 1.00, 2.00, 3.00 | Gyro: 0.00, 0.00, 0.00 | Temp: 25.0°C"
    )


def test_motion_plot_placeholder() -> None:
    fig = create_motion_plot(None)

    assert len(fig.data) == 0
    assert fig.layout.annotations[0].text == "No recorded motion yet"


def test_motion_plot_traces() -> None:
    motion = RecordedMotion("walk", "2024-03-01T12:00:00.000Z", tuple(make_sample(i) for i in range(5)))

    fig = create_motion_plot(motion)

    assert [t.name for t in fig.data] == [
        "Accel X",
        "Accel Y",
        "Accel Z",
        "Gyro X",
        "Gyro Y",
        "Gyro Z",
        "Temperature",
    ]
    assert list(fig.data[0].y) == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert "walk" in fig.layout.title.text


def test_render_status_when_disconnected() -> None:
    dashboard = create_app(MotionCollector(MockTransport()))

    outputs = dashboard.render_status(dashboard.collector.status())

    assert len(outputs) == 7 + 2 * len(ACTIONS)
    disabled = dict(zip(ACTIONS, outputs[7 : 7 + len(ACTIONS)]))
    assert disabled["connect-btn"] is False
    assert disabled["disconnect-btn"] is True
    assert disabled["start-recording-btn"] is True
    assert outputs[2] == "No data"
    assert outputs[6] == ""


def test_actions_drive_collector_on_background_loop() -> None:
    collector = MotionCollector(MockTransport(stream_interval=0.01), grace_period=0)
    dashboard = create_app(collector, action_timeout=5.0)
    dashboard.start()
    try:
        assert dashboard.perform_action("start-recording-btn", "walk", 5) == "error:start-recording-btn"
        assert dashboard.perform_action("connect-btn", None, None) == "ok:connect-btn"
        assert dashboard.perform_action("start-recording-btn", "", 5) == "error:start-recording-btn"
        assert dashboard.perform_action("calibrate-btn", None, None) == "ok:calibrate-btn"
        assert dashboard.perform_action("start-recording-btn", "walk", 5) == "ok:start-recording-btn"
        time.sleep(0.2)
        assert dashboard.perform_action("stop-recording-btn", None, None) == "ok:stop-recording-btn"
        assert dashboard.perform_action("unknown-btn", None, None) == "idle"

        outputs = dashboard.render_status(collector.status())
        disabled = dict(zip(ACTIONS, outputs[7 : 7 + len(ACTIONS)]))
        assert disabled["connect-btn"] is True
        assert disabled["clear-recordings-btn"] is False
        assert len(collector.recordings) == 1
        assert collector.recordings.snapshot()[0].sample_count > 0
    finally:
        dashboard.stop()

    assert not collector.link.is_connected


def test_motion_figure_is_rebuilt_only_for_new_motions() -> None:
    collector = MotionCollector(MockTransport())
    dashboard = create_app(collector)

    empty = dashboard.motion_figure()
    assert dashboard.motion_figure() is empty

    collector.recordings.append(RecordedMotion("walk", "2024-03-01T12:00:00.000Z", (make_sample(1),)))
    walk = dashboard.motion_figure()
    assert walk is not empty
    assert dashboard.motion_figure() is walk
    assert "walk" in walk.layout.title.text

    collector.clear_recordings()
    assert len(dashboard.motion_figure().data) == 0
