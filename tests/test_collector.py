from __future__ import annotations

import asyncio

import pytest

from motion_collector.collector import MotionCollector
from motion_collector.errors import (
    NotCalibrated,
    NotFound,
    NothingToExport,
    SessionAborted,
)
from motion_collector.link_manager import ConnectionState
from motion_collector.recording import SessionState
from motion_collector.transport import MockTransport

FRAME = "1.0,2.0,3.0,0.1,0.2,0.3,25.5"


def _collector(transport: MockTransport, clock) -> MotionCollector:
    return MotionCollector(transport, duration=5.0, tick_interval=60.0, grace_period=0, clock=clock)


def test_record_and_export(clock) -> None:
    transport = MockTransport()
    collector = _collector(transport, clock)
    assert collector.received_text == ""

    async def scenario():
        await collector.connect()
        await collector.calibrate()
        await collector.start_recording("walk")
        for _ in range(3):
            clock.advance(0.05)
            transport.push(FRAME)
        transport.push("garbage")
        clock.advance(0.05)
        return await collector.stop_recording()

    motion = asyncio.run(scenario())

    assert transport.written == [b"0"]
    assert motion.sample_count == 3
    status = collector.status()
    assert status.connection_state is ConnectionState.CONNECTED
    assert status.session_state is SessionState.CLOSED
    assert status.recordings == 1
    assert status.decode_errors == 1
    assert status.stream.decode_errors == 1
    assert status.latest is not None
    assert status.last_error is None
    assert collector.received_text == "1.0000,2.0000,3.0000,0.1000,0.2000,0.3000,25.50"

    lines = collector.export_csv().split("\n")
    assert len(lines) == 4
    assert lines[1].startswith("walk,")


def test_recording_requires_calibration(clock) -> None:
    collector = _collector(MockTransport(), clock)
    messages = []
    collector.add_error_listener(messages.append)

    async def scenario():
        await collector.connect()
        await collector.start_recording("walk")

    with pytest.raises(NotCalibrated):
        asyncio.run(scenario())

    assert collector.last_error == NotCalibrated.message
    assert messages == [NotCalibrated.message]
    assert collector.session.state is SessionState.IDLE


def test_connect_failure_is_reported_and_cleared_on_success(clock) -> None:
    transport = MockTransport(advertised=False)
    collector = _collector(transport, clock)

    with pytest.raises(NotFound):
        asyncio.run(collector.connect())
    assert collector.last_error == NotFound.message
    assert collector.link.state is ConnectionState.DISCONNECTED

    transport.advertised = True
    asyncio.run(collector.connect())
    assert collector.last_error is None


def test_disconnect_during_recording_aborts(clock) -> None:
    transport = MockTransport()
    collector = _collector(transport, clock)

    async def scenario():
        await collector.connect()
        await collector.calibrate()
        await collector.start_recording("walk")
        transport.push(FRAME)
        await collector.stop_recording()

        await collector.start_recording("run")
        clock.advance(0.1)
        transport.push(FRAME)
        transport.simulate_disconnect()

    asyncio.run(scenario())

    assert collector.session.state is SessionState.IDLE
    assert [m.motion_name for m in collector.recordings] == ["walk"]
    assert collector.last_error == SessionAborted.message
    assert collector.stream.latest is None
    assert collector.link.state is ConnectionState.DISCONNECTED


def test_unexpected_disconnect_when_idle(clock) -> None:
    transport = MockTransport()
    collector = _collector(transport, clock)

    asyncio.run(collector.connect())
    transport.simulate_disconnect()

    assert collector.last_error == "Device disconnected"


def test_caller_disconnect_is_not_an_error(clock) -> None:
    collector = _collector(MockTransport(), clock)

    async def scenario():
        await collector.connect()
        await collector.disconnect()

    asyncio.run(scenario())

    assert collector.last_error is None
    assert collector.link.state is ConnectionState.DISCONNECTED


def test_send_test_message(clock) -> None:
    transport = MockTransport()
    collector = _collector(transport, clock)

    async def scenario():
        await collector.connect()
        await collector.send_test_message()

    asyncio.run(scenario())

    assert transport.written == [b"Hello from Web"]


def test_export_without_recordings(clock, tmp_path) -> None:
    collector = _collector(MockTransport(), clock)

    with pytest.raises(NothingToExport):
        collector.export_csv()
    assert collector.last_error == NothingToExport.message

    with pytest.raises(NothingToExport):
        collector.save_export(tmp_path)


def test_save_export_and_discard(clock, tmp_path) -> None:
    transport = MockTransport()
    collector = _collector(transport, clock)

    async def scenario():
        await collector.connect()
        await collector.calibrate()
        await collector.start_recording("walk")
        transport.push(FRAME)
        await collector.stop_recording()

    asyncio.run(scenario())
    path = collector.save_export(tmp_path, discard=True)

    assert path.exists()
    assert path.read_text(encoding="utf-8").count("\n") == 1
    assert len(collector.recordings) == 0
