from __future__ import annotations

import asyncio
import time

import pytest

from motion_collector.errors import (
    IncompatibleDevice,
    LinkClosed,
    NoAdapter,
    NotFound,
    ParseError,
    TransportError,
    UserCancelled,
)
from motion_collector.link_manager import ConnectionState, LinkManager
from motion_collector.transport import MATCH_ANY, MATCH_NAME, DeviceSelector, MockTransport

GOOD_FRAME = "1.0,2.0,3.0,0.1,0.2,0.3,25.5"


def _manager(transport: MockTransport, selector=None, clock=time.monotonic):
    link = LinkManager(transport, selector, clock=clock)
    states = []
    events = []
    link.add_state_listener(states.append)
    link.add_disconnect_listener(events.append)
    return link, states, events


def test_connect_resolves_channel() -> None:
    transport = MockTransport()
    link, states, _ = _manager(transport)

    peripheral = asyncio.run(link.discover_and_connect())

    assert peripheral == transport.peripheral
    assert link.state is ConnectionState.CONNECTED
    assert link.channel is not None
    assert link.channel.characteristic_uuid == transport.characteristic_uuid
    assert states == [ConnectionState.SCANNING, ConnectionState.CONNECTED]
    assert not link.is_calibrated


def test_connect_by_name_and_address() -> None:
    transport = MockTransport(name="Bench IMU")

    link, _, _ = _manager(transport, DeviceSelector(mode=MATCH_NAME, device_name="Bench IMU"))
    asyncio.run(link.discover_and_connect())
    assert link.is_connected

    link, _, _ = _manager(MockTransport(), DeviceSelector(address="00:11:22:33:44:55"))
    asyncio.run(link.discover_and_connect())
    assert link.is_connected


@pytest.mark.parametrize(
    "transport, selector, error",
    [
        (MockTransport(advertised=False), None, NotFound),
        (MockTransport(name="Other"), DeviceSelector(mode=MATCH_NAME), NotFound),
        (MockTransport(discover_error=NoAdapter()), None, NoAdapter),
        (MockTransport(), DeviceSelector(chooser=lambda candidates: None), UserCancelled),
        (MockTransport(service_uuid="0000180d-0000-1000-8000-00805f9b34fb"), DeviceSelector(mode=MATCH_ANY), IncompatibleDevice),
        (MockTransport(characteristic_uuid="00002a37-0000-1000-8000-00805f9b34fb"), None, IncompatibleDevice),
    ],
)
def test_connect_failures_leave_link_disconnected(transport, selector, error) -> None:
    link, states, events = _manager(transport, selector)

    with pytest.raises(error):
        asyncio.run(link.discover_and_connect())

    assert link.state is ConnectionState.DISCONNECTED
    assert link.channel is None
    assert not transport.is_connected
    assert states == [ConnectionState.SCANNING, ConnectionState.DISCONNECTED]
    assert events == []


def test_connect_twice_is_rejected() -> None:
    link, _, _ = _manager(MockTransport())

    async def scenario():
        await link.discover_and_connect()
        with pytest.raises(TransportError):
            await link.discover_and_connect()

    asyncio.run(scenario())
    assert link.is_connected


def test_notifications_are_decoded_and_stamped(clock) -> None:
    transport = MockTransport()
    link, _, _ = _manager(transport, clock=clock)
    received = []
    errors = []

    async def scenario():
        await link.discover_and_connect()
        await link.subscribe(
            link.channel, lambda s, t: received.append((s, t)), errors.append
        )

    asyncio.run(scenario())
    transport.push(GOOD_FRAME)
    clock.advance(0.5)
    transport.push("not,a,frame")
    transport.push(b"")
    clock.advance(0.5)
    transport.push(GOOD_FRAME + "\n")

    assert [t for _, t in received] == [100.0, 101.0]
    assert received[0][0].temp == 25.5
    assert len(errors) == 1
    assert isinstance(errors[0], ParseError)
    assert link.decode_errors == 1
    assert link.notifications_received == 4
    assert link.is_connected


def test_calibrate_writes_command() -> None:
    transport = MockTransport()
    link, _, _ = _manager(transport)

    async def scenario():
        await link.discover_and_connect()
        await link.calibrate()
        await link.send_command("Hello from Web")

    asyncio.run(scenario())
    assert transport.written == [b"0", b"Hello from Web"]
    assert link.is_calibrated


def test_failed_calibration_write_is_reported() -> None:
    transport = MockTransport(fail_writes=True)
    link, _, _ = _manager(transport)

    async def scenario():
        await link.discover_and_connect()
        with pytest.raises(TransportError):
            await link.calibrate()

    asyncio.run(scenario())
    assert not link.is_calibrated
    assert link.is_connected


def test_read_returns_characteristic_value() -> None:
    link, _, _ = _manager(MockTransport(read_value=b"fw-1.2"))

    async def scenario():
        await link.discover_and_connect()
        return await link.read(link.channel)

    assert asyncio.run(scenario()) == b"fw-1.2"


def test_stale_channel_is_closed() -> None:
    link, _, _ = _manager(MockTransport())

    async def scenario():
        await link.discover_and_connect()
        old = link.channel
        await link.disconnect()
        with pytest.raises(LinkClosed):
            await link.write(old, b"0")
        with pytest.raises(LinkClosed):
            await link.calibrate()

        await link.discover_and_connect()
        assert link.channel.generation > old.generation
        with pytest.raises(LinkClosed):
            await link.write(old, b"0")
        await link.write(link.channel, b"0")

    asyncio.run(scenario())


def test_caller_disconnect_is_expected_and_idempotent() -> None:
    transport = MockTransport()
    link, states, events = _manager(transport)

    async def scenario():
        await link.discover_and_connect()
        await link.subscribe(link.channel, lambda s, t: None)
        await link.disconnect()
        await link.disconnect()

    asyncio.run(scenario())
    assert link.state is ConnectionState.DISCONNECTED
    assert not transport.is_connected
    assert not transport.is_notifying
    assert len(events) == 1
    assert events[0].unexpected is False
    assert events[0].peripheral == transport.peripheral
    assert states[-1] is ConnectionState.DISCONNECTED


def test_peripheral_loss_is_unexpected() -> None:
    transport = MockTransport()
    link, _, events = _manager(transport)

    async def scenario():
        await link.discover_and_connect()
        await link.calibrate()

    asyncio.run(scenario())
    transport.simulate_disconnect()

    assert link.state is ConnectionState.DISCONNECTED
    assert link.channel is None
    assert not link.is_calibrated
    assert [e.unexpected for e in events] == [True]


def test_disconnect_while_scanning_abandons_connection() -> None:
    transport = MockTransport(discover_delay=0.05)
    link, states, events = _manager(transport)

    async def scenario():
        connecting = asyncio.ensure_future(link.discover_and_connect())
        await asyncio.sleep(0.01)
        assert link.state is ConnectionState.SCANNING
        await link.disconnect()
        assert link.state is ConnectionState.DISCONNECTED
        with pytest.raises(UserCancelled):
            await connecting

    asyncio.run(scenario())

    assert link.state is ConnectionState.DISCONNECTED
    assert link.channel is None
    assert not transport.is_connected
    assert states == [ConnectionState.SCANNING, ConnectionState.DISCONNECTED]
    assert [e.unexpected for e in events] == [False]

    asyncio.run(link.discover_and_connect())
    assert link.is_connected


def test_failing_listeners_do_not_break_the_link() -> None:
    transport = MockTransport()
    link = LinkManager(transport)
    states = []
    events = []

    def broken(_):
        raise RuntimeError("listener failed")

    link.add_state_listener(broken)
    link.add_state_listener(states.append)
    link.add_disconnect_listener(broken)
    link.add_disconnect_listener(events.append)

    async def scenario():
        await link.discover_and_connect()
        await link.calibrate()

    asyncio.run(scenario())
    assert link.is_connected
    assert link.is_calibrated

    transport.simulate_disconnect()

    assert link.state is ConnectionState.DISCONNECTED
    assert states == [
        ConnectionState.SCANNING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    ]
    assert [e.unexpected for e in events] == [True]
