"""Link manager: owns the connection to the IMU peripheral.

The manager drives the discovery → connect → service/characteristic
resolution → subscribe lifecycle over a :class:`~motion_collector.transport.Transport`
and is the only component allowed to change the :class:`ConnectionState`.

State machine::

    DISCONNECTED --discover_and_connect()--> SCANNING --ok--> CONNECTED
         ^                                      |                 |
         +--------------- failure --------------+                 |
         +------------ disconnect() / peripheral lost ------------+

There is no reconnecting state. Reconnection is a fresh discovery cycle.

Key behaviours:

1. **No half-connected state**: any failure during discovery, connection or
   resolution tears the transport down and reports ``DISCONNECTED`` before the
   error reaches the caller.
2. **Stale handles**: every successful connection gets a new generation
   number. A :class:`ChannelHandle` from an earlier generation fails with
   ``LinkClosed``.
3. **Per-frame error isolation**: notifications are decoded by the wire codec;
   a malformed frame is logged, counted and reported, and the subscription
   carries on.
4. **Disconnect classification**: listeners receive a :class:`DisconnectEvent`
   telling caller-initiated disconnects apart from the peripheral going away.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from . import wire_codec
from .errors import LinkClosed, LinkError, ParseError, TransportError, UserCancelled
from .transport import DeviceSelector, PeripheralHandle, Transport
from .wire_codec import SensorSample

logger = logging.getLogger(__name__)

__all__ = [
    "ChannelHandle",
    "ConnectionState",
    "DeviceSelector",
    "DisconnectEvent",
    "LinkManager",
    "PeripheralHandle",
]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ChannelHandle:
    """Writable/subscribable endpoint resolved after connection."""

    service_uuid: str
    characteristic_uuid: str
    generation: int


@dataclass(frozen=True)
class DisconnectEvent:
    """Emitted once per lost link.

    Attributes:
        peripheral: The peripheral that was connected.
        unexpected: ``True`` when the peripheral dropped the link on its own,
            ``False`` for a caller-initiated :meth:`LinkManager.disconnect`.
    """

    peripheral: Optional[PeripheralHandle]
    unexpected: bool


SampleCallback = Callable[[SensorSample, float], None]
DecodeErrorCallback = Callable[[ParseError], None]
StateListener = Callable[[ConnectionState], None]
DisconnectListener = Callable[[DisconnectEvent], None]


class LinkManager:
    """Connection lifecycle for a single peripheral.

    Args:
        transport: Radio transport implementation.
        selector: Discovery filter and GATT endpoint configuration.
        clock: Monotonic clock used to stamp notification arrival times.
    """

    def __init__(
        self,
        transport: Transport,
        selector: Optional[DeviceSelector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._selector = selector or DeviceSelector()
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._peripheral: Optional[PeripheralHandle] = None
        self._channel: Optional[ChannelHandle] = None
        self._generation = 0
        self._attempt = 0
        self._closing = False
        self._calibrated = False
        self._subscribed = False

        self._state_listeners: list[StateListener] = []
        self._disconnect_listeners: list[DisconnectListener] = []

        self.decode_errors = 0
        self.notifications_received = 0

    # -- observation ---------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def peripheral(self) -> Optional[PeripheralHandle]:
        return self._peripheral

    @property
    def channel(self) -> Optional[ChannelHandle]:
        return self._channel

    @property
    def selector(self) -> DeviceSelector:
        return self._selector

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_calibrated(self) -> bool:
        return self._calibrated

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info("Connection state: %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    def _emit_disconnect(self, event: DisconnectEvent) -> None:
        for listener in list(self._disconnect_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Disconnect listener failed")

    # -- lifecycle -----------------------------------------------------

    async def discover_and_connect(self) -> PeripheralHandle:
        """Find the peripheral, connect, and resolve the telemetry channel.

        Discovery, connection and resolution are awaited one after the other.
        No timeout is enforced here beyond the scan timeout and the transport's
        own connection timeout.

        Returns:
            Handle of the connected peripheral. The resolved channel is
            available as :attr:`channel`.

        Raises:
            UserCancelled: The chooser dismissed the candidate list, or
                :meth:`disconnect` was called before the connection completed.
            NoAdapter: The radio stack is unavailable.
            NotFound: No advertising device matched the selector.
            IncompatibleDevice: The device lacks the configured service or
                characteristic.
            TransportError: Connection failed, or a link is already active.
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise TransportError(
                f"Cannot connect while {self._state.value}; disconnect first"
            )

        self._attempt += 1
        attempt = self._attempt
        self._set_state(ConnectionState.SCANNING)
        try:
            peripheral = await self._transport.discover(self._selector)
            self._check_attempt(attempt)
            self._peripheral = peripheral
            self._closing = False
            await self._transport.connect(peripheral, self._handle_transport_disconnect)
            self._check_attempt(attempt)
            await self._transport.resolve(
                self._selector.service_uuid, self._selector.characteristic_uuid
            )
            self._check_attempt(attempt)
        except LinkError as e:
            logger.error("Connection failed: %s", e)
            await self._teardown(attempt)
            raise
        except asyncio.CancelledError:
            if attempt == self._attempt:
                self._invalidate()
                self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            logger.error("Connection failed: %s: %s", type(e).__name__, e)
            await self._teardown(attempt)
            raise TransportError(f"Connection failed: {e}") from e

        self._generation += 1
        self._channel = ChannelHandle(
            service_uuid=self._selector.service_uuid,
            characteristic_uuid=self._selector.characteristic_uuid,
            generation=self._generation,
        )
        self._calibrated = False
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", peripheral)
        return peripheral

    def _check_attempt(self, attempt: int) -> None:
        if attempt != self._attempt:
            raise UserCancelled("Connection attempt cancelled by disconnect")

    async def _teardown(self, attempt: int) -> None:
        # A newer attempt owns the transport
        if attempt != self._attempt and self._state is not ConnectionState.DISCONNECTED:
            return
        self._closing = True
        try:
            await self._transport.disconnect()
        except LinkError as e:
            logger.warning("Error while tearing down link: %s", e)
        self._invalidate()
        self._set_state(ConnectionState.DISCONNECTED)

    def _invalidate(self) -> None:
        self._channel = None
        self._peripheral = None
        self._calibrated = False
        self._subscribed = False

    def _check_channel(self, channel: ChannelHandle) -> None:
        current = self._channel
        if (
            current is None
            or channel.generation != current.generation
            or self._state is not ConnectionState.CONNECTED
        ):
            raise LinkClosed()

    async def subscribe(
        self,
        channel: ChannelHandle,
        on_sample: SampleCallback,
        on_decode_error: Optional[DecodeErrorCallback] = None,
    ) -> None:
        """Start notifications and forward decoded samples.

        Every notification is stamped with its arrival time, passed through the
        wire codec, and forwarded as ``on_sample(sample, received_at)``. Empty
        frames produce nothing. Malformed frames are logged, counted in
        :attr:`decode_errors`, handed to ``on_decode_error`` and otherwise
        ignored.

        Raises:
            LinkClosed: ``channel`` is stale or the link is down.
            TransportError: The transport refused the subscription.
        """
        self._check_channel(channel)

        def handle(data: bytes) -> None:
            received_at = self._clock()
            self.notifications_received += 1
            try:
                sample = wire_codec.decode(data)
            except ParseError as e:
                self.decode_errors += 1
                logger.warning("Frame decode failed: %s", e)
                if on_decode_error is not None:
                    try:
                        on_decode_error(e)
                    except Exception:
                        logger.exception("Decode error callback failed")
                return
            if sample is None:
                logger.debug("Skipping empty frame")
                return
            on_sample(sample, received_at)

        await self._transport.start_notify(channel.characteristic_uuid, handle)
        self._subscribed = True

    async def write(self, channel: ChannelHandle, data: bytes) -> None:
        """Write raw bytes to the channel.

        Raises:
            LinkClosed: ``channel`` is stale or the link is down.
            TransportError: The transport write failed.
        """
        self._check_channel(channel)
        try:
            await self._transport.write(channel.characteristic_uuid, data)
        except LinkError:
            raise
        except Exception as e:
            raise TransportError(f"Write failed: {e}") from e
        logger.debug("Wrote %d bytes to %s", len(data), channel.characteristic_uuid)

    async def read(self, channel: ChannelHandle) -> bytes:
        self._check_channel(channel)
        try:
            return await self._transport.read(channel.characteristic_uuid)
        except LinkError:
            raise
        except Exception as e:
            raise TransportError(f"Read failed: {e}") from e

    async def send_command(self, command: str) -> None:
        """Encode ``command`` and write it to the current channel."""
        if self._channel is None:
            raise LinkClosed()
        await self.write(self._channel, wire_codec.encode_command(command))
        logger.info("Command sent: %r", command)

    async def calibrate(self) -> None:
        """Send the calibration trigger; a successful write marks the link calibrated."""
        await self.send_command(wire_codec.CALIBRATE_COMMAND)
        self._calibrated = True

    async def disconnect(self) -> None:
        """Tear the link down. No-op when already disconnected.

        A pending :meth:`discover_and_connect` is abandoned and fails with
        ``UserCancelled`` instead of completing the connection.
        """
        if self._state is ConnectionState.DISCONNECTED:
            return

        peripheral = self._peripheral
        self._attempt += 1
        self._closing = True
        if self._subscribed and self._channel is not None:
            try:
                await self._transport.stop_notify(self._channel.characteristic_uuid)
            except LinkError as e:
                logger.warning("Error stopping notifications: %s", e)
        try:
            await self._transport.disconnect()
        except LinkError as e:
            logger.warning("Error during disconnect: %s", e)

        self._invalidate()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", peripheral)
        self._emit_disconnect(DisconnectEvent(peripheral=peripheral, unexpected=False))

    def _handle_transport_disconnect(self) -> None:
        if self._closing or self._state is ConnectionState.DISCONNECTED:
            return
        peripheral = self._peripheral
        logger.warning("Peripheral disconnected unexpectedly: %s", peripheral)
        self._invalidate()
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit_disconnect(DisconnectEvent(peripheral=peripheral, unexpected=True))
