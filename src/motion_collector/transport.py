"""Radio transport seam for the IMU peripheral.

The rest of the package talks to the peripheral only through the
:class:`Transport` capability set: discovery by filter, GATT connect,
service/characteristic resolution, read/write of a single characteristic,
subscribe/unsubscribe to value-change notifications and a disconnect event.

Two implementations are provided:

- :class:`BleakTransport`: real BLE communication through the cross-platform
  ``bleak`` library.
- :class:`MockTransport`: a scripted peripheral used by the ``--mock`` mode and
  by the test-suite. Frames can be pushed by hand or generated from synthetic
  motion patterns.

Transport failures are translated into the :mod:`motion_collector.errors`
taxonomy here, so callers never see ``BleakError`` directly.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence, Union

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakDeviceNotFoundError, BleakError

from .errors import (
    IncompatibleDevice,
    LinkClosed,
    LinkError,
    NoAdapter,
    NotFound,
    TransportError,
    UserCancelled,
)

logger = logging.getLogger(__name__)

# GATT service / characteristic exposed by the IMU firmware
DEFAULT_SERVICE_UUID = "4fafc201-1fb5-459e-8fcc-c5c9c331914b"
DEFAULT_CHARACTERISTIC_UUID = "beb5483e-36e1-4688-b7f5-ea07361b26a8"
DEFAULT_DEVICE_NAME = "ESP32 IMU"

MATCH_SERVICE = "service"
MATCH_NAME = "name"
MATCH_ANY = "any"
MATCH_MODES = (MATCH_SERVICE, MATCH_NAME, MATCH_ANY)

NotificationCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[], None]


@dataclass(frozen=True)
class PeripheralHandle:
    """Identifier and human-readable name of the bonded peripheral."""

    address: str
    name: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name or 'Unknown'} ({self.address})"


Chooser = Callable[[Sequence[PeripheralHandle]], Optional[PeripheralHandle]]


@dataclass
class DeviceSelector:
    """Discovery filter and GATT endpoint configuration.

    Deployments disagree on how the peripheral is found (advertised service,
    exact name, or whatever the user picks), so the selector is configuration
    rather than a constant.

    Attributes:
        mode: ``"service"`` matches the advertised service UUID, ``"name"``
            matches the advertised name exactly, ``"any"`` accepts every device.
        service_uuid: Service holding the telemetry/command characteristic.
        characteristic_uuid: Characteristic used for notify and write.
        device_name: Name used by ``"name"`` mode.
        address: Known device address. When set, scanning is skipped.
        scan_timeout: Seconds to scan before giving up with ``NotFound``.
        chooser: Optional callback picking one of several candidates. Returning
            ``None`` means the user dismissed the choice (``UserCancelled``).
            Without a chooser the first candidate wins.
    """

    mode: str = MATCH_SERVICE
    service_uuid: str = DEFAULT_SERVICE_UUID
    characteristic_uuid: str = DEFAULT_CHARACTERISTIC_UUID
    device_name: str = DEFAULT_DEVICE_NAME
    address: Optional[str] = None
    scan_timeout: float = 10.0
    chooser: Optional[Chooser] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.mode not in MATCH_MODES:
            raise ValueError(f"Unknown match mode {self.mode!r}, expected one of {MATCH_MODES}")

    def matches(self, name: Optional[str], service_uuids: Optional[Iterable[str]]) -> bool:
        if self.mode == MATCH_ANY:
            return True
        if self.mode == MATCH_NAME:
            return name == self.device_name
        return any(u.lower() == self.service_uuid.lower() for u in service_uuids or [])

    def choose(self, candidates: Sequence[PeripheralHandle]) -> PeripheralHandle:
        """Pick the target among matching peripherals."""
        if not candidates:
            raise NotFound()
        if self.chooser is None:
            return candidates[0]
        picked = self.chooser(candidates)
        if picked is None:
            raise UserCancelled()
        return picked


class Transport(ABC):
    """Capability set the link manager needs from a radio stack.

    Implementations translate their own failures into :class:`LinkError`
    subclasses. ``on_disconnect`` passed to :meth:`connect` must be invoked
    whenever the link drops, including after :meth:`disconnect`; the link
    manager tells the two cases apart.
    """

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def discover(self, selector: DeviceSelector) -> PeripheralHandle:
        pass

    @abstractmethod
    async def connect(
        self, peripheral: PeripheralHandle, on_disconnect: DisconnectCallback
    ) -> None:
        pass

    @abstractmethod
    async def resolve(self, service_uuid: str, characteristic_uuid: str) -> None:
        """Check that the service and characteristic exist (``IncompatibleDevice`` if not)."""
        pass

    @abstractmethod
    async def start_notify(
        self, characteristic_uuid: str, callback: NotificationCallback
    ) -> None:
        pass

    @abstractmethod
    async def stop_notify(self, characteristic_uuid: str) -> None:
        pass

    @abstractmethod
    async def write(self, characteristic_uuid: str, data: bytes) -> None:
        pass

    @abstractmethod
    async def read(self, characteristic_uuid: str) -> bytes:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


async def _scan_ble_devices(
    timeout: float,
) -> dict[str, tuple[BLEDevice, AdvertisementData]]:
    """Scan for BLE devices and retrieve advertisement data.

    Raises:
        NoAdapter: If BLE scanning cannot be initialized (adapter missing,
            Bluetooth disabled, missing OS permissions).
    """
    try:
        # Bleak 0.22+ doesn't include metadata in BLEDevice objects.
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
        logger.debug("Scan completed: %d devices found", len(devices_adv))
        return devices_adv
    except (BleakError, OSError) as e:
        raise NoAdapter(
            f"BLE scanner initialization failed ({e}). Check that Bluetooth is "
            "enabled and that this process may access the adapter"
        ) from e


class BleakTransport(Transport):
    """:class:`Transport` backed by ``bleak``.

    Args:
        connect_timeout: Seconds ``BleakClient.connect`` may take before the
            attempt fails with ``TransportError``.
        write_with_response: Whether characteristic writes request a
            GATT write response.
    """

    def __init__(self, connect_timeout: float = 20.0, write_with_response: bool = True) -> None:
        self._client: Optional[BleakClient] = None
        self._connect_timeout = connect_timeout
        self._write_with_response = write_with_response

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def discover(self, selector: DeviceSelector) -> PeripheralHandle:
        if selector.address is not None:
            logger.info("Using configured device address: %s", selector.address)
            return PeripheralHandle(selector.address, None)

        logger.info(
            "BLE device discovery started: mode=%s name='%s' service='%s' timeout=%.1fs",
            selector.mode,
            selector.device_name,
            selector.service_uuid,
            selector.scan_timeout,
        )
        devices_adv = await _scan_ble_devices(selector.scan_timeout)

        candidates = []
        for dev, adv in devices_adv.values():
            logger.debug(
                "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
                dev.address,
                dev.name,
                getattr(adv, "rssi", None),
                adv.service_uuids,
            )
            if selector.matches(dev.name or adv.local_name, adv.service_uuids):
                candidates.append(PeripheralHandle(dev.address, dev.name or adv.local_name))

        picked = selector.choose(candidates)
        logger.info("Device selected: %s", picked)
        return picked

    async def connect(
        self, peripheral: PeripheralHandle, on_disconnect: DisconnectCallback
    ) -> None:
        def handle_disconnect(_: BleakClient) -> None:
            logger.warning("BLE connection lost (callback): %s", peripheral.address)
            on_disconnect()

        client = BleakClient(
            peripheral.address,
            disconnected_callback=handle_disconnect,
            timeout=self._connect_timeout,
        )
        logger.info("BLE connection starting: %s", peripheral.address)
        try:
            await client.connect()
        except BleakDeviceNotFoundError as e:
            raise NotFound(f"Device {peripheral.address} was not found") from e
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Connection to {peripheral.address} failed: {e}") from e

        if not client.is_connected:
            raise TransportError(f"Connection to {peripheral.address} failed")
        self._client = client
        logger.info("BLE connection established: %s", peripheral.address)

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise LinkClosed()
        return self._client

    async def resolve(self, service_uuid: str, characteristic_uuid: str) -> None:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            raise IncompatibleDevice(f"Service {service_uuid} not found on device")
        if service.get_characteristic(characteristic_uuid) is None:
            raise IncompatibleDevice(
                f"Characteristic {characteristic_uuid} not found in service {service_uuid}"
            )
        logger.info("Resolved characteristic %s", characteristic_uuid)

    async def start_notify(
        self, characteristic_uuid: str, callback: NotificationCallback
    ) -> None:
        client = self._require_client()
        logger.info("Starting notification subscription: char=%s", characteristic_uuid)
        try:
            await client.start_notify(characteristic_uuid, lambda _, data: callback(bytes(data)))
        except BleakError as e:
            raise TransportError(f"Subscribing to {characteristic_uuid} failed: {e}") from e

    async def stop_notify(self, characteristic_uuid: str) -> None:
        client = self._require_client()
        logger.info("Stopping notification subscription")
        try:
            await client.stop_notify(characteristic_uuid)
        except BleakError as e:
            raise TransportError(f"Unsubscribing from {characteristic_uuid} failed: {e}") from e

    async def write(self, characteristic_uuid: str, data: bytes) -> None:
        client = self._require_client()
        try:
            await client.write_gatt_char(
                characteristic_uuid, data, response=self._write_with_response
            )
        except BleakError as e:
            raise TransportError(f"Write to {characteristic_uuid} failed: {e}") from e

    async def read(self, characteristic_uuid: str) -> bytes:
        client = self._require_client()
        try:
            return bytes(await client.read_gatt_char(characteristic_uuid))
        except BleakError as e:
            raise TransportError(f"Read from {characteristic_uuid} failed: {e}") from e

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning("Error during BLE disconnect: %s", e)


class MockTransport(Transport):
    """Scripted peripheral for tests, development and demonstrations.

    Frames are delivered to the subscribed callback either by hand through
    :meth:`push`, or, when ``stream_interval`` is set, by a background task
    generating sinusoidal motion with noise (1g gravity offset on Z, slow
    thermal drift around room temperature).

    Args:
        name: Advertised name.
        address: Advertised address.
        service_uuid: Service the mock device exposes.
        characteristic_uuid: Characteristic the mock device exposes.
        advertised: When ``False`` discovery finds nothing (``NotFound``).
        stream_interval: Seconds between generated frames, ``None`` for manual
            delivery only.
        discover_error: Exception raised by :meth:`discover`, for failure
            injection (``NoAdapter``, ``UserCancelled``, ...).
        discover_delay: Seconds :meth:`discover` takes, like a real scan.
        fail_writes: Make every write fail with ``TransportError``.
        read_value: Value returned by :meth:`read`.
    """

    def __init__(
        self,
        *,
        name: str = DEFAULT_DEVICE_NAME,
        address: str = "00:11:22:33:44:55",
        service_uuid: str = DEFAULT_SERVICE_UUID,
        characteristic_uuid: str = DEFAULT_CHARACTERISTIC_UUID,
        advertised: bool = True,
        stream_interval: Optional[float] = None,
        discover_error: Optional[LinkError] = None,
        discover_delay: float = 0.0,
        fail_writes: bool = False,
        read_value: bytes = b"",
    ) -> None:
        self.peripheral = PeripheralHandle(address, name)
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid
        self.advertised = advertised
        self.discover_error = discover_error
        self.discover_delay = discover_delay
        self.fail_writes = fail_writes
        self.read_value = read_value
        self.written: list[bytes] = []

        self._stream_interval = stream_interval
        self._connected = False
        self._on_disconnect: Optional[DisconnectCallback] = None
        self._callback: Optional[NotificationCallback] = None
        self._generator: Optional[asyncio.Task[None]] = None
        self._start_time = time.time()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_notifying(self) -> bool:
        return self._callback is not None

    async def discover(self, selector: DeviceSelector) -> PeripheralHandle:
        if self.discover_delay > 0:
            await asyncio.sleep(self.discover_delay)
        if self.discover_error is not None:
            raise self.discover_error
        if selector.address is not None:
            if selector.address != self.peripheral.address:
                raise NotFound(f"Device {selector.address} was not found")
            return self.peripheral
        candidates = []
        if self.advertised and selector.matches(self.peripheral.name, [self.service_uuid]):
            candidates.append(self.peripheral)
        return selector.choose(candidates)

    async def connect(
        self, peripheral: PeripheralHandle, on_disconnect: DisconnectCallback
    ) -> None:
        if peripheral.address != self.peripheral.address:
            raise NotFound(f"Device {peripheral.address} was not found")
        self._connected = True
        self._on_disconnect = on_disconnect

    async def resolve(self, service_uuid: str, characteristic_uuid: str) -> None:
        if not self._connected:
            raise LinkClosed()
        if service_uuid.lower() != self.service_uuid.lower():
            raise IncompatibleDevice(f"Service {service_uuid} not found on device")
        if characteristic_uuid.lower() != self.characteristic_uuid.lower():
            raise IncompatibleDevice(
                f"Characteristic {characteristic_uuid} not found in service {service_uuid}"
            )

    async def start_notify(
        self, characteristic_uuid: str, callback: NotificationCallback
    ) -> None:
        if not self._connected:
            raise LinkClosed()
        self._callback = callback
        self._start_time = time.time()
        if self._stream_interval is not None and self._generator is None:
            self._generator = asyncio.get_running_loop().create_task(self._generate())

    async def stop_notify(self, characteristic_uuid: str) -> None:
        self._callback = None
        self._stop_generator()

    async def write(self, characteristic_uuid: str, data: bytes) -> None:
        if not self._connected:
            raise LinkClosed()
        if self.fail_writes:
            raise TransportError("Simulated write failure")
        self.written.append(bytes(data))

    async def read(self, characteristic_uuid: str) -> bytes:
        if not self._connected:
            raise LinkClosed()
        return self.read_value

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._drop_link()

    def push(self, frame: Union[bytes, str]) -> None:
        """Deliver one notification to the subscriber, if any."""
        if self._callback is None:
            return
        payload = frame.encode("utf-8") if isinstance(frame, str) else bytes(frame)
        self._callback(payload)

    def simulate_disconnect(self) -> None:
        """Drop the link as if the peripheral went away (out of range, power loss)."""
        if self._connected:
            self._drop_link()

    def _drop_link(self) -> None:
        self._connected = False
        self._callback = None
        self._stop_generator()
        on_disconnect, self._on_disconnect = self._on_disconnect, None
        if on_disconnect is not None:
            on_disconnect()

    def _stop_generator(self) -> None:
        if self._generator is not None:
            self._generator.cancel()
            self._generator = None

    def synthetic_frame(self, elapsed: float) -> str:
        ax = 0.5 * math.sin(2 * math.pi * 0.5 * elapsed) + random.gauss(0, 0.1)
        ay = 0.3 * math.cos(2 * math.pi * 0.3 * elapsed) + random.gauss(0, 0.1)
        az = 1.0 + 0.2 * math.sin(2 * math.pi * 0.1 * elapsed) + random.gauss(0, 0.05)

        gx = 10.0 * math.sin(2 * math.pi * 0.8 * elapsed) + random.gauss(0, 2.0)
        gy = 15.0 * math.cos(2 * math.pi * 0.6 * elapsed) + random.gauss(0, 2.0)
        gz = 5.0 * math.sin(2 * math.pi * 0.4 * elapsed) + random.gauss(0, 1.0)

        temp = 25.0 + 3.0 * math.sin(2 * math.pi * 0.01 * elapsed) + random.gauss(0, 0.5)
        return f"{ax:.4f},{ay:.4f},{az:.4f},{gx:.4f},{gy:.4f},{gz:.4f},{temp:.2f}"

    async def _generate(self) -> None:
        assert self._stream_interval is not None
        try:
            while self._callback is not None:
                self.push(self.synthetic_frame(time.time() - self._start_time))
                await asyncio.sleep(self._stream_interval)
        except asyncio.CancelledError:
            pass
