"""GATT transport abstraction and its bleak implementation.

The protocol core only needs four operations against named characteristics:
read, write, subscribe and unsubscribe. Transport defines them and serializes
every operation per characteristic, because the BLE stack does not multiplex
concurrent requests on one characteristic reliably. BleakTransport adapts a
connected bleak client; MockSensorTransport (see mock.py) simulates a device.

Device discovery follows the same name-then-service matching used across our
BLE tools.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .errors import CharacteristicUnavailable, TransportDisconnected, TransportError

logger = logging.getLogger(__name__)


def _uuid16(short: str) -> str:
    return f"0000{short}-0000-1000-8000-00805f9b34fb"


SERVICE_UUID = _uuid16("1111")
MEASUREMENT_CHAR = _uuid16("2222")  # Notify: live 30-byte measurement
SET_TIME_CHAR = _uuid16("4444")  # Write: 4-byte BE epoch seconds
SLEEP_CONTROL_CHAR = _uuid16("5555")  # Write: 0x4E sleep on, 0x46 sleep off
LOG_READ_CHAR = _uuid16("7777")  # Read/write: historical log packets

SLEEP_ON = b"\x4e"
SLEEP_OFF = b"\x46"

NotificationCallback = Callable[[bytes], None]


@dataclass(frozen=True)
class SensorProfile:
    """Characteristic UUIDs of one sensor model."""

    service: str = SERVICE_UUID
    measurement: str = MEASUREMENT_CHAR
    log_read: str = LOG_READ_CHAR
    set_time: str = SET_TIME_CHAR
    sleep_control: str = SLEEP_CONTROL_CHAR


class Transport(ABC):
    """Serialized access to the characteristics of one connected device.

    Subclasses implement the underscored primitives. The public methods hold a
    per-characteristic asyncio.Lock for the duration of each operation, so a
    caller never has two requests in flight against the same characteristic.

    Disconnect listeners registered with add_disconnect_listener() are called
    once when the implementation reports that the link is gone.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._disconnect_listeners: list[Callable[[], None]] = []

    def _lock_for(self, uuid: str) -> asyncio.Lock:
        key = uuid.lower()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the link is currently usable."""

    @abstractmethod
    def has_characteristic(self, uuid: str) -> bool:
        """Look the UUID up in the resolved GATT services.

        A lookup error (services not yet resolved, ambiguous UUID) counts as
        missing.
        """
        """Whether the device exposes the given characteristic."""

    def require(self, uuid: str, role: str = "") -> None:
        """Raise CharacteristicUnavailable unless ``uuid`` is exposed."""
        if not self.has_characteristic(uuid):
            raise CharacteristicUnavailable(uuid, role)

    async def read(self, uuid: str) -> bytes:
        async with self._lock_for(uuid):
            return await self._read(uuid)

    async def write(self, uuid: str, data: bytes) -> None:
        async with self._lock_for(uuid):
            await self._write(uuid, data)

    async def subscribe(self, uuid: str, callback: NotificationCallback) -> None:
        async with self._lock_for(uuid):
            await self._subscribe(uuid, callback)

    async def unsubscribe(self, uuid: str) -> None:
        async with self._lock_for(uuid):
            await self._unsubscribe(uuid)

    def add_disconnect_listener(self, listener: Callable[[], None]) -> None:
        self._disconnect_listeners.append(listener)

    def remove_disconnect_listener(self, listener: Callable[[], None]) -> None:
        try:
            self._disconnect_listeners.remove(listener)
        except ValueError:
            pass

    def _notify_disconnected(self) -> None:
        for listener in list(self._disconnect_listeners):
            try:
                listener()
            except Exception:
                logger.exception("Disconnect listener failed")

    @abstractmethod
    async def _read(self, uuid: str) -> bytes: ...

    @abstractmethod
    async def _write(self, uuid: str, data: bytes) -> None: ...

    @abstractmethod
    async def _subscribe(self, uuid: str, callback: NotificationCallback) -> None: ...

    @abstractmethod
    async def _unsubscribe(self, uuid: str) -> None: ...


class BleakTransport(Transport):
    """Transport over a connected bleak.BleakClient.

    bleak and OS level failures surface as TransportError, or as
    TransportDisconnected once the client has lost its connection.
    """

    def __init__(self, client: BleakClient) -> None:
        super().__init__()
        self._client = client
        self._disconnected = False

    @property
    def address(self) -> str:
        return self._client.address

    @property
    def is_connected(self) -> bool:
        return not self._disconnected and self._client.is_connected

    def handle_disconnect(self) -> None:
        """BleakClient disconnected_callback target. Notifies listeners once."""
        if self._disconnected:
            return
        self._disconnected = True
        logger.warning("BLE connection lost: %s", self._client.address)
        self._notify_disconnected()

    def has_characteristic(self, uuid: str) -> bool:
        """Look the UUID up in the resolved GATT services.

        A lookup error, such as services not yet resolved, counts as missing.
        """
        try:
            return self._client.services.get_characteristic(uuid) is not None
        except BleakError as e:
            logger.debug("Service lookup failed for %s: %s", uuid, e)
            return False

    def _check_connected(self, op: str, uuid: str) -> None:
        if not self.is_connected:
            raise TransportDisconnected(f"{op} {uuid}: not connected")

    def _wrap_error(self, op: str, uuid: str, error: Exception) -> TransportError:
        # bleak reports link loss as a generic error; classify by client state
        if not self.is_connected:
            return TransportDisconnected(f"{op} {uuid}: {error}")
        return TransportError(f"{op} {uuid} failed: {type(error).__name__}: {error}")

    async def _read(self, uuid: str) -> bytes:
        self._check_connected("read", uuid)
        try:
            data = await self._client.read_gatt_char(uuid)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise self._wrap_error("read", uuid, e) from e
        logger.debug("Read %s: %d bytes", uuid, len(data))
        return bytes(data)

    async def _write(self, uuid: str, data: bytes) -> None:
        """Write with response so the device acknowledges each command."""
        self._check_connected("write", uuid)
        try:
            await self._client.write_gatt_char(uuid, data, response=True)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise self._wrap_error("write", uuid, e) from e
        logger.debug("Wrote %s: %s", uuid, bytes(data).hex())

    async def _subscribe(self, uuid: str, callback: NotificationCallback) -> None:
        """Start notifications, handing callbacks an immutable copy of the payload."""
        self._check_connected("subscribe", uuid)
        try:
            await self._client.start_notify(uuid, lambda _, data: callback(bytes(data)))
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise self._wrap_error("subscribe", uuid, e) from e
        logger.info("Subscribed to notifications: char=%s", uuid)

    async def _unsubscribe(self, uuid: str) -> None:
        """Stop notifications. A no-op once the link is gone."""
        if not self.is_connected:
            logger.debug("Skip unsubscribe %s: not connected", uuid)
            return
        try:
            await self._client.stop_notify(uuid)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise self._wrap_error("unsubscribe", uuid, e) from e
        logger.info("Stopped notification subscription: char=%s", uuid)


async def _scan_ble_devices(
    timeout: float,
) -> dict[str, tuple[BLEDevice, AdvertisementData]]:
    """Scan for BLE devices together with their advertisement data.

    Raises:
        RuntimeError: The scanner could not be started, with troubleshooting
            hints for the usual platform problems.
    """
    try:
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
        logger.debug("Scan completed: %d devices found", len(devices_adv))
        return devices_adv
    except BleakError as e:
        raise RuntimeError(
            "BLE scanner initialization failed. Please verify:\n"
            "- Bluetooth is enabled\n"
            "- Location Services are enabled (required for BLE scanning on Windows)\n"
            "- The process has access to the Bluetooth adapter (not in VM/WSL)\n"
        ) from e


def _match_device(
    dev: BLEDevice,
    adv: AdvertisementData,
    device_name: Optional[str],
    service_uuid: str,
) -> bool:
    """Match by exact name first, then by advertised service UUID."""
    logger.debug(
        "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
        getattr(dev, "address", "?"),
        getattr(dev, "name", None),
        getattr(adv, "rssi", None),
        getattr(adv, "service_uuids", None),
    )

    if device_name is not None and dev.name == device_name:
        logger.info("Device selected by name match: %s (%s)", dev.name, dev.address)
        return True

    uuids: Iterable[str] = adv.service_uuids or []
    if any(u.lower() == service_uuid.lower() for u in uuids):
        logger.info(
            "Device selected by service UUID match: %s (%s)", dev.name, dev.address
        )
        return True

    return False


async def find_device(
    *,
    device_name: Optional[str] = None,
    service_uuid: str = SERVICE_UUID,
    timeout: float = 10.0,
) -> Optional[BLEDevice]:
    """Return the first advertising device that matches, or None."""
    logger.info(
        "BLE device discovery started: name=%r service='%s' timeout=%.1fs",
        device_name,
        service_uuid,
        timeout,
    )

    devices_adv = await _scan_ble_devices(timeout)
    for dev, adv in devices_adv.values():
        if _match_device(dev, adv, device_name, service_uuid):
            return dev
    return None


async def resolve_address(
    address: Optional[str],
    *,
    device_name: Optional[str] = None,
    service_uuid: str = SERVICE_UUID,
    scan_timeout: float = 10.0,
) -> str:
    """Return ``address`` as given, or discover one.

    Raises:
        RuntimeError: Discovery found no matching device.
    """
    if address is not None:
        return address

    dev = await find_device(
        device_name=device_name, service_uuid=service_uuid, timeout=scan_timeout
    )
    if not dev:
        raise RuntimeError(
            "Target device not found. Please check scan conditions and device proximity."
        )

    logger.info(
        "Connection target address: %s (name=%s)",
        dev.address,
        getattr(dev, "name", None),
    )
    return dev.address


@asynccontextmanager
async def connect(address: str, *, timeout: float = 15.0) -> AsyncIterator[BleakTransport]:
    """Connect to ``address`` and yield a BleakTransport for the session.

    The bleak disconnect callback is forwarded to the transport so that
    retrieval and streaming tasks learn about link loss immediately.
    """
    transport: Optional[BleakTransport] = None

    def on_disconnect(_: BleakClient) -> None:
        if transport is not None:
            transport.handle_disconnect()
        else:
            logger.warning("BLE connection lost before session setup")

    logger.info("BLE connection starting: %s", address)
    async with BleakClient(
        address, disconnected_callback=on_disconnect, timeout=timeout
    ) as client:
        if not client.is_connected:
            raise TransportError("BLE connection failed.")
        logger.info("BLE connection established: %s", address)
        transport = BleakTransport(client)
        yield transport
