"""Device link and scanner capabilities backed by bleak.

Every bleak coroutine runs as a task on the event loop; its outcome is
reported through the :class:`LinkEventAdapter` as a GATT status code, the
way a platform GATT callback would report it.
"""

import asyncio
import re
from typing import Any, Callable, Dict, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakDBusError, BleakError

from beacon_validator.bluetooth.protocol import (
    GATT_ERROR,
    GATT_FAILURE,
    GATT_INSUFFICIENT_AUTHENTICATION,
    GATT_INSUFFICIENT_AUTHORIZATION,
    GATT_INVALID_ATTRIBUTE_LENGTH,
    GATT_INVALID_OFFSET,
    GATT_READ_NOT_PERMITTED,
    GATT_REQUEST_NOT_SUPPORTED,
    GATT_SUCCESS,
    GATT_WRITE_NOT_PERMITTED,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
)
from beacon_validator.config_loader import ValidatorSettings
from beacon_validator.link import DeviceLink, LinkEventAdapter
from beacon_validator.logging_config import get_logger
from beacon_validator.scan import ScanRecord, Scanner

logger = get_logger(__name__)

# BlueZ D-Bus error names
DBUS_ERROR_STATUS: Dict[str, int] = {
    "org.bluez.Error.NotAuthorized": GATT_INSUFFICIENT_AUTHORIZATION,
    "org.bluez.Error.NotAuthenticated": GATT_INSUFFICIENT_AUTHENTICATION,
    "org.bluez.Error.InvalidValueLength": GATT_INVALID_ATTRIBUTE_LENGTH,
    "org.bluez.Error.InvalidOffset": GATT_INVALID_OFFSET,
    "org.bluez.Error.NotSupported": GATT_REQUEST_NOT_SUPPORTED,
}
DBUS_NOT_PERMITTED = "org.bluez.Error.NotPermitted"

# "ATT error: 0x0d" (BlueZ) or "Protocol Error 0x0D" (WinRT, CoreBluetooth)
ATT_ERROR_PATTERN = re.compile(r"(?:ATT error|Protocol Error)[:\s]+0x([0-9a-fA-F]{2})")


def status_from_error(error: Exception, not_permitted: int = GATT_WRITE_NOT_PERMITTED) -> int:
    """Map a bleak exception onto a GATT status code.

    Args:
        error: Exception raised by a bleak operation
        not_permitted: Status reported for BlueZ "NotPermitted" (read or write flavour)

    Returns:
        The ATT error code when one can be recovered, otherwise GATT_FAILURE
    """
    match = ATT_ERROR_PATTERN.search(str(error))
    if match:
        return int(match.group(1), 16)

    if isinstance(error, BleakDBusError):
        if error.dbus_error == DBUS_NOT_PERMITTED:
            return not_permitted
        if error.dbus_error in DBUS_ERROR_STATUS:
            return DBUS_ERROR_STATUS[error.dbus_error]

    return GATT_FAILURE


class _TaskOwner:
    """Keeps references to fire-and-forget tasks until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class BleakDeviceLink(_TaskOwner, DeviceLink):
    """GATT link to one beacon over a :class:`bleak.BleakClient`."""

    def __init__(self, events: LinkEventAdapter, timeout: float = 10.0, adapter: Optional[str] = None):
        """Initialize the link.

        Args:
            events: Adapter receiving this link's completions
            timeout: Connection timeout in seconds
            adapter: Bluetooth adapter to use (e.g. "hci0"), platform default if None
        """
        super().__init__()
        self.events = events
        self.timeout = timeout
        self.adapter = adapter
        self._client: Optional[BleakClient] = None
        self._connected = False

    @property
    def client(self) -> Optional[BleakClient]:
        return self._client

    def connect(self, device: Any) -> None:
        kwargs: Dict[str, Any] = {"timeout": self.timeout}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        self._client = BleakClient(device, disconnected_callback=self._on_disconnected, **kwargs)
        self._spawn(self._connect())

    async def _connect(self) -> None:
        try:
            await self._client.connect()
        except (BleakError, asyncio.TimeoutError) as e:
            logger.warning(f"Connection failed: {e}")
            self.events.connection_state_changed(self, GATT_ERROR, STATE_DISCONNECTED)
            return

        self._connected = True
        logger.debug(f"Connected to {self._client.address} (MTU {self._client.mtu_size})")
        self.events.connection_state_changed(self, GATT_SUCCESS, STATE_CONNECTED)

    def disconnect(self) -> None:
        self._spawn(self._disconnect())

    async def _disconnect(self) -> None:
        if self._client is None:
            self.events.connection_state_changed(self, GATT_SUCCESS, STATE_DISCONNECTED)
            return
        try:
            await self._client.disconnect()
        except BleakError as e:
            logger.warning(f"Disconnect failed: {e}")
            self.events.connection_state_changed(self, GATT_FAILURE, STATE_CONNECTED)
            return
        # Some backends do not invoke the disconnected callback for a requested disconnect
        self._mark_disconnected()

    def _on_disconnected(self, client: BleakClient) -> None:
        logger.debug(f"{client.address} disconnected")
        self._mark_disconnected()

    def _mark_disconnected(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.events.connection_state_changed(self, GATT_SUCCESS, STATE_DISCONNECTED)

    def discover_services(self) -> None:
        # bleak resolves the service table while connecting
        status = GATT_SUCCESS if self._connected else GATT_FAILURE
        self.events.services_discovered(self, status)

    def get_service(self, uuid: str) -> Optional[Any]:
        if self._client is None:
            return None
        try:
            return self._client.services.get_service(uuid)
        except BleakError:
            return None

    def read_characteristic(self, uuid: str) -> None:
        self._spawn(self._read(uuid))

    async def _read(self, uuid: str) -> None:
        try:
            value = await self._client.read_gatt_char(uuid)
        except BleakError as e:
            logger.debug(f"Read of {uuid} failed: {e}")
            self.events.characteristic_read(self, status_from_error(e, GATT_READ_NOT_PERMITTED), uuid, b"")
            return
        self.events.characteristic_read(self, GATT_SUCCESS, uuid, bytes(value))

    def write_characteristic(self, uuid: str, value: bytes) -> None:
        self._spawn(self._write(uuid, bytes(value)))

    async def _write(self, uuid: str, value: bytes) -> None:
        try:
            # Always request a response, the status code is what the test checks
            await self._client.write_gatt_char(uuid, value, response=True)
        except BleakError as e:
            logger.debug(f"Write of {uuid} failed: {e}")
            self.events.characteristic_write(self, status_from_error(e, GATT_WRITE_NOT_PERMITTED), uuid)
            return
        self.events.characteristic_write(self, GATT_SUCCESS, uuid)


def bleak_link_factory(settings: ValidatorSettings) -> Callable[[LinkEventAdapter], BleakDeviceLink]:
    """Return a link factory creating bleak links with the configured timeout and adapter."""

    def factory(events: LinkEventAdapter) -> BleakDeviceLink:
        return BleakDeviceLink(events, timeout=settings.connect_timeout, adapter=settings.adapter)

    return factory


class BleakScannerBackend(_TaskOwner, Scanner):
    """Scanner over :class:`bleak.BleakScanner` filtered on one service UUID."""

    def __init__(self, adapter: Optional[str] = None):
        super().__init__()
        self.adapter = adapter
        self._scanner: Optional[BleakScanner] = None

    def start_scan(self, service_uuid: str, on_result: Callable[[ScanRecord], None]) -> None:
        service_uuid = service_uuid.lower()

        def detection_callback(device, advertisement_data) -> None:
            on_result(
                ScanRecord(
                    address=device.address,
                    name=device.name or advertisement_data.local_name,
                    rssi=advertisement_data.rssi,
                    service_data=bytes(advertisement_data.service_data.get(service_uuid, b"")),
                    device=device,
                )
            )

        kwargs: Dict[str, Any] = {}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        self._scanner = BleakScanner(
            detection_callback=detection_callback,
            service_uuids=[service_uuid],
            **kwargs,
        )
        self._spawn(self._run(self._scanner.start(), "start"))

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._run(scanner.stop(), "stop"))

    async def _run(self, operation, name: str) -> None:
        try:
            await operation
        except BleakError as e:
            logger.error(f"Scanner {name} failed: {e}")
