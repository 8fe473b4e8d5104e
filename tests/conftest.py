"""Shared fakes: a scriptable beacon, its link, a scanner and a recording report sink."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from beacon_validator.bluetooth.protocol import (
    CHARACTERISTICS,
    CONFIG_SERVICE_UUID,
    GATT_SUCCESS,
    LOCK_STATE_UUID,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    URI_SERVICE_UUID,
)
from beacon_validator.config_loader import ValidatorSettings
from beacon_validator.link import DeviceLink, LinkEventAdapter
from beacon_validator.report import ReportSink
from beacon_validator.scan import ScanRecord, Scanner
from beacon_validator.script import Script
from beacon_validator.sequencer import ConformanceTest

BEACON_ADDRESS = "AA:BB:CC:DD:EE:01"
OTHER_ADDRESS = "AA:BB:CC:DD:EE:02"
ADV_PAYLOAD = bytes([0x10, 0x04, 0x68, 0x74, 0x74, 0x70])


class FakeService:
    def __init__(self, characteristics: Set[str]):
        self.characteristics = characteristics

    def get_characteristic(self, uuid: str):
        return uuid if uuid in self.characteristics else None


class FakeBeacon:
    """In-memory beacon: writes are stored and read back unless overridden."""

    def __init__(self):
        self.values: Dict[str, bytes] = {uuid: b"" for uuid in CHARACTERISTICS.values()}
        self.values[LOCK_STATE_UUID] = b"\x00"
        self.read_responses: Dict[str, Tuple[int, bytes]] = {}
        self.write_statuses: Dict[str, int] = {}
        self.connect_status = GATT_SUCCESS
        self.has_config_service = True
        self.drop_on_write = False
        self.unresponsive: Set[str] = set()


class FakeLink(DeviceLink):
    def __init__(self, events: LinkEventAdapter, radio: "FakeRadio"):
        self.events = events
        self.radio = radio
        self.beacon = radio.beacon

    def _log(self, *operation) -> bool:
        self.radio.operations.append(operation)
        self.radio.timestamps.append(asyncio.get_running_loop().time())
        return operation[0] not in self.beacon.unresponsive

    def connect(self, device: Any) -> None:
        if not self._log("connect", getattr(device, "address", device)):
            return
        if self.beacon.connect_status == GATT_SUCCESS:
            self.events.connection_state_changed(self, GATT_SUCCESS, STATE_CONNECTED)
        else:
            self.events.connection_state_changed(self, self.beacon.connect_status, STATE_DISCONNECTED)

    def disconnect(self) -> None:
        if self._log("disconnect"):
            self.events.connection_state_changed(self, GATT_SUCCESS, STATE_DISCONNECTED)

    def discover_services(self) -> None:
        if self._log("discover_services"):
            self.events.services_discovered(self, GATT_SUCCESS)

    def get_service(self, uuid: str):
        if uuid == CONFIG_SERVICE_UUID and self.beacon.has_config_service:
            return FakeService(set(self.beacon.values))
        return None

    def read_characteristic(self, uuid: str) -> None:
        if not self._log("read", uuid):
            return
        status, value = self.beacon.read_responses.get(uuid, (GATT_SUCCESS, self.beacon.values[uuid]))
        self.events.characteristic_read(self, status, uuid, value)

    def write_characteristic(self, uuid: str, value: bytes) -> None:
        if not self._log("write", uuid, value):
            return
        if self.beacon.drop_on_write:
            self.events.connection_state_changed(self, GATT_SUCCESS, STATE_DISCONNECTED)
            return
        status = self.beacon.write_statuses.get(uuid, GATT_SUCCESS)
        if status == GATT_SUCCESS:
            self.beacon.values[uuid] = value
        self.events.characteristic_write(self, status, uuid)


class FakeScanner(Scanner):
    """Scanner replaying configured advertisements per service filter."""

    def __init__(self):
        self.advertisements: Dict[str, List[ScanRecord]] = {}
        self.started: List[str] = []
        self.stopped = 0
        self.on_result: Optional[Callable[[ScanRecord], None]] = None

    def start_scan(self, service_uuid: str, on_result: Callable[[ScanRecord], None]) -> None:
        self.started.append(service_uuid)
        self.on_result = on_result
        loop = asyncio.get_running_loop()
        for record in self.advertisements.get(service_uuid, []):
            loop.call_soon(on_result, record)

    def stop_scan(self) -> None:
        self.stopped += 1

    def emit(self, record: ScanRecord) -> None:
        self.on_result(record)


class FakeRadio:
    """One beacon reachable through fake links and a fake scanner."""

    def __init__(self):
        self.beacon = FakeBeacon()
        self.scanner = FakeScanner()
        self.operations: List[tuple] = []
        self.timestamps: List[float] = []
        self.links: List[FakeLink] = []
        self.scanner.advertisements = {
            CONFIG_SERVICE_UUID: [ScanRecord(address=BEACON_ADDRESS, name="UriBeacon")],
            URI_SERVICE_UUID: [ScanRecord(address=BEACON_ADDRESS, name="UriBeacon", service_data=ADV_PAYLOAD)],
        }

    def link_factory(self, events: LinkEventAdapter) -> FakeLink:
        link = FakeLink(events, self)
        self.links.append(link)
        return link

    def operation_names(self) -> List[str]:
        return [operation[0] for operation in self.operations]


class RecordingSink(ReportSink):
    def __init__(self):
        self.calls: List[str] = []
        self.candidates: List[List[ScanRecord]] = []
        self.completed: List[Tuple[Any, Any]] = []

    def test_started(self) -> None:
        self.calls.append("test_started")

    def waiting_for_config_mode(self) -> None:
        self.calls.append("waiting_for_config_mode")

    def connected_to_beacon(self) -> None:
        self.calls.append("connected_to_beacon")

    def multiple_candidates_found(self, candidates: List[ScanRecord]) -> None:
        self.calls.append("multiple_candidates_found")
        self.candidates.append(candidates)

    def test_completed(self, device: Any, link: Optional[Any]) -> None:
        self.calls.append("test_completed")
        self.completed.append((device, link))


@pytest.fixture
def radio():
    return FakeRadio()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    return ValidatorSettings(scan_timeout=0.01, reconnect_delay=0.0)


@pytest.fixture
def make_test(radio, sink, settings):
    """Create a ConformanceTest wired to the fake radio."""

    def factory(script: Script, **overrides) -> ConformanceTest:
        test_settings = settings.model_copy(update=overrides) if overrides else settings
        return ConformanceTest(script, sink, radio.scanner, radio.link_factory, test_settings)

    return factory


async def wait_finished(test: ConformanceTest, timeout: float = 2.0) -> None:
    await asyncio.wait_for(test.wait_until_finished(), timeout)


async def wait_for_operation(radio: FakeRadio, name: str, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while name not in radio.operation_names():
        if loop.time() > deadline:
            raise AssertionError(f"Operation {name!r} never issued: {radio.operation_names()}")
        await asyncio.sleep(0.001)
