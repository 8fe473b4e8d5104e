"""Test-action sequencer driving one script against one beacon.

A :class:`ConformanceTest` owns the run state and the live action queue of
a script. It acts on the head of the queue only, issues at most one link or
scan operation at a time, and resumes when the matching completion arrives
through its :class:`~beacon_validator.link.LinkEventAdapter` or when a scan
window closes.

Dispatch decisions, first match wins:

    1. stopped by the user   -> disconnect if a link is up, otherwise idle
    2. head is LAST          -> pass, report completion
    3. head is CONNECT       -> connect to the pinned beacon or scan for one
    4. head inspects the adv -> scan for advertisements
    5. no link               -> (re)connect first
    6. head reads            -> read the characteristic
    7. head writes           -> write the characteristic
    8. head is DISCONNECT    -> disconnect

Failure is terminal: the head action is annotated with the reason, the
report sink's completion fires once and nothing else is dispatched.
"""

import asyncio
from typing import Any, Callable, List, Optional

from beacon_validator.actions import (
    ADVERTISEMENT_KINDS,
    READ_KINDS,
    WRITE_KINDS,
    Action,
    ActionKind,
)
from beacon_validator.bluetooth.protocol import (
    GATT_SUCCESS,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    characteristic_name,
    format_bytes,
    get_flags,
    get_tx_power_level,
    get_uri,
    is_valid_packet,
    to_signed_byte,
)
from beacon_validator.config_loader import ValidatorSettings
from beacon_validator.errors import AdvertisementError, FailureKind
from beacon_validator.link import DeviceLink, LinkEventAdapter
from beacon_validator.logging_config import get_logger
from beacon_validator.report import ReportSink
from beacon_validator.scan import ScanCollector, ScanRecord, Scanner, device_address
from beacon_validator.script import ActionQueue, Script

logger = get_logger(__name__)

LinkFactory = Callable[[LinkEventAdapter], DeviceLink]


class ConformanceTest:
    """Run one script against a beacon and decide pass or fail.

    Args:
        script: The immutable script to run
        sink: Receiver of progress notifications
        scanner: Scanning capability used to find beacons and advertisements
        link_factory: Creates a new device link reporting to the given adapter
        settings: Engine tunables (scan window, reconnect delay, service UUIDs)
    """

    def __init__(
        self,
        script: Script,
        sink: ReportSink,
        scanner: Scanner,
        link_factory: LinkFactory,
        settings: Optional[ValidatorSettings] = None,
    ):
        self.script = script
        self.settings = settings or ValidatorSettings()
        self._sink = sink
        self._link_factory = link_factory
        self._collector = ScanCollector(scanner, self.settings.scan_timeout)
        self._queue = ActionQueue(script)

        self._started = False
        self._failed = False
        self._finished = False
        self._disconnected = False
        self._stopped = False
        self._awaiting_choice = False
        self._failure_kind: Optional[FailureKind] = None

        self._device: Any = None
        self._link: Optional[DeviceLink] = None
        # Link created by this run whose connection has not completed yet
        self._pending_link: Optional[DeviceLink] = None
        self._service: Any = None
        self._events: Optional[LinkEventAdapter] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._done = asyncio.Event()

    @property
    def name(self) -> str:
        return self.script.name

    @property
    def reference(self) -> str:
        return self.script.reference

    @property
    def test_steps(self):
        """The script's actions, with failure annotations, for step lists."""
        return self.script.actions

    @property
    def remaining(self) -> List[Action]:
        return list(self._queue)

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_failed(self) -> bool:
        return self._failed

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def failure_kind(self) -> Optional[FailureKind]:
        return self._failure_kind

    @property
    def device(self) -> Any:
        return self._device

    @property
    def link(self) -> Optional[DeviceLink]:
        return self._link

    @property
    def scan_results(self) -> List[ScanRecord]:
        return self._collector.results

    # Caller operations

    def run(
        self,
        device: Any = None,
        link: Optional[DeviceLink] = None,
        events: Optional[LinkEventAdapter] = None,
    ) -> None:
        """Start the test.

        Must be called from the running event loop.

        Args:
            device: Beacon to test (skips the config-mode scan when given)
            link: Live link to that beacon, e.g. handed over by a previous test
            events: Adapter the links report to; a new one is created if omitted

        Raises:
            RuntimeError: If the test is already running
        """
        self._start(device, link, events, settle=False)

    def repeat(self, events: Optional[LinkEventAdapter] = None) -> None:
        """Reload the queue from the script and run again on the same beacon.

        Raises:
            RuntimeError: If the test is still running
        """
        logger.info(f"Repeating '{self.name}'")
        if self._started and not self._finished:
            raise RuntimeError(f"Test '{self.name}' is still running")
        settle = self._disconnected
        link = None if self._stopped else self._link
        self._queue.reset_from_script()
        self._start(self._device, link, events or self._events, settle=settle)

    def continue_test(self, index: int) -> None:
        """Resume after an ambiguous scan with the candidate at ``index``.

        Choices made while the test is not waiting for one (a second answer,
        or a call while an operation is pending) are logged and ignored.

        Raises:
            IndexError: If ``index`` does not name a candidate of the last scan
        """
        if self._finished:
            logger.warning(f"Ignoring candidate choice: '{self.name}' already finished")
            return
        if not self._awaiting_choice:
            logger.warning(f"Ignoring candidate choice: '{self.name}' is not waiting for one")
            return
        results = self._collector.results
        if not 0 <= index < len(results):
            raise IndexError(f"No candidate {index}: the last scan found {len(results)}")
        record = results[index]
        logger.info(f"Continuing '{self.name}' with {record.label()}")
        self._proceed_with(record)

    def stop_test(self) -> None:
        """Abort the test, failing it and disconnecting from the beacon if linked."""
        if self._finished:
            logger.debug(f"Stop requested but '{self.name}' already finished")
            return
        logger.info(f"Stopping '{self.name}'")
        self._stopped = True
        self._collector.end_scan()
        self._cancel_reconnect()
        self._fail("Stopped by user", FailureKind.USER_STOPPED)
        self._dispatch()

    async def wait_until_finished(self) -> None:
        """Wait until the current run passed or failed."""
        await self._done.wait()

    # Link entry points, called by the event adapter

    def on_connection_state_change(self, link: DeviceLink, status: int, new_state: int) -> None:
        logger.debug(f"Status: {status}; New State: {new_state}")
        if not self._owns(link):
            if status == GATT_SUCCESS and new_state == STATE_CONNECTED:
                # Connection opened for an earlier run
                link.disconnect()
            return
        self._link = link
        self._pending_link = None
        if status != GATT_SUCCESS:
            if new_state == STATE_DISCONNECTED:
                self._clear_link()
            self._fail(f"Failed. Status: {status}. New State: {new_state}", FailureKind.LINK_DROPPED)
            return

        if new_state == STATE_CONNECTED:
            if self._finished:
                # A connect that completes after a stop is torn down right away
                if self._stopped:
                    link.disconnect()
                return
            link.discover_services()
        elif new_state == STATE_DISCONNECTED:
            self._clear_link()
            if self._finished:
                return
            head = self._queue.peek_head()
            if head.kind != ActionKind.DISCONNECT:
                self._fail(
                    f"Beacon disconnected unexpectedly during: {head.describe()}",
                    FailureKind.LINK_DROPPED,
                )
                return
            self._disconnected = True
            self._complete_head()

    def on_services_discovered(self, link: DeviceLink, status: int) -> None:
        logger.debug(f"Services discovered (status {status})")
        if not self._owns(link):
            return
        if self._finished:
            return
        if status != GATT_SUCCESS:
            self._fail(f"Service discovery failed. Status: {status}", FailureKind.PROTOCOL_MISMATCH)
            return

        self._service = link.get_service(self.settings.config_service_uuid)
        if self._queue.peek_head().kind == ActionKind.CONNECT:
            self._queue.pop_head()
        self._sink.connected_to_beacon()
        self._dispatch()

    def on_characteristic_read(self, link: DeviceLink, status: int, uuid: Optional[str], value: bytes) -> None:
        logger.debug(f"Read {uuid} (status {status}): {format_bytes(value)}")
        if not self._owns(link):
            return
        if self._finished:
            logger.debug("Ignoring read completion after the run finished")
            return

        head = self._queue.peek_head()
        if head.expected_status != status:
            self._fail(
                f"Incorrect status code: {status}. Expected: {head.expected_status}",
                FailureKind.PROTOCOL_MISMATCH,
            )
        elif head.kind == ActionKind.ASSERT_NOT_EQUALS and head.value == value:
            self._fail(f"Values read are the same: {format_bytes(value)}", FailureKind.PROTOCOL_MISMATCH)
        elif head.kind == ActionKind.ASSERT_EQUALS and head.value != value:
            self._fail(
                f"Result not the same. Expected: {format_bytes(head.value)}. Received: {format_bytes(value)}",
                FailureKind.PROTOCOL_MISMATCH,
            )
        else:
            if head.kind not in READ_KINDS:
                logger.warning(f"Read completion while '{head.kind.value}' is pending; counting it as passed")
            self._complete_head()

    def on_characteristic_write(self, link: DeviceLink, status: int, uuid: Optional[str]) -> None:
        logger.debug(f"Wrote {uuid} (status {status})")
        if not self._owns(link):
            return
        if self._finished:
            logger.debug("Ignoring write completion after the run finished")
            return

        head = self._queue.peek_head()
        if head.kind == ActionKind.WRITE and head.expected_status != status:
            self._fail(
                f"Incorrect status code: {status}. Expected: {head.expected_status}",
                FailureKind.PROTOCOL_MISMATCH,
            )
        elif head.kind == ActionKind.WRITE_MULTI_RETURN_CODE and status not in head.expected_statuses:
            accepted = ", ".join(str(code) for code in head.expected_statuses)
            self._fail(
                f"No accepted code matched status {status}. Accepted: {accepted}",
                FailureKind.PROTOCOL_MISMATCH,
            )
        else:
            self._complete_head()

    # Dispatch

    def _start(self, device: Any, link: Optional[DeviceLink], events: Optional[LinkEventAdapter], settle: bool) -> None:
        if self._started and not self._finished:
            raise RuntimeError(f"Test '{self.name}' is already running")

        logger.info(f"Run called for: {self.name}")
        self._started = True
        self._failed = False
        self._finished = False
        self._disconnected = settle
        self._stopped = False
        self._awaiting_choice = False
        self._failure_kind = None
        self._collector.end_scan()
        self._collector.clear()
        self._cancel_reconnect()
        self._done.clear()

        self._device = device
        self._link = link
        self._pending_link = None
        self._service = link.get_service(self.settings.config_service_uuid) if link is not None else None
        self._events = events or self._events or LinkEventAdapter()
        self._events.attach(self)

        self._sink.test_started()
        self._dispatch()

    def _dispatch(self) -> None:
        if self._finished and not self._stopped:
            logger.debug(f"'{self.name}' finished; nothing to dispatch")
            return

        head = self._queue.peek_head()
        logger.debug(
            f"Dispatching '{self.name}' (stopped: {self._stopped}): "
            f"{[action.kind.value for action in self._queue]}"
        )

        if self._stopped:
            if self._link is not None:
                self._link.disconnect()
            return

        kind = head.kind
        if kind == ActionKind.LAST:
            logger.info(f"'{self.name}' passed")
            self._finished = True
            self._sink.test_completed(self._device, self._link)
            self._done.set()
        elif kind == ActionKind.CONNECT:
            self._connect()
        elif kind in ADVERTISEMENT_KINDS:
            self._look_for_adv()
        elif self._link is None:
            logger.debug("No link; connecting")
            self._connect()
        elif kind in READ_KINDS:
            if self._has_characteristic(head):
                self._link.read_characteristic(head.characteristic_uuid)
        elif kind in WRITE_KINDS:
            if self._has_characteristic(head):
                self._link.write_characteristic(head.characteristic_uuid, head.value)
        elif kind == ActionKind.DISCONNECT:
            self._link.disconnect()

    def _complete_head(self) -> None:
        self._queue.pop_head()
        self._dispatch()

    def _has_characteristic(self, action: Action) -> bool:
        if self._service is None:
            self._fail(
                f"Service {self.settings.config_service_uuid} not found on beacon",
                FailureKind.PROTOCOL_MISMATCH,
            )
            return False
        if self._service.get_characteristic(action.characteristic_uuid) is None:
            self._fail(
                f"Characteristic {characteristic_name(action.characteristic_uuid)} not found on beacon",
                FailureKind.PROTOCOL_MISMATCH,
            )
            return False
        return True

    def _connect(self) -> None:
        if self._link is not None:
            # Already linked, connect is satisfied once services are enumerated
            self._link.discover_services()
            return

        if self._disconnected:
            # The link layer needs time to settle before the next connection
            self._disconnected = False
            loop = asyncio.get_running_loop()
            logger.debug(f"Waiting {self.settings.reconnect_delay}s before reconnecting")
            self._reconnect_timer = loop.call_later(self.settings.reconnect_delay, self._open_connection)
            return

        self._open_connection()

    def _open_connection(self) -> None:
        self._reconnect_timer = None
        if self._finished:
            return

        self._sink.waiting_for_config_mode()
        if self._device is None:
            logger.debug("Looking for beacons in config mode")
            self._collector.begin_scan(self.settings.config_service_uuid, self._on_scan_timeout)
        else:
            logger.debug(f"Connecting to {device_address(self._device)}")
            link = self._link_factory(self._events)
            self._pending_link = link
            link.connect(self._device)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _clear_link(self) -> None:
        self._link = None
        self._service = None

    def _owns(self, link: Optional[DeviceLink]) -> bool:
        if link is not None and (link is self._link or link is self._pending_link):
            return True
        logger.debug(f"Ignoring event from a link that '{self.name}' does not own")
        return False

    # Scans

    def _look_for_adv(self) -> None:
        logger.debug("Looking for advertisements")
        self._collector.begin_scan(self.settings.uri_service_uuid, self._on_scan_timeout)

    def _on_scan_timeout(self, results: List[ScanRecord]) -> None:
        if self._finished:
            return

        head = self._queue.peek_head()
        if head.kind in ADVERTISEMENT_KINDS:
            not_found = "Could not find adv packet"
        else:
            not_found = "No UriBeacons in Config Mode found"

        if self._device is not None:
            address = device_address(self._device)
            match = self._collector.find(address)
            if match is None:
                self._fail(f"{not_found} for {address}", FailureKind.NO_DEVICE_FOUND)
            else:
                self._proceed_with(match)
        elif not results:
            self._fail(not_found, FailureKind.NO_DEVICE_FOUND)
        elif len(results) == 1:
            logger.info(f"Continuing '{self.name}' with {results[0].label()}")
            self._proceed_with(results[0])
        else:
            logger.info(f"{len(results)} beacons found; waiting for a choice")
            self._awaiting_choice = True
            self._sink.multiple_candidates_found(results)

    def _proceed_with(self, record: ScanRecord) -> None:
        self._awaiting_choice = False
        self._collector.end_scan()
        self._device = record.device if record.device is not None else record.address
        if self._queue.peek_head().kind in ADVERTISEMENT_KINDS:
            self._check_packet(record)
        else:
            self._dispatch()

    def _check_packet(self, record: ScanRecord) -> None:
        logger.debug(f"Checking advertisement of {record.label()}")
        action = self._queue.peek_head()
        data = record.service_data
        try:
            if action.kind == ActionKind.ADV_PACKET:
                if not is_valid_packet(data):
                    self._fail(f"Invalid Adv Packet: {format_bytes(data)}", FailureKind.PROTOCOL_MISMATCH)
                    return
            elif action.kind == ActionKind.ADV_FLAGS:
                flags = get_flags(data)
                expected = action.value[0]
                if flags != expected:
                    self._fail(f"Received: 0x{flags:02x}. Expected: 0x{expected:02x}", FailureKind.PROTOCOL_MISMATCH)
                    return
            elif action.kind == ActionKind.ADV_TX_POWER:
                level = get_tx_power_level(data)
                expected = to_signed_byte(action.value[0])
                if level != expected:
                    self._fail(f"Received: {level}. Expected: {expected}", FailureKind.PROTOCOL_MISMATCH)
                    return
            elif action.kind == ActionKind.ADV_URI:
                uri = get_uri(data)
                if uri != action.value:
                    self._fail(
                        f"Received: {format_bytes(uri)}. Expected: {format_bytes(action.value)}",
                        FailureKind.PROTOCOL_MISMATCH,
                    )
                    return
        except AdvertisementError as e:
            self._fail(str(e), FailureKind.PROTOCOL_MISMATCH)
            return

        self._complete_head()

    def _fail(self, reason: str, kind: FailureKind) -> None:
        if self._finished:
            logger.debug(f"Not failing finished test '{self.name}': {reason}")
            return

        logger.info(f"'{self.name}' failing because: {reason}")
        self._awaiting_choice = False
        self._collector.end_scan()
        self._cancel_reconnect()
        self._failed = True
        self._failure_kind = kind
        self._queue.peek_head().mark_failed(reason)
        self._finished = True
        self._sink.test_completed(self._device, self._link)
        self._done.set()
