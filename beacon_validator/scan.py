"""Bounded-duration scanning for beacons and their advertisements."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from beacon_validator.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_SCAN_TIMEOUT = 5.0


class ScanRecord(BaseModel):
    """One advertisement observed during a scan."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    address: str
    name: Optional[str] = None
    rssi: Optional[int] = None
    service_data: bytes = b""
    device: Any = None

    def label(self) -> str:
        """Return a short human-readable label for prompts."""
        rssi = f", {self.rssi} dBm" if self.rssi is not None else ""
        return f"{self.name or 'Unknown'} ({self.address}{rssi})"


class Scanner(ABC):
    """Platform scanning capability."""

    @abstractmethod
    def start_scan(self, service_uuid: str, on_result: Callable[[ScanRecord], None]) -> None:
        """Start scanning for advertisements of ``service_uuid``.

        ``on_result`` is called on the event loop for every advertisement.
        """

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop a running scan. Stopping an idle scanner is a no-op."""


def device_address(device: Any) -> Optional[str]:
    """Return the identity of a device given as an object with ``address`` or a plain address."""
    if device is None:
        return None
    address = getattr(device, "address", device)
    return str(address).upper()


class ScanCollector:
    """Collect distinct beacons seen during one scan window.

    Only the first advertisement of each device is kept. When the window
    elapses the scan is stopped and the accumulated results are handed to
    the ``on_timeout`` callback given to :meth:`begin_scan`.
    """

    def __init__(self, scanner: Scanner, timeout: float = DEFAULT_SCAN_TIMEOUT):
        self.scanner = scanner
        self.timeout = timeout
        self._seen: Dict[str, ScanRecord] = {}
        self._results: List[ScanRecord] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._scanning = False

    @property
    def results(self) -> List[ScanRecord]:
        return list(self._results)

    @property
    def scanning(self) -> bool:
        return self._scanning

    def clear(self) -> None:
        self._seen.clear()
        self._results.clear()

    def find(self, address: str) -> Optional[ScanRecord]:
        """Return the record of a device seen in this window, if any."""
        return self._seen.get(device_address(address))

    def begin_scan(self, service_uuid: str, on_timeout: Callable[[List[ScanRecord]], None]) -> None:
        """Start a scan window filtered on ``service_uuid``.

        Must be called from the running event loop.
        """
        self.end_scan()
        self.clear()
        loop = asyncio.get_running_loop()
        logger.debug(f"Scanning for {service_uuid} for {self.timeout}s")
        self._scanning = True
        self.scanner.start_scan(service_uuid, self._on_result)
        self._timer = loop.call_later(self.timeout, self._on_timer, on_timeout)

    def end_scan(self) -> None:
        """Stop scanning and cancel the pending timeout."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._scanning:
            self._scanning = False
            self.scanner.stop_scan()

    def _on_result(self, record: ScanRecord) -> None:
        if not self._scanning:
            return
        identity = device_address(record.address)
        if identity in self._seen:
            return
        logger.debug(f"Found {record.label()}")
        self._seen[identity] = record
        self._results.append(record)

    def _on_timer(self, on_timeout: Callable[[List[ScanRecord]], None]) -> None:
        self._timer = None
        self.end_scan()
        logger.debug(f"Scan window closed with {len(self._results)} result(s)")
        on_timeout(self.results)
