"""Device link capability and the serialized event adapter in front of a test.

Link implementations never call into a test directly. They report each
completed operation to a :class:`LinkEventAdapter`, which queues the event
on the event loop and delivers events one at a time, in arrival order, to
whichever test is currently attached.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from beacon_validator.logging_config import get_logger

logger = get_logger(__name__)


class DeviceLink(ABC):
    """GATT link to one beacon.

    Every operation returns immediately. Its completion is reported later
    through the link's event adapter together with a GATT status code.
    """

    @abstractmethod
    def connect(self, device: Any) -> None:
        """Connect to ``device``. Reports a connection-state change."""

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect. Reports a connection-state change."""

    @abstractmethod
    def discover_services(self) -> None:
        """Enumerate services. Reports services-discovered."""

    @abstractmethod
    def get_service(self, uuid: str) -> Optional[Any]:
        """Return the discovered service with ``uuid``, or None."""

    @abstractmethod
    def read_characteristic(self, uuid: str) -> None:
        """Read a characteristic. Reports a characteristic read."""

    @abstractmethod
    def write_characteristic(self, uuid: str, value: bytes) -> None:
        """Write a characteristic with response. Reports a characteristic write."""


class LinkEventType(str, Enum):
    """Asynchronous completions a device link can report."""

    CONNECTION_STATE_CHANGED = "connection_state_changed"
    SERVICES_DISCOVERED = "services_discovered"
    CHARACTERISTIC_READ = "characteristic_read"
    CHARACTERISTIC_WRITE = "characteristic_write"


class LinkEvent(BaseModel):
    """One completion reported by a device link."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: LinkEventType
    link: Any
    status: int
    new_state: Optional[int] = None
    characteristic_uuid: Optional[str] = None
    value: bytes = b""


class LinkEventAdapter:
    """Serialize link events onto the event loop and route them to a test.

    One adapter can outlive a single test: a suite re-attaches it to each
    test in turn so a live link carries over between tests.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._target = None

    @property
    def target(self):
        return self._target

    def attach(self, target) -> None:
        """Route future events to ``target`` (a ConformanceTest)."""
        self._target = target
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                pass

    def post(self, event: LinkEvent) -> None:
        """Queue an event for delivery. Safe to call from any thread."""
        loop = self._loop
        if loop is None:
            loop = asyncio.get_running_loop()
            self._loop = loop
        loop.call_soon_threadsafe(self.deliver, event)

    def connection_state_changed(self, link: Any, status: int, new_state: int) -> None:
        self.post(
            LinkEvent(
                type=LinkEventType.CONNECTION_STATE_CHANGED,
                link=link,
                status=status,
                new_state=new_state,
            )
        )

    def services_discovered(self, link: Any, status: int) -> None:
        self.post(LinkEvent(type=LinkEventType.SERVICES_DISCOVERED, link=link, status=status))

    def characteristic_read(self, link: Any, status: int, uuid: str, value: bytes) -> None:
        self.post(
            LinkEvent(
                type=LinkEventType.CHARACTERISTIC_READ,
                link=link,
                status=status,
                characteristic_uuid=uuid,
                value=bytes(value),
            )
        )

    def characteristic_write(self, link: Any, status: int, uuid: str) -> None:
        self.post(
            LinkEvent(
                type=LinkEventType.CHARACTERISTIC_WRITE,
                link=link,
                status=status,
                characteristic_uuid=uuid,
            )
        )

    def deliver(self, event: LinkEvent) -> None:
        """Hand one event to the attached test's matching entry point."""
        target = self._target
        if target is None:
            logger.warning(f"Dropping {event.type.value} event: no test attached")
            return

        logger.debug(f"Delivering {event.type.value} (status {event.status}) to '{target.name}'")
        if event.type == LinkEventType.CONNECTION_STATE_CHANGED:
            target.on_connection_state_change(event.link, event.status, event.new_state)
        elif event.type == LinkEventType.SERVICES_DISCOVERED:
            target.on_services_discovered(event.link, event.status)
        elif event.type == LinkEventType.CHARACTERISTIC_READ:
            target.on_characteristic_read(event.link, event.status, event.characteristic_uuid, event.value)
        elif event.type == LinkEventType.CHARACTERISTIC_WRITE:
            target.on_characteristic_write(event.link, event.status, event.characteristic_uuid)
