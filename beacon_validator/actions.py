"""Test actions: one protocol step and its pass/fail criteria."""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field

from beacon_validator.bluetooth.protocol import (
    GATT_SUCCESS,
    characteristic_name,
    format_bytes,
)


class ActionKind(str, Enum):
    """Kinds of protocol steps a script can contain."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    WRITE = "write"
    ASSERT_EQUALS = "assert_equals"
    ASSERT_NOT_EQUALS = "assert_not_equals"
    WRITE_MULTI_RETURN_CODE = "write_multi_return_code"
    ADV_FLAGS = "adv_flags"
    ADV_TX_POWER = "adv_tx_power"
    ADV_URI = "adv_uri"
    ADV_PACKET = "adv_packet"
    LAST = "last"


ADVERTISEMENT_KINDS = frozenset(
    {ActionKind.ADV_FLAGS, ActionKind.ADV_TX_POWER, ActionKind.ADV_URI, ActionKind.ADV_PACKET}
)
READ_KINDS = frozenset({ActionKind.ASSERT_EQUALS, ActionKind.ASSERT_NOT_EQUALS})
WRITE_KINDS = frozenset({ActionKind.WRITE, ActionKind.WRITE_MULTI_RETURN_CODE})


class Action(BaseModel):
    """A single step of a test script.

    The comparison fields are frozen once the action is built. Only the
    failure annotation changes, in place, so a failed step stays inspectable
    from the script's step list after the run.

    Attributes:
        kind: What the step does
        characteristic_uuid: Target characteristic for read/write steps
        value: Bytes to write, or bytes expected from a read or advertisement
        expected_status: GATT status a read or single-code write must return
        expected_statuses: Accepted GATT statuses of a multi-code write
        failed: Whether this step caused its run to fail
        failure_reason: Human-readable reason, set together with ``failed``
    """

    kind: ActionKind = Field(frozen=True)
    characteristic_uuid: Optional[str] = Field(default=None, frozen=True)
    value: bytes = Field(default=b"", frozen=True)
    expected_status: int = Field(default=GATT_SUCCESS, frozen=True)
    expected_statuses: Tuple[int, ...] = Field(default=(), frozen=True)
    failed: bool = False
    failure_reason: Optional[str] = None

    def mark_failed(self, reason: str) -> None:
        """Annotate this step as the cause of a failure. Only the first call sticks."""
        if self.failed:
            return
        self.failed = True
        self.failure_reason = reason

    def clear_failure(self) -> None:
        """Drop the failure annotation before the script is replayed."""
        self.failed = False
        self.failure_reason = None

    def describe(self) -> str:
        """Return a one-line label for step lists."""
        target = characteristic_name(self.characteristic_uuid) if self.characteristic_uuid else ""
        if self.kind == ActionKind.WRITE:
            return f"Write {format_bytes(self.value)} to {target} (expect status {self.expected_status})"
        if self.kind == ActionKind.WRITE_MULTI_RETURN_CODE:
            codes = ", ".join(str(code) for code in self.expected_statuses)
            return f"Write {format_bytes(self.value)} to {target} (expect one of {codes})"
        if self.kind == ActionKind.ASSERT_EQUALS:
            return f"Read {target}, expect {format_bytes(self.value)}"
        if self.kind == ActionKind.ASSERT_NOT_EQUALS:
            return f"Read {target}, expect anything but {format_bytes(self.value)}"
        if self.kind == ActionKind.ADV_FLAGS:
            return f"Advertised flags are {format_bytes(self.value)}"
        if self.kind == ActionKind.ADV_TX_POWER:
            return f"Advertised TX power is {format_bytes(self.value)}"
        if self.kind == ActionKind.ADV_URI:
            return f"Advertised URI is {format_bytes(self.value)}"
        if self.kind == ActionKind.ADV_PACKET:
            return "Advertisement packet is well formed"
        return self.kind.value.capitalize()
