"""Test scripts, the fluent builder that produces them, and the live action queue."""

from collections import deque
from typing import Deque, Iterable, Iterator, Sequence, Tuple, Union

from beacon_validator.actions import Action, ActionKind
from beacon_validator.bluetooth.protocol import GATT_SUCCESS
from beacon_validator.errors import EmptyQueueError, ScriptError


class Script:
    """Immutable, named sequence of actions terminated by the ``LAST`` sentinel."""

    def __init__(self, name: str, actions: Iterable[Action], reference: str = ""):
        self.name = name
        self.reference = reference
        self._actions: Tuple[Action, ...] = tuple(actions)

        if not self._actions or self._actions[-1].kind != ActionKind.LAST:
            raise ScriptError(f"Script '{name}' must end with a LAST action")
        if any(action.kind == ActionKind.LAST for action in self._actions[:-1]):
            raise ScriptError(f"Script '{name}' has a LAST action before its end")

    @property
    def actions(self) -> Tuple[Action, ...]:
        """All actions including the trailing sentinel."""
        return self._actions

    @property
    def steps(self) -> Tuple[Action, ...]:
        """The real steps, without the sentinel."""
        return self._actions[:-1]

    def __len__(self) -> int:
        return len(self._actions)

    def __repr__(self) -> str:
        return f"Script(name={self.name!r}, steps={len(self.steps)})"


class ScriptBuilder:
    """Fluent construction of a :class:`Script`.

    Example:
        script = (
            ScriptBuilder("Write and read URI")
            .connect()
            .write_and_read(URI_DATA_UUID, encode_uri("https://example.com"))
            .disconnect()
            .build()
        )
    """

    def __init__(self, name: str, reference: str = ""):
        self.name = name
        self.reference = reference
        self._actions: list = []

    def _add(self, kind: ActionKind, **fields) -> "ScriptBuilder":
        self._actions.append(Action(kind=kind, **fields))
        return self

    def connect(self) -> "ScriptBuilder":
        return self._add(ActionKind.CONNECT)

    def disconnect(self) -> "ScriptBuilder":
        return self._add(ActionKind.DISCONNECT)

    def write(self, characteristic_uuid: str, value: bytes, expected_status: int = GATT_SUCCESS) -> "ScriptBuilder":
        return self._add(
            ActionKind.WRITE,
            characteristic_uuid=characteristic_uuid,
            value=bytes(value),
            expected_status=expected_status,
        )

    def write_multi(
        self, characteristic_uuid: str, value: bytes, expected_statuses: Sequence[int]
    ) -> "ScriptBuilder":
        """Write a value and accept any of several return codes."""
        if not expected_statuses:
            raise ScriptError("A multi-code write needs at least one accepted status")
        return self._add(
            ActionKind.WRITE_MULTI_RETURN_CODE,
            characteristic_uuid=characteristic_uuid,
            value=bytes(value),
            expected_statuses=tuple(expected_statuses),
        )

    def assert_equals(
        self, characteristic_uuid: str, expected_value: bytes, expected_status: int = GATT_SUCCESS
    ) -> "ScriptBuilder":
        return self._add(
            ActionKind.ASSERT_EQUALS,
            characteristic_uuid=characteristic_uuid,
            value=bytes(expected_value),
            expected_status=expected_status,
        )

    def assert_not_equals(
        self, characteristic_uuid: str, expected_value: bytes, expected_status: int = GATT_SUCCESS
    ) -> "ScriptBuilder":
        return self._add(
            ActionKind.ASSERT_NOT_EQUALS,
            characteristic_uuid=characteristic_uuid,
            value=bytes(expected_value),
            expected_status=expected_status,
        )

    def assert_adv_flags(self, expected_flags: int) -> "ScriptBuilder":
        return self._add(ActionKind.ADV_FLAGS, value=bytes([expected_flags & 0xFF]))

    def assert_adv_tx_power(self, expected_tx_power: int) -> "ScriptBuilder":
        """Expect an advertised TX power level, given in signed dBm."""
        return self._add(ActionKind.ADV_TX_POWER, value=bytes([expected_tx_power & 0xFF]))

    def assert_adv_uri(self, expected_uri: bytes) -> "ScriptBuilder":
        return self._add(ActionKind.ADV_URI, value=bytes(expected_uri))

    def check_adv_packet(self) -> "ScriptBuilder":
        return self._add(ActionKind.ADV_PACKET)

    def insert_actions(self, other: Union["ScriptBuilder", Script]) -> "ScriptBuilder":
        """Append copies of another builder's or script's steps."""
        source = other.steps if isinstance(other, Script) else other._actions
        for action in source:
            self._actions.append(action.model_copy())
        return self

    def write_and_read(
        self, characteristic_uuid: str, values: Union[bytes, Sequence[bytes]]
    ) -> "ScriptBuilder":
        """Write each value, then read it back expecting the same bytes."""
        if isinstance(values, (bytes, bytearray)):
            values = [values]
        for value in values:
            self.write(characteristic_uuid, value, GATT_SUCCESS)
            self.assert_equals(characteristic_uuid, value, GATT_SUCCESS)
        return self

    @property
    def steps(self) -> Tuple[Action, ...]:
        return tuple(self._actions)

    def build(self) -> Script:
        """Freeze the steps into a script ending with the ``LAST`` sentinel."""
        actions = [action.model_copy() for action in self._actions]
        actions.append(Action(kind=ActionKind.LAST))
        return Script(self.name, actions, reference=self.reference)


class ActionQueue:
    """Remaining work of one run, replenished from its script on repeat.

    The queue holds the script's own action objects so that failure
    annotations show up in the script's step list.
    """

    def __init__(self, script: Script):
        self._script = script
        self._actions: Deque[Action] = deque(script.actions)

    def peek_head(self) -> Action:
        if not self._actions:
            raise EmptyQueueError(f"Action queue of '{self._script.name}' is empty")
        return self._actions[0]

    def pop_head(self) -> Action:
        head = self.peek_head()
        if head.kind == ActionKind.LAST:
            raise EmptyQueueError(f"Refusing to pop the LAST sentinel of '{self._script.name}'")
        return self._actions.popleft()

    def reset_from_script(self) -> None:
        """Replace the live queue with a fresh copy of the script."""
        for action in self._script.actions:
            action.clear_failure()
        self._actions = deque(self._script.actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[Action]:
        return iter(list(self._actions))
