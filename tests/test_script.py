"""Tests for actions, scripts, the script builder and the action queue."""

import pytest
from pydantic import ValidationError

from beacon_validator.actions import Action, ActionKind
from beacon_validator.bluetooth.protocol import (
    FLAGS_UUID,
    GATT_INVALID_ATTRIBUTE_LENGTH,
    GATT_SUCCESS,
    URI_DATA_UUID,
)
from beacon_validator.errors import EmptyQueueError, ScriptError
from beacon_validator.script import ActionQueue, Script, ScriptBuilder


class TestAction:
    def test_comparison_fields_are_frozen(self):
        action = Action(kind=ActionKind.WRITE, characteristic_uuid=FLAGS_UUID, value=b"\x10")

        with pytest.raises(ValidationError):
            action.value = b"\x00"

    def test_first_failure_reason_sticks(self):
        action = Action(kind=ActionKind.CONNECT)

        action.mark_failed("first")
        action.mark_failed("second")

        assert action.failed
        assert action.failure_reason == "first"

    def test_clear_failure(self):
        action = Action(kind=ActionKind.CONNECT)
        action.mark_failed("boom")

        action.clear_failure()

        assert not action.failed
        assert action.failure_reason is None

    def test_describe_names_characteristic(self):
        action = Action(kind=ActionKind.ASSERT_EQUALS, characteristic_uuid=FLAGS_UUID, value=b"\x10")

        assert action.describe() == "Read flags, expect [0x10]"


class TestScript:
    def test_requires_trailing_last(self):
        with pytest.raises(ScriptError):
            Script("no sentinel", [Action(kind=ActionKind.CONNECT)])

    def test_rejects_inner_last(self):
        actions = [Action(kind=ActionKind.LAST), Action(kind=ActionKind.CONNECT), Action(kind=ActionKind.LAST)]

        with pytest.raises(ScriptError):
            Script("two sentinels", actions)

    def test_steps_exclude_sentinel(self):
        script = ScriptBuilder("s").connect().disconnect().build()

        assert len(script) == 3
        assert [action.kind for action in script.steps] == [ActionKind.CONNECT, ActionKind.DISCONNECT]


class TestScriptBuilder:
    def test_empty_builder_yields_only_sentinel(self):
        script = ScriptBuilder("empty").build()

        assert [action.kind for action in script.actions] == [ActionKind.LAST]

    def test_write_and_read_expands_pairs(self):
        script = ScriptBuilder("s").write_and_read(FLAGS_UUID, [b"\x01", b"\x02"]).build()

        assert [(action.kind, action.value) for action in script.steps] == [
            (ActionKind.WRITE, b"\x01"),
            (ActionKind.ASSERT_EQUALS, b"\x01"),
            (ActionKind.WRITE, b"\x02"),
            (ActionKind.ASSERT_EQUALS, b"\x02"),
        ]
        assert all(action.expected_status == GATT_SUCCESS for action in script.steps)

    def test_write_and_read_accepts_single_value(self):
        script = ScriptBuilder("s").write_and_read(URI_DATA_UUID, b"\x02abc").build()

        assert len(script.steps) == 2

    def test_write_multi_requires_statuses(self):
        with pytest.raises(ScriptError):
            ScriptBuilder("s").write_multi(FLAGS_UUID, b"\x00", [])

    def test_write_multi_keeps_statuses(self):
        script = ScriptBuilder("s").write_multi(FLAGS_UUID, b"\x00", [0, 3]).build()

        assert script.steps[0].expected_statuses == (0, 3)

    def test_adv_expectations_stored_as_single_byte(self):
        script = ScriptBuilder("s").assert_adv_flags(0x110).assert_adv_tx_power(-18).build()

        assert script.steps[0].value == b"\x10"
        assert script.steps[1].value == b"\xee"

    def test_insert_actions_copies(self):
        helper = ScriptBuilder("helper").write(URI_DATA_UUID, b"\x00", GATT_INVALID_ATTRIBUTE_LENGTH)
        first = ScriptBuilder("a").connect().insert_actions(helper).build()
        second = ScriptBuilder("b").insert_actions(first).build()

        first.steps[1].mark_failed("boom")

        assert second.steps[0].kind == ActionKind.CONNECT
        assert second.steps[1].expected_status == GATT_INVALID_ATTRIBUTE_LENGTH
        assert not second.steps[1].failed
        assert not helper.steps[0].failed

    def test_builds_are_independent(self):
        builder = ScriptBuilder("s").connect()
        first = builder.build()
        second = builder.build()

        first.steps[0].mark_failed("boom")

        assert not second.steps[0].failed


class TestActionQueue:
    def test_pop_in_order_until_sentinel(self):
        queue = ActionQueue(ScriptBuilder("s").connect().disconnect().build())

        assert queue.pop_head().kind == ActionKind.CONNECT
        assert queue.pop_head().kind == ActionKind.DISCONNECT
        assert queue.peek_head().kind == ActionKind.LAST
        with pytest.raises(EmptyQueueError):
            queue.pop_head()

    def test_reset_restores_all_actions(self):
        script = ScriptBuilder("s").connect().disconnect().build()
        queue = ActionQueue(script)
        queue.pop_head()
        queue.peek_head().mark_failed("boom")

        queue.reset_from_script()

        assert len(queue) == len(script)
        assert not any(action.failed for action in script.actions)

    def test_queue_shares_script_actions(self):
        script = ScriptBuilder("s").connect().build()
        queue = ActionQueue(script)

        queue.peek_head().mark_failed("boom")

        assert script.steps[0].failure_reason == "boom"
