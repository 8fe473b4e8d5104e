"""Load test scripts from YAML definitions.

Example document::

    tests:
      - name: Write and read URI
        reference: UriBeacon Configuration Service v2
        steps:
          - connect
          - write_and_read:
              characteristic: uri_data
              values: [{uri: "https://example.com"}]
          - write_multi:
              characteristic: tx_power_mode
              value: "04"
              statuses: [write_not_permitted, invalid_attribute_length]
          - disconnect
          - adv_uri: {uri: "https://example.com"}

Characteristics are given by name (see ``protocol.CHARACTERISTICS``) or UUID.
Values are hex strings, lists of integers, ``{uri: ...}`` or ``{text: ...}``.
Status codes are integers or names from ``protocol.GATT_STATUS_CODES``.
``insert`` copies the steps of a test defined earlier in the same document.
"""

from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from beacon_validator.bluetooth.protocol import (
    GATT_STATUS_CODES,
    GATT_SUCCESS,
    encode_uri,
    resolve_characteristic,
)
from beacon_validator.errors import ScriptError
from beacon_validator.logging_config import get_logger
from beacon_validator.script import Script, ScriptBuilder

logger = get_logger(__name__)

STEPS_WITHOUT_ARGUMENTS = {"connect", "disconnect", "adv_packet"}


def parse_value(value: Any) -> bytes:
    """Convert a YAML value description into bytes."""
    if isinstance(value, dict):
        if "uri" in value:
            return encode_uri(str(value["uri"]))
        if "text" in value:
            return str(value["text"]).encode("utf-8")
        raise ScriptError(f"Unknown value mapping: {value}")
    if isinstance(value, list):
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise ScriptError(f"Invalid byte list {value}: {e}")
    if isinstance(value, int):
        return bytes([value & 0xFF])
    if isinstance(value, str):
        text = value[2:] if value.lower().startswith("0x") else value
        try:
            return bytes.fromhex(text.replace(" ", ""))
        except ValueError:
            raise ScriptError(f"Invalid hex value: {value}")
    raise ScriptError(f"Unsupported value: {value!r}")


def parse_status(status: Union[int, str]) -> int:
    """Convert a status code given as integer or name."""
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.lower() in GATT_STATUS_CODES:
        return GATT_STATUS_CODES[status.lower()]
    raise ScriptError(f"Unknown status code: {status}")


def _characteristic(args: Dict[str, Any]) -> str:
    if "characteristic" not in args:
        raise ScriptError("Missing 'characteristic'")
    try:
        return resolve_characteristic(str(args["characteristic"]))
    except KeyError as e:
        raise ScriptError(str(e.args[0]))


def _add_step(builder: ScriptBuilder, step: Any, builders: Dict[str, ScriptBuilder]) -> None:
    if isinstance(step, str):
        name, args = step, None
    elif isinstance(step, dict) and len(step) == 1:
        name, args = next(iter(step.items()))
    else:
        raise ScriptError(f"A step must be a name or a single-key mapping, got: {step!r}")

    if name in STEPS_WITHOUT_ARGUMENTS:
        if name == "connect":
            builder.connect()
        elif name == "disconnect":
            builder.disconnect()
        else:
            builder.check_adv_packet()
    elif name == "adv_flags":
        builder.assert_adv_flags(int(args))
    elif name == "adv_tx_power":
        builder.assert_adv_tx_power(int(args))
    elif name == "adv_uri":
        builder.assert_adv_uri(parse_value(args))
    elif name == "insert":
        if args not in builders:
            raise ScriptError(f"Cannot insert unknown test '{args}' (it must be defined earlier)")
        builder.insert_actions(builders[args])
    elif not isinstance(args, dict):
        raise ScriptError(f"Step '{name}' needs a mapping of arguments")
    elif name == "write":
        builder.write(
            _characteristic(args), parse_value(args.get("value", [])), parse_status(args.get("status", GATT_SUCCESS))
        )
    elif name == "write_multi":
        statuses = args.get("statuses") or []
        builder.write_multi(
            _characteristic(args), parse_value(args.get("value", [])), [parse_status(s) for s in statuses]
        )
    elif name in ("assert_equals", "assert_not_equals"):
        add = builder.assert_equals if name == "assert_equals" else builder.assert_not_equals
        add(_characteristic(args), parse_value(args.get("value", [])), parse_status(args.get("status", GATT_SUCCESS)))
    elif name == "write_and_read":
        values = args.get("values")
        if values is None:
            values = [args.get("value", [])]
        builder.write_and_read(_characteristic(args), [parse_value(value) for value in values])
    else:
        raise ScriptError(f"Unknown step '{name}'")


def parse_scripts(data: Dict[str, Any]) -> List[Script]:
    """Build scripts from a parsed YAML document.

    Raises:
        ScriptError: If a test or step is malformed; the message names the test and step
    """
    if not isinstance(data, dict) or not isinstance(data.get("tests"), list):
        raise ScriptError("Script document must contain a 'tests' list")

    builders: Dict[str, ScriptBuilder] = {}
    scripts: List[Script] = []
    for i, entry in enumerate(data["tests"]):
        if not isinstance(entry, dict) or "name" not in entry:
            raise ScriptError(f"Test entry {i} missing 'name'")

        name = str(entry["name"])
        builder = ScriptBuilder(name, str(entry.get("reference", "")))
        for j, step in enumerate(entry.get("steps") or []):
            try:
                _add_step(builder, step, builders)
            except (ScriptError, TypeError, ValueError) as e:
                raise ScriptError(f"Test '{name}', step {j + 1}: {e}")

        builders[name] = builder
        scripts.append(builder.build())

    logger.debug(f"Parsed {len(scripts)} test script(s)")
    return scripts


def load_scripts(path: Path) -> List[Script]:
    """Load scripts from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ScriptError: If the document is malformed
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    return parse_scripts(data)
