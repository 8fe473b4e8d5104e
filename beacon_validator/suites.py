"""Built-in UriBeacon configuration conformance tests."""

from typing import List

from beacon_validator.bluetooth.protocol import (
    ADV_TX_POWER_LEVELS_UUID,
    BEACON_PERIOD_UUID,
    FLAGS_UUID,
    GATT_INSUFFICIENT_AUTHORIZATION,
    GATT_INVALID_ATTRIBUTE_LENGTH,
    GATT_SUCCESS,
    GATT_WRITE_NOT_PERMITTED,
    LOCK_KEY_LENGTH,
    LOCK_STATE_UUID,
    LOCK_UUID,
    MAX_URI_LENGTH,
    RESET_UUID,
    TX_POWER_MODE_UUID,
    UNLOCK_UUID,
    URI_DATA_UUID,
    encode_uri,
)
from beacon_validator.script import Script, ScriptBuilder

TEST_URI = encode_uri("https://uribeacon.io/")
TEST_LOCK_KEY = bytes(range(LOCK_KEY_LENGTH))
WRONG_LOCK_KEY = bytes([0xFF] * LOCK_KEY_LENGTH)
TEST_FLAGS = 0x10
TEST_TX_POWER_LEVELS = bytes([0xE2, 0xED, 0xF8, 0x02])  # -30, -19, -8, 2 dBm
TX_POWER_MODE_MEDIUM = 2
TEST_BEACON_PERIOD = (1000).to_bytes(2, "little")

UNLOCKED = b"\x00"
LOCKED = b"\x01"

REFERENCE = "UriBeacon Configuration Service v2"


def _connected(name: str) -> ScriptBuilder:
    return ScriptBuilder(name, REFERENCE).connect()


def uribeacon_suite() -> List[Script]:
    """Return the standard UriBeacon configuration tests, in running order."""
    scripts = [
        ScriptBuilder("Connect to UriBeacon", REFERENCE).connect().disconnect(),
        _connected("Read lock state").assert_equals(LOCK_STATE_UUID, UNLOCKED).disconnect(),
        _connected("Write and read URI").write_and_read(URI_DATA_UUID, TEST_URI).disconnect(),
        _connected("Write oversized URI")
        .write(URI_DATA_UUID, bytes(MAX_URI_LENGTH + 1), GATT_INVALID_ATTRIBUTE_LENGTH)
        .disconnect(),
        _connected("Write and read flags").write_and_read(FLAGS_UUID, [bytes([TEST_FLAGS]), b"\x00"]).disconnect(),
        _connected("Write and read TX power levels")
        .write_and_read(ADV_TX_POWER_LEVELS_UUID, TEST_TX_POWER_LEVELS)
        .write_multi(
            ADV_TX_POWER_LEVELS_UUID,
            TEST_TX_POWER_LEVELS[:3],
            [GATT_INVALID_ATTRIBUTE_LENGTH, GATT_WRITE_NOT_PERMITTED],
        )
        .disconnect(),
        _connected("Write and read TX power mode")
        .write_and_read(TX_POWER_MODE_UUID, [bytes([mode]) for mode in range(4)])
        .write_multi(TX_POWER_MODE_UUID, b"\x04", [GATT_WRITE_NOT_PERMITTED, GATT_INVALID_ATTRIBUTE_LENGTH])
        .disconnect(),
        _connected("Write and read beacon period").write_and_read(BEACON_PERIOD_UUID, TEST_BEACON_PERIOD).disconnect(),
        _connected("Lock and unlock")
        .write(LOCK_UUID, TEST_LOCK_KEY)
        .assert_equals(LOCK_STATE_UUID, LOCKED)
        .write(URI_DATA_UUID, TEST_URI, GATT_INSUFFICIENT_AUTHORIZATION)
        .write(UNLOCK_UUID, WRONG_LOCK_KEY, GATT_INSUFFICIENT_AUTHORIZATION)
        .write(UNLOCK_UUID, TEST_LOCK_KEY, GATT_SUCCESS)
        .assert_equals(LOCK_STATE_UUID, UNLOCKED)
        .disconnect(),
        _connected("Reset")
        .write_and_read(URI_DATA_UUID, TEST_URI)
        .write(RESET_UUID, b"\x01")
        .assert_not_equals(URI_DATA_UUID, TEST_URI)
        .disconnect(),
    ]

    configure = (
        ScriptBuilder("configure")
        .write(URI_DATA_UUID, TEST_URI)
        .write(FLAGS_UUID, bytes([TEST_FLAGS]))
        .write(ADV_TX_POWER_LEVELS_UUID, TEST_TX_POWER_LEVELS)
        .write(TX_POWER_MODE_UUID, bytes([TX_POWER_MODE_MEDIUM]))
    )
    scripts.append(
        _connected("Advertisement matches configuration")
        .insert_actions(configure)
        .disconnect()
        .check_adv_packet()
        .assert_adv_flags(TEST_FLAGS)
        .assert_adv_tx_power(TEST_TX_POWER_LEVELS[TX_POWER_MODE_MEDIUM] - 256)
        .assert_adv_uri(TEST_URI)
    )

    return [builder.build() for builder in scripts]
