"""Bluetooth LE protocol data and bleak-backed capabilities."""

from beacon_validator.bluetooth.protocol import (
    CONFIG_SERVICE_UUID,
    GATT_SUCCESS,
    URI_SERVICE_UUID,
)

__all__ = [
    "CONFIG_SERVICE_UUID",
    "GATT_SUCCESS",
    "URI_SERVICE_UUID",
]
