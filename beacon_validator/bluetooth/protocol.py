"""UriBeacon protocol definitions for the beacon validator.

This module defines:
- Configuration service and characteristic UUIDs
- GATT status codes and connection states
- Advertisement service data layout
- URI compression used by the URI data characteristic

UUID Scheme:
    Base UUID: ee0cXXXX-8786-40ba-ab96-99b91ac981d8
    The configuration service is 0x2080, characteristics follow at 0x2081..0x2089.

Advertisement service data (service 0xFED8):
    byte 0     flags
    byte 1     TX power level (signed dBm at 0 m)
    bytes 2..  compressed URI
"""

from typing import Dict, Iterable, List

from beacon_validator.errors import AdvertisementError

# Base UUID pattern
BASE_UUID = "ee0c{:04x}-8786-40ba-ab96-99b91ac981d8"

# Configuration service
CONFIG_SERVICE_UUID = BASE_UUID.format(0x2080)

# Configuration characteristics (0x2080)
LOCK_STATE_UUID = BASE_UUID.format(0x2081)
LOCK_UUID = BASE_UUID.format(0x2082)
UNLOCK_UUID = BASE_UUID.format(0x2083)
URI_DATA_UUID = BASE_UUID.format(0x2084)
FLAGS_UUID = BASE_UUID.format(0x2085)
ADV_TX_POWER_LEVELS_UUID = BASE_UUID.format(0x2086)
TX_POWER_MODE_UUID = BASE_UUID.format(0x2087)
BEACON_PERIOD_UUID = BASE_UUID.format(0x2088)
RESET_UUID = BASE_UUID.format(0x2089)

# Advertised service carrying the beacon payload
URI_SERVICE_UUID = "0000fed8-0000-1000-8000-00805f9b34fb"

CHARACTERISTICS: Dict[str, str] = {
    "lock_state": LOCK_STATE_UUID,
    "lock": LOCK_UUID,
    "unlock": UNLOCK_UUID,
    "uri_data": URI_DATA_UUID,
    "flags": FLAGS_UUID,
    "adv_tx_power_levels": ADV_TX_POWER_LEVELS_UUID,
    "tx_power_mode": TX_POWER_MODE_UUID,
    "beacon_period": BEACON_PERIOD_UUID,
    "reset": RESET_UUID,
}

CHARACTERISTIC_NAMES: Dict[str, str] = {uuid: name for name, uuid in CHARACTERISTICS.items()}

# GATT status codes (Android numbering, ATT error codes below 0x80)
GATT_SUCCESS = 0x00
GATT_READ_NOT_PERMITTED = 0x02
GATT_WRITE_NOT_PERMITTED = 0x03
GATT_INSUFFICIENT_AUTHENTICATION = 0x05
GATT_REQUEST_NOT_SUPPORTED = 0x06
GATT_INVALID_OFFSET = 0x07
GATT_INSUFFICIENT_AUTHORIZATION = 0x08
GATT_INVALID_ATTRIBUTE_LENGTH = 0x0D
GATT_INSUFFICIENT_ENCRYPTION = 0x0F
GATT_ERROR = 0x85
GATT_FAILURE = 0x101

GATT_STATUS_CODES: Dict[str, int] = {
    "success": GATT_SUCCESS,
    "read_not_permitted": GATT_READ_NOT_PERMITTED,
    "write_not_permitted": GATT_WRITE_NOT_PERMITTED,
    "insufficient_authentication": GATT_INSUFFICIENT_AUTHENTICATION,
    "request_not_supported": GATT_REQUEST_NOT_SUPPORTED,
    "invalid_offset": GATT_INVALID_OFFSET,
    "insufficient_authorization": GATT_INSUFFICIENT_AUTHORIZATION,
    "invalid_attribute_length": GATT_INVALID_ATTRIBUTE_LENGTH,
    "insufficient_encryption": GATT_INSUFFICIENT_ENCRYPTION,
    "error": GATT_ERROR,
    "failure": GATT_FAILURE,
}

# Connection states
STATE_DISCONNECTED = 0
STATE_CONNECTING = 1
STATE_CONNECTED = 2
STATE_DISCONNECTING = 3

# Protocol limits
LOCK_KEY_LENGTH = 16
MAX_URI_LENGTH = 18
TX_POWER_LEVELS_LENGTH = 4

# URI compression tables
URI_SCHEMES: List[str] = [
    "http://www.",
    "https://www.",
    "http://",
    "https://",
    "urn:uuid:",
]

URI_EXPANSIONS: List[str] = [
    ".com/",
    ".org/",
    ".edu/",
    ".net/",
    ".info/",
    ".biz/",
    ".gov/",
    ".com",
    ".org",
    ".edu",
    ".net",
    ".info",
    ".biz",
    ".gov",
]


def characteristic_name(uuid: str) -> str:
    """Return a display name for a characteristic UUID, or the UUID itself."""
    return CHARACTERISTIC_NAMES.get(uuid.lower(), uuid)


def resolve_characteristic(name_or_uuid: str) -> str:
    """Resolve a characteristic given by name or UUID to its UUID.

    Args:
        name_or_uuid: Characteristic name (e.g. "uri_data") or full UUID

    Returns:
        Lowercase characteristic UUID

    Raises:
        KeyError: If a name is given that is not a known characteristic
    """
    if name_or_uuid in CHARACTERISTICS:
        return CHARACTERISTICS[name_or_uuid]
    if len(name_or_uuid) == 36 and name_or_uuid.count("-") == 4:
        return name_or_uuid.lower()
    raise KeyError(f"Unknown characteristic: {name_or_uuid}")


def format_bytes(value: Iterable[int]) -> str:
    """Format bytes for failure messages, e.g. ``[0x01, 0x02]``."""
    return "[" + ", ".join(f"0x{b:02x}" for b in bytes(value)) + "]"


def _require_length(service_data: bytes, length: int, field: str) -> None:
    if len(service_data) < length:
        raise AdvertisementError(
            f"Advertisement payload too short for {field}: {format_bytes(service_data)}"
        )


def get_flags(service_data: bytes) -> int:
    """Return the flags byte of a UriBeacon advertisement payload."""
    _require_length(service_data, 1, "flags")
    return service_data[0]


def to_signed_byte(value: int) -> int:
    """Interpret an unsigned byte as a two's complement value."""
    return value - 256 if value > 127 else value


def get_tx_power_level(service_data: bytes) -> int:
    """Return the advertised TX power level as a signed dBm value."""
    _require_length(service_data, 2, "TX power level")
    return to_signed_byte(service_data[1])


def get_uri(service_data: bytes) -> bytes:
    """Return the compressed URI bytes of an advertisement payload."""
    _require_length(service_data, 2, "URI")
    return bytes(service_data[2:])


def is_valid_packet(service_data: bytes) -> bool:
    """Check that the payload holds at least flags and TX power."""
    return len(service_data) >= 2


def encode_uri(uri: str) -> bytes:
    """Compress a URI using the UriBeacon scheme and expansion codes.

    Args:
        uri: URI to encode

    Returns:
        Encoded bytes as written to the URI data characteristic
    """
    encoded = bytearray()
    position = 0

    # Longest scheme prefix wins ("http://www." before "http://")
    for code, scheme in sorted(enumerate(URI_SCHEMES), key=lambda item: -len(item[1])):
        if uri.startswith(scheme):
            encoded.append(code)
            position = len(scheme)
            break

    while position < len(uri):
        for code, expansion in enumerate(URI_EXPANSIONS):
            if uri.startswith(expansion, position):
                encoded.append(code)
                position += len(expansion)
                break
        else:
            encoded.extend(uri[position].encode("ascii"))
            position += 1

    return bytes(encoded)


def decode_uri(data: bytes) -> str:
    """Expand UriBeacon compressed URI bytes back into a URI string."""
    if not data:
        return ""

    parts = []
    start = 0
    if data[0] < len(URI_SCHEMES):
        parts.append(URI_SCHEMES[data[0]])
        start = 1

    for byte in data[start:]:
        if byte < len(URI_EXPANSIONS):
            parts.append(URI_EXPANSIONS[byte])
        else:
            parts.append(chr(byte))
    return "".join(parts)
