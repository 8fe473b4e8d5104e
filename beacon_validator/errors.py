"""Exception types and failure classification for the beacon validator."""

from enum import Enum


class ValidatorError(Exception):
    """Base class for validator errors."""


class EmptyQueueError(ValidatorError, LookupError):
    """Raised when the action queue is consulted past its sentinel.

    This signals a bug in the engine, never a beacon failure.
    """


class ScriptError(ValidatorError, ValueError):
    """Raised when a test script or script definition is malformed."""


class AdvertisementError(ValidatorError, ValueError):
    """Raised when an advertisement payload is too short to inspect."""


class FailureKind(str, Enum):
    """Why a test run failed."""

    PROTOCOL_MISMATCH = "protocol_mismatch"
    NO_DEVICE_FOUND = "no_device_found"
    LINK_DROPPED = "link_dropped"
    USER_STOPPED = "user_stopped"
