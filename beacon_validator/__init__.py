"""UriBeacon conformance validator."""

__version__ = "0.3.0"
