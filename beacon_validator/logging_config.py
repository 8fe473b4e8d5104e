"""Logging setup for the validator CLI.

The level comes from ``--verbose`` (DEBUG), then ``validator.log_level`` in
the config file, then the ``LOG_LEVEL`` environment variable, and defaults to
WARNING so a plain run only prints the colored verdicts of the CLI.

Verbose runs prefix each record with the milliseconds since start-up, which
makes the order of link operations and their completions easy to follow.
bleak logs every D-Bus message at DEBUG and is held at INFO or above.
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"
VERBOSE_FORMAT = "%(relativeCreated)8.0fms %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_level: Optional[str] = None) -> None:
    """Configure the root logger for a validator run.

    Args:
        verbose: Force DEBUG with timestamps (overrides other settings)
        log_level: Level name from the config file (DEBUG, INFO, WARNING, ERROR)
    """
    if verbose:
        level = logging.DEBUG
    elif log_level:
        level = getattr(logging, log_level.upper(), logging.WARNING)
    else:
        env_level = os.environ.get("LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, env_level, logging.WARNING)

    logging.basicConfig(
        level=level,
        format=VERBOSE_FORMAT if verbose else DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("bleak").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a validator module (pass ``__name__``)."""
    return logging.getLogger(name)
