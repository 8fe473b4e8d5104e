"""Report sink interface receiving progress notifications from a test."""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from beacon_validator.logging_config import get_logger
from beacon_validator.scan import ScanRecord

logger = get_logger(__name__)


class ReportSink(ABC):
    """Receiver of test progress notifications."""

    @abstractmethod
    def test_started(self) -> None:
        pass

    @abstractmethod
    def waiting_for_config_mode(self) -> None:
        """The test is about to look for a beacon in config mode."""

    @abstractmethod
    def connected_to_beacon(self) -> None:
        pass

    @abstractmethod
    def multiple_candidates_found(self, candidates: List[ScanRecord]) -> None:
        """Several beacons answered a scan.

        The test is suspended until the caller picks one with
        ``continue_test(index)``.
        """

    @abstractmethod
    def test_completed(self, device: Any, link: Optional[Any]) -> None:
        """The test finished, passed or failed. Fires exactly once per run."""


class LoggingReportSink(ReportSink):
    """Report sink that only logs notifications."""

    def test_started(self) -> None:
        logger.info("Test started")

    def waiting_for_config_mode(self) -> None:
        logger.info("Waiting for a beacon in config mode")

    def connected_to_beacon(self) -> None:
        logger.info("Connected to beacon")

    def multiple_candidates_found(self, candidates: List[ScanRecord]) -> None:
        labels = ", ".join(candidate.label() for candidate in candidates)
        logger.info(f"Multiple beacons found: {labels}")

    def test_completed(self, device: Any, link: Optional[Any]) -> None:
        logger.info("Test completed")
