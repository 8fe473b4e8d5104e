"""Run a list of scripts in order against one beacon."""

from typing import List, Optional, Sequence

from pydantic import BaseModel

from beacon_validator.config_loader import ValidatorSettings
from beacon_validator.errors import FailureKind
from beacon_validator.link import LinkEventAdapter
from beacon_validator.logging_config import get_logger
from beacon_validator.report import ReportSink
from beacon_validator.scan import Scanner
from beacon_validator.script import Script
from beacon_validator.sequencer import ConformanceTest, LinkFactory

logger = get_logger(__name__)


class TestOutcome(BaseModel):
    """Verdict of one test in a suite."""

    __test__ = False  # not a pytest class

    name: str
    reference: str = ""
    passed: bool
    failed_step: Optional[str] = None
    reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None


class SuiteResult(BaseModel):
    """Verdicts of a suite run."""

    outcomes: List[TestOutcome] = []

    @property
    def passed(self) -> bool:
        return bool(self.outcomes) and all(outcome.passed for outcome in self.outcomes)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.passed)


def outcome_of(test: ConformanceTest) -> TestOutcome:
    """Summarize a finished test."""
    failed_step = next((action for action in test.test_steps if action.failed), None)
    return TestOutcome(
        name=test.name,
        reference=test.reference,
        passed=test.is_finished and not test.is_failed,
        failed_step=failed_step.describe() if failed_step else None,
        reason=failed_step.failure_reason if failed_step else None,
        failure_kind=test.failure_kind,
    )


class ConformanceSuite:
    """Run scripts one after the other, handing the beacon and its link along.

    All tests share one event adapter. When a test completes, the device it
    tested and its link (if still up) become the starting point of the next
    test, so a script that ends connected saves the next one a scan.
    """

    def __init__(
        self,
        scripts: Sequence[Script],
        sink: ReportSink,
        scanner: Scanner,
        link_factory: LinkFactory,
        settings: Optional[ValidatorSettings] = None,
        stop_on_failure: bool = False,
    ):
        self.settings = settings or ValidatorSettings()
        self.stop_on_failure = stop_on_failure
        self.events = LinkEventAdapter()
        self.tests: List[ConformanceTest] = [
            ConformanceTest(script, sink, scanner, link_factory, self.settings) for script in scripts
        ]
        self._current: Optional[ConformanceTest] = None
        self._stopped = False

    @property
    def current(self) -> Optional[ConformanceTest]:
        return self._current

    async def run(self, device=None) -> SuiteResult:
        """Run every test in order and collect their verdicts.

        Args:
            device: Beacon to test; when omitted the first test scans for one
        """
        result = SuiteResult()
        link = None
        for test in self.tests:
            if self._stopped:
                break
            logger.info(f"Starting test '{test.name}'")
            self._current = test
            test.run(device, link, self.events)
            await test.wait_until_finished()

            outcome = outcome_of(test)
            result.outcomes.append(outcome)
            device, link = test.device, test.link

            if not outcome.passed:
                logger.warning(f"Test '{test.name}' failed: {outcome.reason}")
                if self.stop_on_failure or outcome.failure_kind == FailureKind.USER_STOPPED:
                    break

        self._current = None
        return result

    def continue_test(self, index: int) -> None:
        """Pick a beacon for the current test after an ambiguous scan."""
        if self._current is None:
            raise RuntimeError("No test is running")
        self._current.continue_test(index)

    def stop(self) -> None:
        """Stop the current test and skip the rest."""
        self._stopped = True
        if self._current is not None:
            self._current.stop_test()
