"""Command-line runner for UriBeacon conformance tests.

Usage:
    beacon-validator [--suite FILE] [--test NAME] [--device ADDRESS] [--list]
                     [--report FILE] [--stop-on-failure] [--config FILE]
                     [--adapter NAME] [--verbose]

Without --suite the built-in UriBeacon tests are run. Put the beacon in
config mode before starting; when several beacons are found you are asked
to pick one.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

import yaml

from beacon_validator import __version__
from beacon_validator.config_loader import ConfigLoader, config_loader
from beacon_validator.errors import ScriptError
from beacon_validator.logging_config import get_logger, setup_logging
from beacon_validator.report import ReportSink
from beacon_validator.scan import ScanRecord
from beacon_validator.script import Script
from beacon_validator.script_loader import load_scripts
from beacon_validator.suite import ConformanceSuite, SuiteResult
from beacon_validator.suites import uribeacon_suite

# Logger will be initialized in main() after logging setup
logger = None


class Colors:
    """ANSI color codes for terminal output."""

    HEADER = "\033[95m"
    OKCYAN = "\033[96m"
    OKGREEN = "\033[92m"
    WARNING = "\033[93m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"
    BOLD = "\033[1m"


def print_header(text: str):
    """Print a header."""
    print(f"\n{Colors.HEADER}{Colors.BOLD}{'=' * 70}{Colors.ENDC}")
    print(f"{Colors.HEADER}{Colors.BOLD}{text}{Colors.ENDC}")
    print(f"{Colors.HEADER}{Colors.BOLD}{'=' * 70}{Colors.ENDC}\n")


def print_success(text: str):
    """Print success message."""
    print(f"{Colors.OKGREEN}✓ {text}{Colors.ENDC}")


def print_error(text: str):
    """Print error message."""
    print(f"{Colors.FAIL}✗ {text}{Colors.ENDC}")


def print_info(text: str):
    """Print info message."""
    print(f"{Colors.OKCYAN}→ {text}{Colors.ENDC}")


def print_warning(text: str):
    """Print warning message."""
    print(f"{Colors.WARNING}⚠ {text}{Colors.ENDC}")


class ConsoleReportSink(ReportSink):
    """Print test progress and ask the user to pick among several beacons."""

    def __init__(self, prompt: Callable[[str], str] = input):
        self.prompt = prompt
        self.resolver: Optional[Callable[[int], None]] = None
        self._tasks = set()

    def test_started(self) -> None:
        pass

    def waiting_for_config_mode(self) -> None:
        print_info("Waiting for a beacon in config mode...")

    def connected_to_beacon(self) -> None:
        print_success("Connected to beacon")

    def multiple_candidates_found(self, candidates: List[ScanRecord]) -> None:
        print_warning(f"Found {len(candidates)} beacons in config mode:")
        for i, candidate in enumerate(candidates):
            print(f"  [{i}] {candidate.label()}")
        task = asyncio.get_running_loop().create_task(self._choose(len(candidates)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _choose(self, count: int) -> None:
        loop = asyncio.get_running_loop()
        while True:
            answer = await loop.run_in_executor(None, self.prompt, f"Beacon to test [0-{count - 1}]: ")
            try:
                index = int(answer.strip())
            except ValueError:
                print_error(f"Not a number: {answer!r}")
                continue
            if 0 <= index < count:
                break
            print_error(f"Pick a number between 0 and {count - 1}")
        if self.resolver is not None:
            self.resolver(index)

    def test_completed(self, device: Any, link: Optional[Any]) -> None:
        pass


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="UriBeacon configuration conformance tests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the built-in tests against the beacon found in config mode
  beacon-validator

  # Run selected tests from a suite file against a known beacon
  beacon-validator --suite configs/uribeacon_suite.yml --test "Lock and unlock" --device AA:BB:CC:DD:EE:FF

  # Write a YAML report and stop at the first failure
  beacon-validator --report results.yml --stop-on-failure
        """,
    )
    parser.add_argument("--suite", "-s", type=Path, help="YAML test suite (default: built-in UriBeacon tests)")
    parser.add_argument("--test", "-t", action="append", default=[], help="Run only this test (repeatable)")
    parser.add_argument("--device", "-d", type=str, help="Beacon address (skips the config-mode scan)")
    parser.add_argument("--list", "-l", action="store_true", help="List the tests and their steps, then exit")
    parser.add_argument("--report", "-r", type=Path, help="Write results to this YAML file")
    parser.add_argument("--stop-on-failure", action="store_true", help="Skip remaining tests after a failure")
    parser.add_argument("--config", "-c", type=Path, help="Validator configuration file")
    parser.add_argument("--adapter", type=str, help="Bluetooth adapter to use (e.g. hci0)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def select_scripts(scripts: List[Script], names: List[str]) -> List[Script]:
    """Keep the scripts named in ``names``, in suite order.

    Raises:
        ScriptError: If a name matches no script
    """
    if not names:
        return scripts
    known = {script.name for script in scripts}
    unknown = [name for name in names if name not in known]
    if unknown:
        raise ScriptError(f"Unknown test(s): {', '.join(unknown)}")
    return [script for script in scripts if script.name in names]


def list_scripts(scripts: List[Script]) -> None:
    """Print every test with its steps."""
    for script in scripts:
        print(f"{Colors.BOLD}{script.name}{Colors.ENDC}" + (f"  ({script.reference})" if script.reference else ""))
        for i, action in enumerate(script.steps, start=1):
            print(f"  {i:2d}. {action.describe()}")


def print_results(result: SuiteResult) -> None:
    """Print the verdict of every test."""
    print_header("Results")
    for outcome in result.outcomes:
        if outcome.passed:
            print_success(outcome.name)
        else:
            print_error(f"{outcome.name}: {outcome.failed_step}")
            print(f"    {outcome.reason}")
    if result.passed:
        print_success(f"All {len(result.outcomes)} tests passed")
    else:
        print_error(f"{result.failed_count} of {len(result.outcomes)} tests failed")


def write_report(path: Path, result: SuiteResult) -> None:
    """Write suite results as YAML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(result.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)


async def run_suite(suite: ConformanceSuite, device: Optional[str]) -> SuiteResult:
    """Run the suite, stopping the current test if the run is cancelled."""
    try:
        return await suite.run(device)
    except asyncio.CancelledError:
        suite.stop()
        raise


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the validator CLI."""
    global logger
    args = parse_arguments(argv)

    loader = ConfigLoader(args.config) if args.config else config_loader
    settings = loader.get_settings(adapter=args.adapter)
    setup_logging(verbose=args.verbose, log_level=settings.log_level)
    logger = get_logger(__name__)

    suite_path = args.suite or loader.get_suite_path()
    try:
        scripts = load_scripts(suite_path) if suite_path else uribeacon_suite()
        scripts = select_scripts(scripts, args.test)
    except FileNotFoundError:
        logger.error(f"Suite file not found: {suite_path}")
        return 1
    except ScriptError as e:
        logger.error(f"Invalid suite: {e}")
        return 1

    if args.list:
        list_scripts(scripts)
        return 0

    # bleak is only needed when talking to a radio
    from beacon_validator.bluetooth.bleak_link import BleakScannerBackend, bleak_link_factory

    print_header(f"UriBeacon Validator {__version__}")
    print_info(f"{len(scripts)} test(s) selected")

    sink = ConsoleReportSink()
    suite = ConformanceSuite(
        scripts,
        sink,
        BleakScannerBackend(adapter=settings.adapter),
        bleak_link_factory(settings),
        settings,
        stop_on_failure=args.stop_on_failure,
    )
    sink.resolver = suite.continue_test

    try:
        result = asyncio.run(run_suite(suite, args.device))
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 1

    print_results(result)
    if args.report:
        write_report(args.report, result)
        print_info(f"Report written to {args.report}")
    return 0 if result.passed else 1


if __name__ == "__main__":
    sys.exit(main())
