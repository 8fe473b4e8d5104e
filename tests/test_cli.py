"""Tests for the command-line runner."""

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from beacon_validator.cli import ConsoleReportSink, list_scripts, main, parse_arguments, select_scripts, write_report
from beacon_validator.errors import FailureKind, ScriptError
from beacon_validator.scan import ScanRecord
from beacon_validator.suite import SuiteResult, TestOutcome
from beacon_validator.suites import uribeacon_suite


def test_parse_arguments():
    args = parse_arguments(["--test", "Reset", "-t", "Lock and unlock", "--device", "AA:BB", "--stop-on-failure"])

    assert args.test == ["Reset", "Lock and unlock"]
    assert args.device == "AA:BB"
    assert args.stop_on_failure
    assert args.suite is None
    assert not args.list


def test_select_scripts_keeps_suite_order():
    scripts = uribeacon_suite()

    selected = select_scripts(scripts, ["Reset", "Read lock state"])

    assert [script.name for script in selected] == ["Read lock state", "Reset"]
    assert select_scripts(scripts, []) == scripts


def test_select_unknown_script():
    with pytest.raises(ScriptError, match="Unknown test"):
        select_scripts(uribeacon_suite(), ["Dance"])


def test_list_scripts(capsys):
    list_scripts(uribeacon_suite()[:2])

    out = capsys.readouterr().out
    assert "Connect to UriBeacon" in out
    assert "Read lock_state, expect [0x00]" in out


def test_main_lists_builtin_tests(tmp_path, capsys):
    assert main(["--list", "--config", str(tmp_path / "none.yml")]) == 0

    assert "Advertisement matches configuration" in capsys.readouterr().out


def test_main_lists_suite_file(tmp_path, capsys):
    suite = Path(__file__).parent.parent / "configs" / "uribeacon_suite.yml"

    assert main(["--list", "--suite", str(suite), "--config", str(tmp_path / "none.yml")]) == 0

    assert "Reject unknown TX power mode" in capsys.readouterr().out


def test_main_rejects_bad_suite(tmp_path):
    bad = tmp_path / "bad.yml"
    bad.write_text("tests:\n  - name: T\n    steps: [dance]\n")

    assert main(["--list", "--suite", str(bad), "--config", str(tmp_path / "none.yml")]) == 1
    assert main(["--list", "--suite", str(tmp_path / "missing.yml"), "--config", str(tmp_path / "none.yml")]) == 1


def test_write_report(tmp_path):
    result = SuiteResult(
        outcomes=[
            TestOutcome(name="Connect", passed=True),
            TestOutcome(
                name="Reset",
                passed=False,
                failed_step="Connect",
                reason="No UriBeacons in Config Mode found",
                failure_kind=FailureKind.NO_DEVICE_FOUND,
            ),
        ]
    )
    path = tmp_path / "out" / "report.yml"

    write_report(path, result)

    data = yaml.safe_load(path.read_text())
    assert data["outcomes"][0] == {
        "name": "Connect",
        "reference": "",
        "passed": True,
        "failed_step": None,
        "reason": None,
        "failure_kind": None,
    }
    assert data["outcomes"][1]["failure_kind"] == "no_device_found"


@pytest.mark.asyncio
async def test_console_sink_asks_until_valid_choice(capsys):
    answers = iter(["x", "7", "1"])
    chosen = asyncio.get_running_loop().create_future()
    sink = ConsoleReportSink(prompt=lambda text: next(answers))
    sink.resolver = chosen.set_result

    sink.multiple_candidates_found([ScanRecord(address="AA"), ScanRecord(address="BB")])

    assert await asyncio.wait_for(chosen, 2) == 1
    out = capsys.readouterr().out
    assert "[1] Unknown (BB)" in out
    assert "Not a number" in out


def test_main_runs_suite_with_bleak_backends(tmp_path):
    with patch("beacon_validator.cli.run_suite") as run_suite, patch("beacon_validator.cli.asyncio.run") as run:
        run.return_value = SuiteResult(outcomes=[TestOutcome(name="Reset", passed=True)])
        report = tmp_path / "report.yml"

        code = main(["--test", "Reset", "--report", str(report), "--config", str(tmp_path / "none.yml")])

    assert code == 0
    suite, device = run_suite.call_args[0]
    assert [test.name for test in suite.tests] == ["Reset"]
    assert device is None
    assert report.exists()
