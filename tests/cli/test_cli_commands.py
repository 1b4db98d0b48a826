"""Tests for servicebed.cli: command smoke tests via CliRunner.

The harness is mocked, so no Docker is needed.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from servicebed import __version__
from servicebed.cli.app import app
from servicebed.core.errors import EngineUnavailable
from servicebed.harness.results import CheckResult, OverallStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_logging_setup():
    # CliRunner swaps sys.stderr; keep the global logging handlers untouched
    with patch("servicebed.cli.app.configure_logging") as mock_configure:
        yield mock_configure


def _result(status: OverallStatus) -> CheckResult:
    result = CheckResult(service="redis", image="redis:latest", endpoint="127.0.0.1:49153")
    result.add_step("start", True, 120.0)
    result.add_step("round_trip", status == OverallStatus.PASSED, 3.0, detail="SET/GET test_key -> test_value")
    result.mark_complete(status)
    return result


class TestRootCLI:
    def test_hello(self):
        result = runner.invoke(app, ["hello"])
        assert result.exit_code == 0
        assert result.stdout.strip() == "Hello, world!"

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"servicebed {__version__}" in result.stdout

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "check" in result.output

    def test_verbose_configures_debug(self, _no_logging_setup):
        runner.invoke(app, ["--verbose", "hello"])
        assert _no_logging_setup.call_args.kwargs["level"] == "DEBUG"


class TestPresetsCLI:
    def test_presets_table(self):
        result = runner.invoke(app, ["presets"])
        assert result.exit_code == 0
        assert "redis" in result.stdout
        assert "postgres" in result.stdout

    def test_presets_json(self):
        result = runner.invoke(app, ["presets", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert [p["name"] for p in payload] == ["postgres", "redis"]
        assert payload[1]["ports"] == [6379]


class TestCheckCLI:
    """Tests for 'servicebed check'."""

    @patch("servicebed.harness.checks.check_service", new_callable=AsyncMock)
    def test_check_passed_json(self, mock_check):
        mock_check.return_value = _result(OverallStatus.PASSED)
        result = runner.invoke(app, ["check", "redis", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["overall_status"] == "PASSED"

    @patch("servicebed.harness.checks.check_service", new_callable=AsyncMock)
    def test_check_failed_exit_code(self, mock_check):
        mock_check.return_value = _result(OverallStatus.FAILED)
        result = runner.invoke(app, ["check", "redis"])
        assert result.exit_code == 1
        assert "FAILED" in result.stdout
        assert "redis (session " in result.stdout

    @patch("servicebed.harness.checks.check_service", new_callable=AsyncMock)
    def test_check_timeout_applied_to_spec(self, mock_check):
        mock_check.return_value = _result(OverallStatus.PASSED)
        result = runner.invoke(app, ["check", "Postgres", "--timeout", "5", "--json"])
        assert result.exit_code == 0
        spec = mock_check.call_args.args[0]
        assert spec.service_name == "postgres"
        assert spec.startup_timeout == 5

    def test_check_unknown_preset(self):
        result = runner.invoke(app, ["check", "mysql"])
        assert result.exit_code == 1


class TestCleanupCLI:
    @patch("servicebed.harness.service.Harness.cleanup_orphans", new_callable=AsyncMock)
    def test_cleanup(self, mock_cleanup):
        mock_cleanup.return_value = 3
        result = runner.invoke(app, ["cleanup"])
        assert result.exit_code == 0
        assert "Removed 3 container(s)" in result.stdout

    @patch("servicebed.harness.service.Harness.cleanup_orphans", new_callable=AsyncMock)
    def test_cleanup_engine_unavailable(self, mock_cleanup):
        mock_cleanup.side_effect = EngineUnavailable("daemon down")
        result = runner.invoke(app, ["cleanup"])
        assert result.exit_code == 1


class TestMainModule:
    def test_main_prints_greeting(self, capsys):
        from servicebed.__main__ import main

        assert main() == 0
        assert capsys.readouterr().out == "Hello, world!\n"
