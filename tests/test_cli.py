"""Tests for the fleetnode-install command line."""

from __future__ import annotations

from pathlib import Path

from click.testing import CliRunner
import pytest

from fleetnode import __version__, cli
from fleetnode.errors import MissingRequiredValue, UserDeclined
from fleetnode.settings import OVERWRITE, PATTERN, USER_AUTH


class RecordingOrchestrator:
    """Stands in for the real orchestrator and remembers what it was asked."""

    instances = []
    failure = None

    def __init__(self, runtime, confirm):
        self.runtime = runtime
        self.options = None
        RecordingOrchestrator.instances.append(self)

    def run(self, options):
        self.options = options
        if RecordingOrchestrator.failure is not None:
            raise RecordingOrchestrator.failure


@pytest.fixture
def profile(tmp_path: Path) -> Path:
    path = tmp_path / "profile.yaml"
    path.write_text(f"paths:\n  log_dir: {tmp_path / 'logs'}\n", encoding="utf-8")
    return path


@pytest.fixture
def orchestrator(monkeypatch):
    RecordingOrchestrator.instances = []
    RecordingOrchestrator.failure = None
    monkeypatch.setattr(cli, "Orchestrator", RecordingOrchestrator)
    return RecordingOrchestrator


def test_version_flag():
    result = CliRunner().invoke(cli.main, ["-v"])

    assert result.exit_code == 0
    assert result.output.strip() == f"fleetnode-install version: {__version__}"


def test_invalid_verbosity_is_rejected():
    result = CliRunner().invoke(cli.main, ["-l", "9"])

    assert result.exit_code == 2


def test_missing_profile_is_invalid_input(tmp_path: Path, orchestrator):
    result = CliRunner().invoke(cli.main, ["--profile", str(tmp_path / "absent.yaml")])

    assert result.exit_code == 2
    assert orchestrator.instances == []


def test_flags_become_overrides(profile: Path, orchestrator):
    result = CliRunner().invoke(
        cli.main,
        ["--profile", str(profile), "-p", "edge-pattern", "-u", "admin:pw", "-f", "-l", "1"],
    )

    assert result.exit_code == 0, result.output
    run = orchestrator.instances[0]
    assert run.options.overrides == {PATTERN: "edge-pattern", USER_AUTH: "admin:pw", OVERWRITE: True}
    assert run.runtime.log_dir == profile.parent / "logs"


def test_onboard_error_sets_exit_code(profile: Path, orchestrator):
    orchestrator.failure = MissingRequiredValue("HZN_ORG_ID must be set")

    result = CliRunner().invoke(cli.main, ["--profile", str(profile), "-l", "0"])

    assert result.exit_code == 1
    assert (profile.parent / "logs").is_dir()


def test_declined_run_exits_without_traceback(profile: Path, orchestrator):
    orchestrator.failure = UserDeclined("Exiting at users request")

    result = CliRunner().invoke(cli.main, ["--profile", str(profile), "-l", "0"])

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
