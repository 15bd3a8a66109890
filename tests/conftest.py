"""Shared fakes for the installer tests."""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
import subprocess
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from fleetnode.configuration import RuntimeProfile, load_runtime_configuration
from fleetnode.prompts import ConfirmationPort
from fleetnode.shell import CommandResult


class FakeRunner:
    """Command runner that answers from a script and records every call."""

    def __init__(
        self,
        responses: Optional[Dict[Tuple[str, ...], Tuple[int, str]]] = None,
        tools: Iterable[str] = (),
    ) -> None:
        self.responses = dict(responses or {})
        self.tools = set(tools)
        self.calls: List[Tuple[str, ...]] = []

    def run(self, args: Sequence[str], *, check: bool = True, input_text=None, timeout=None):
        key = tuple(args)
        self.calls.append(key)
        returncode, stdout = self.responses.get(key, (0, ""))
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, list(key), output=stdout, stderr="boom")
        return CommandResult(args=key, returncode=returncode, stdout=stdout, stderr="")

    def which(self, name: str) -> Optional[str]:
        return f"/usr/bin/{name}" if name in self.tools else None


class ScriptedConfirmation(ConfirmationPort):
    """Answers questions from a fixed list and remembers what was asked."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.questions: List[str] = []

    def confirm(self, question: str) -> bool:
        self.questions.append(question)
        answer = self.answers.pop(0) if self.answers else ""
        return answer.strip() == "y"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def confirmation():
    return ScriptedConfirmation


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime(tmp_path: Path) -> RuntimeProfile:
    """Default runtime profile with every node-level file moved under ``tmp_path``."""

    base = RuntimeProfile.from_bundle(load_runtime_configuration())
    return dataclasses.replace(
        base,
        agent_config=tmp_path / "etc" / "default" / "horizon",
        agent_api_config=tmp_path / "etc" / "horizon" / "anax.json",
        mac_cli_config=tmp_path / "home" / ".hzn" / "hzn.json",
        log_dir=tmp_path / "logs",
        autocomplete_scripts=(tmp_path / "hzn_bash_autocomplete.sh",),
    )


@pytest.fixture(autouse=True)
def _restore_fleetnode_logger():
    yield
    logger = logging.getLogger("fleetnode")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
