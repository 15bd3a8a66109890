"""Thin subprocess wrapper shared by every collaborator that shells out."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger("fleetnode.shell")


@dataclass
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run external commands, echoing them at DEBUG level first."""

    def __init__(self, cwd: Optional[Path] = None) -> None:
        self.cwd = cwd

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        logger.debug("+ %s", shlex.join(args))
        completed = subprocess.run(
            list(args),
            cwd=str(self.cwd) if self.cwd else None,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
        result = CommandResult(
            args=tuple(args),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if result.stderr.strip():
            logger.debug("stderr: %s", result.stderr.strip())
        if check and not result.ok:
            raise subprocess.CalledProcessError(
                result.returncode, list(args), output=result.stdout, stderr=result.stderr
            )
        return result

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


__all__ = ["CommandResult", "CommandRunner"]
