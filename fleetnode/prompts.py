"""Yes/no confirmation capability used by the decision stages."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.markup import escape

logger = logging.getLogger("fleetnode.prompts")

CONFIRM_ANSWER = "y"


class ConfirmationPort:
    """Ask the operator a yes/no question; only a literal ``y`` confirms."""

    interactive = True

    def confirm(self, question: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class ConsoleConfirmation(ConfirmationPort):
    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def confirm(self, question: str) -> bool:
        self.console.print(f"[bold yellow]{escape(question)}[/] {escape('[y/N]')}: ", end="")
        try:
            answer = input()
        except EOFError:
            answer = ""
        confirmed = answer.strip() == CONFIRM_ANSWER
        logger.debug("Prompt %r answered %r (confirmed=%s).", question, answer, confirmed)
        return confirmed


class BatchConfirmation(ConfirmationPort):
    """Non-interactive runs never have a terminal; every question is declined."""

    interactive = False

    def confirm(self, question: str) -> bool:
        logger.warning("Batch mode: declining prompt %r.", question)
        return False


__all__ = ["BatchConfirmation", "CONFIRM_ANSWER", "ConfirmationPort", "ConsoleConfirmation"]
