"""Installed-versus-available agent version reconciliation."""

from __future__ import annotations

import enum
import logging
import re
from typing import Optional, Tuple

from .errors import DowngradeRequiresOverwrite, UserDeclined
from .prompts import ConfirmationPort

logger = logging.getLogger("fleetnode.versions")

VERSION_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)+")


class Decision(enum.Enum):
    NOOP = "noop"
    INSTALL = "install"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


def parse_version(raw: str) -> Tuple[int, ...]:
    """Split a dotted version into integers, ignoring any non-numeric tail."""

    match = VERSION_PATTERN.match(raw.strip())
    if not match:
        raise ValueError(f"not a dotted numeric version: {raw!r}")
    return tuple(int(part) for part in match.group(0).split("."))


def is_valid_version(raw: Optional[str]) -> bool:
    return bool(raw) and VERSION_PATTERN.match(raw.strip()) is not None


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 using numeric ordering of the dotted components."""

    if left == right:
        return 0
    a, b = parse_version(left), parse_version(right)
    if a == b:
        return 0
    return -1 if a < b else 1


def reconcile(
    installed: Optional[str],
    available: Optional[str],
    *,
    overwrite: bool,
    batch_mode: bool,
    confirm: ConfirmationPort,
) -> Decision:
    """Decide what to do with the agent package.

    Upgrades are always allowed. A downgrade needs ``overwrite``; otherwise an
    interactive operator must answer ``y`` and a batch run fails outright.
    An unreadable installed version, or an install source whose version is not
    known up front (an apt repository), yields ``INSTALL``.
    """

    if not is_valid_version(installed):
        if installed:
            logger.info("Cannot read the installed agent version %r; installing.", installed)
        else:
            logger.info("Agent is not installed; installing.")
        return Decision.INSTALL

    if available is None:
        logger.info("Available version unknown; delegating to the package repository.")
        return Decision.INSTALL

    order = compare_versions(installed, available)
    if order == 0:
        logger.info(
            "Versions are equal: agent is %s and packages are %s. Don't need to install",
            installed,
            available,
        )
        return Decision.NOOP

    if order < 0:
        logger.info("Installed agent is %s; installing newer package %s.", installed, available)
        return Decision.UPGRADE

    logger.warning("Installed agent %s is newer than the packages %s", installed, available)
    if overwrite:
        return Decision.DOWNGRADE
    if batch_mode:
        raise DowngradeRequiresOverwrite(
            f"Installed agent {installed} is newer than {available}; rerun with overwrite",
            field="version",
            value=available,
        )
    if not confirm.confirm(
        "The installed agent is newer than one you're trying to install, continue?"
    ):
        raise UserDeclined("Exiting at users request", field="version", value=available)
    return Decision.DOWNGRADE


__all__ = ["Decision", "compare_versions", "is_valid_version", "parse_version", "reconcile"]
