"""Failure taxonomy for a node onboarding run."""

from __future__ import annotations

from typing import Optional

EXIT_FAILURE = 1
EXIT_INVALID_INPUT = 2


class OnboardError(Exception):
    """Base class for every terminal failure of an onboarding run."""

    exit_code = EXIT_FAILURE
    stage = "onboard"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.value = value
        if stage:
            self.stage = stage

    def __str__(self) -> str:
        context = []
        if self.field:
            context.append(f"field={self.field}")
        if self.value:
            context.append(f"value={self.value}")
        suffix = f" ({', '.join(context)})" if context else ""
        return f"[{self.stage}] {self.message}{suffix}"


class UnsupportedPlatform(OnboardError):
    stage = "platform"


class MissingRequiredValue(OnboardError):
    stage = "settings"


class ConflictingSelectors(OnboardError):
    stage = "settings"


class RegistryUnreachable(OnboardError):
    stage = "settings"


class DowngradeRequiresOverwrite(OnboardError):
    stage = "version"


class UserDeclined(OnboardError):
    """Operator answered something other than ``y``; nothing was changed."""

    stage = "confirmation"


class ServiceTimeout(OnboardError):
    stage = "service"


class RegistrationRejected(OnboardError):
    stage = "registration"


class PrerequisiteMissing(OnboardError):
    stage = "prerequisites"


class InvalidInput(OnboardError):
    exit_code = EXIT_INVALID_INPUT
    stage = "input"


__all__ = [
    "EXIT_FAILURE",
    "EXIT_INVALID_INPUT",
    "ConflictingSelectors",
    "DowngradeRequiresOverwrite",
    "InvalidInput",
    "MissingRequiredValue",
    "OnboardError",
    "PrerequisiteMissing",
    "RegistrationRejected",
    "RegistryUnreachable",
    "ServiceTimeout",
    "UnsupportedPlatform",
    "UserDeclined",
]
