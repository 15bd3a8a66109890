"""The ordered, immutable list of actions a run will execute."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Type, TypeVar, Union


@dataclass(frozen=True)
class Install:
    version: Optional[str]

    def describe(self) -> str:
        return f"install({self.version or 'repository'})"


@dataclass(frozen=True)
class Upgrade:
    version: str

    def describe(self) -> str:
        return f"upgrade({self.version})"


@dataclass(frozen=True)
class Downgrade:
    version: str

    def describe(self) -> str:
        return f"downgrade({self.version})"


@dataclass(frozen=True)
class UnregisterExisting:
    stop_container: bool = False

    def describe(self) -> str:
        return "unregister" + (" + stop container" if self.stop_container else "")


@dataclass(frozen=True)
class RegisterWith:
    """Create the node identity and register with at most one selector.

    ``policy_document`` is set when the policy is a snapshot of the node's
    current policy; it is written to ``policy`` right before registering.
    """

    node_id: str
    pattern: str = ""
    policy: Optional[Path] = None
    policy_document: Optional[str] = None

    def describe(self) -> str:
        if self.pattern:
            return f"register(pattern={self.pattern})"
        if self.policy:
            return f"register(policy={self.policy})"
        return "register()"


@dataclass(frozen=True)
class WaitForService:
    service: str
    org: str = ""

    def describe(self) -> str:
        return f"wait-for-service({self.service}{'@' + self.org if self.org else ''})"


Action = Union[Install, Upgrade, Downgrade, UnregisterExisting, RegisterWith, WaitForService]
PACKAGE_ACTIONS = (Install, Upgrade, Downgrade)

A = TypeVar("A")


@dataclass(frozen=True)
class ReconciliationPlan:
    actions: Tuple[Action, ...] = ()

    @classmethod
    def build(cls, *groups: List[Action]) -> "ReconciliationPlan":
        ordered: List[Action] = []
        for group in groups:
            ordered.extend(group)
        return cls(tuple(ordered))

    def __iter__(self) -> Iterator[Action]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def of_type(self, action_type: Type[A]) -> List[A]:
        return [action for action in self.actions if isinstance(action, action_type)]

    def first(self, action_type: Type[A]) -> Optional[A]:
        found = self.of_type(action_type)
        return found[0] if found else None

    @property
    def package_action(self) -> Optional[Action]:
        for action in self.actions:
            if isinstance(action, PACKAGE_ACTIONS):
                return action
        return None

    def describe(self) -> str:
        if not self.actions:
            return "(nothing to do)"
        return " -> ".join(action.describe() for action in self.actions)


__all__ = [
    "Action",
    "Downgrade",
    "Install",
    "ReconciliationPlan",
    "RegisterWith",
    "UnregisterExisting",
    "Upgrade",
    "WaitForService",
]
