"""Decide whether an existing registration must be torn down first."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from pathlib import Path
import socket
from typing import Callable, List, Optional, Tuple

from .agent import AgentStatus, AgentStatusReader
from .errors import UserDeclined
from .keyfile import read_keyfile
from .plan import Action, RegisterWith, UnregisterExisting, WaitForService
from .prompts import ConfirmationPort
from .settings import Settings

logger = logging.getLogger("fleetnode.node_state")


class NodeState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED_NO_WORKLOAD = "configured-no-workload"
    CONFIGURED_WITH_WORKLOAD = "configured-with-workload"


def classify(status: AgentStatus) -> NodeState:
    if not status.is_configured:
        return NodeState.UNCONFIGURED
    if status.has_workloads:
        return NodeState.CONFIGURED_WITH_WORKLOAD
    return NodeState.CONFIGURED_NO_WORKLOAD


@dataclass(frozen=True)
class NodeDecision:
    state: NodeState
    actions: Tuple[Action, ...]
    overwrite_node: bool

    @property
    def tears_down(self) -> bool:
        return any(isinstance(action, UnregisterExisting) for action in self.actions)

    @property
    def registers(self) -> bool:
        return any(isinstance(action, RegisterWith) for action in self.actions)


class NodeStateMachine:
    def __init__(
        self,
        agent: AgentStatusReader,
        confirm: ConfirmationPort,
        *,
        containerized: bool,
        local_policy_file: Path,
        agent_config: Optional[Path] = None,
        hostname: Callable[[], str] = socket.gethostname,
    ) -> None:
        self.agent = agent
        self.confirm = confirm
        self.containerized = containerized
        self.local_policy_file = local_policy_file
        self.agent_config = agent_config
        self.hostname = hostname

    def wants_overwrite(self, settings: Settings, status: AgentStatus) -> bool:
        """Ask once, up front, whether a registered node may be overwritten.

        Declining is not fatal; later confirmations still apply.
        """

        if settings.overwrite:
            return True
        if settings.batch_mode or not status.is_configured:
            return False
        logger.warning("Your node is registered")
        if self.confirm.confirm("Do you want to overwrite the current node configuration?"):
            logger.warning("The configuration will be overwritten...")
            return True
        logger.warning("You might be asked for overwrite confirmations later...")
        return False

    def decide(self, settings: Settings, status: AgentStatus, *, overwrite_node: bool) -> NodeDecision:
        state = classify(status)
        requested = bool(settings.pattern or settings.node_policy)
        logger.info("Node state is %s", state.value)

        if state is NodeState.CONFIGURED_NO_WORKLOAD and not requested:
            logger.info(
                "Neither a pattern nor node policy has been specified, skipping registration..."
            )
            return NodeDecision(state, (), overwrite_node)

        if state is NodeState.CONFIGURED_WITH_WORKLOAD:
            logger.warning(
                "The node currently has workload(s): %s", ", ".join(status.active_workload_ids)
            )
            if not (overwrite_node or settings.batch_mode):
                if not self.confirm.confirm(self._teardown_question(settings)):
                    raise UserDeclined(
                        "Exiting at users request; running workload agreements were kept",
                        stage="node-state",
                    )

        actions: List[Action] = []
        if state is not NodeState.UNCONFIGURED:
            logger.info("Unregistering the node and registering it again...")
            actions.append(UnregisterExisting(stop_container=self.containerized))

        if settings.skip_registration:
            logger.info("Skipping registration as it was requested")
        else:
            actions.append(self._register_action(settings, status, overwrite_node))
            if settings.wait_for_service:
                actions.append(
                    WaitForService(settings.wait_for_service, settings.wait_for_service_org)
                )
        return NodeDecision(state, tuple(actions), overwrite_node)

    def node_id(self, settings: Settings, status: AgentStatus, overwrite_node: bool) -> str:
        if settings.node_id:
            return settings.node_id
        if status.node_id and not overwrite_node:
            logger.info("Registering node with existing id %s", status.node_id)
            return status.node_id
        if self.agent_config is not None and self.agent_config.exists():
            device_id = read_keyfile(self.agent_config).get("HZN_DEVICE_ID", "").strip()
            if device_id:
                return device_id
        return self.hostname()

    def _register_action(
        self, settings: Settings, status: AgentStatus, overwrite_node: bool
    ) -> RegisterWith:
        node_id = self.node_id(settings, status, overwrite_node)
        if settings.pattern or settings.node_policy or overwrite_node:
            return RegisterWith(
                node_id=node_id,
                pattern=settings.pattern,
                policy=settings.node_policy,
            )

        if status.pattern:
            logger.info("Registering node with existing pattern %s", status.pattern)
            return RegisterWith(node_id=node_id, pattern=status.pattern)

        document = self.agent.policy_document() if self.agent.is_installed() else ""
        if document:
            logger.info("Registering node with existing policy %s", document)
            return RegisterWith(
                node_id=node_id,
                policy=self.local_policy_file,
                policy_document=document,
            )
        return RegisterWith(node_id=node_id)

    @staticmethod
    def _teardown_question(settings: Settings) -> str:
        if settings.pattern:
            return (
                "Do you want to unregister and register it with a new "
                f"{settings.pattern} pattern, continue?"
            )
        if settings.node_policy:
            return (
                "Do you want to unregister and register it with a new "
                f"{settings.node_policy} node policy, continue?"
            )
        return (
            "Do you want to unregister node and register it without pattern "
            "or node policy, continue?"
        )


__all__ = ["NodeDecision", "NodeState", "NodeStateMachine", "classify"]
