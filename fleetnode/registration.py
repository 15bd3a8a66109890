"""Node identity creation and the final register call."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import secrets
import socket
import string
from typing import Callable, Optional

from .agent import AgentClient
from .errors import RegistrationRejected
from .plan import RegisterWith, WaitForService
from .settings import Settings

logger = logging.getLogger("fleetnode.registration")

TOKEN_LENGTH = 45
TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


@dataclass(frozen=True)
class Credentials:
    org_id: str
    user_auth: str
    node_id: str
    node_token: str

    @property
    def node_auth(self) -> str:
        return f"{self.node_id}:{self.node_token}"


@dataclass(frozen=True)
class RegistrationResult:
    node_id: str
    node_name: str
    pattern: str = ""
    policy: Optional[Path] = None
    skipped: bool = False


class RegistrationEngine:
    """Owns the node credentials for one run; nothing is persisted here."""

    def __init__(
        self,
        agent: AgentClient,
        *,
        node_name: Optional[str] = None,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.agent = agent
        self.node_name = node_name or socket.gethostname()
        self.token_factory = token_factory
        self._credentials: Optional[Credentials] = None

    def credentials(self, settings: Settings, node_id: str) -> Credentials:
        """Build the credential pair once; later calls return the same value."""

        if self._credentials is not None:
            return self._credentials

        if settings.node_auth:
            logger.info("Found HZN_EXCHANGE_NODE_AUTH variable, using it...")
            supplied_id, _, token = settings.node_auth.partition(":")
            if not token:
                raise RegistrationRejected(
                    "HZN_EXCHANGE_NODE_AUTH must have the form <node id>:<token>",
                    field="HZN_EXCHANGE_NODE_AUTH",
                )
            credentials = Credentials(
                settings.org_id, settings.user_auth, supplied_id or node_id, token
            )
        else:
            logger.info("Node id is %s; generating node token...", node_id)
            credentials = Credentials(
                settings.org_id, settings.user_auth, node_id, self.token_factory()
            )
        self._credentials = credentials
        return credentials

    def create_node(self, credentials: Credentials) -> None:
        logger.info("Creating node %s in org %s...", credentials.node_id, credentials.org_id)
        self.agent.create_node(
            credentials.node_auth, self.node_name, credentials.org_id, credentials.user_auth
        )
        logger.info("Verifying node %s...", credentials.node_id)
        self.agent.confirm_node(credentials.node_auth, credentials.org_id)

    def create_and_register(
        self,
        settings: Settings,
        action: RegisterWith,
        wait: Optional[WaitForService] = None,
    ) -> RegistrationResult:
        status = self.agent.read_status()
        if status.is_configured:
            logger.info("Node is registered already, skipping registration...")
            return RegistrationResult(action.node_id, self.node_name, skipped=True)

        credentials = self.credentials(settings, action.node_id)
        self.create_node(credentials)

        pattern, policy = action.pattern, action.policy
        if pattern and policy:
            logger.warning(
                "Pattern %s and policy %s were specified; pattern registration overrides the policy.",
                pattern,
                policy,
            )
            policy = None
        if policy is not None and action.policy_document is not None:
            policy.write_text(action.policy_document + "\n", encoding="utf-8")
            logger.info("Saved the current node policy to %s", policy)

        service = wait.service if wait else None
        service_org = wait.org if wait and wait.service else None
        if pattern:
            logger.info("Registering node with %s pattern", pattern)
        elif policy:
            logger.info("Node policy %s was specified, registering...", policy)
        else:
            logger.info("Neither a pattern nor node policy were specified, registering without it...")
        if service:
            logger.info("Waiting for service %s to start on this node...", service)

        self.agent.register(
            node_name=self.node_name,
            org_id=credentials.org_id,
            user_auth=credentials.user_auth,
            node_auth=credentials.node_auth,
            pattern=pattern or None,
            policy=policy,
            service=service,
            service_org=service_org or None,
        )
        return RegistrationResult(credentials.node_id, self.node_name, pattern, policy)


__all__ = [
    "Credentials",
    "RegistrationEngine",
    "RegistrationResult",
    "TOKEN_LENGTH",
    "generate_token",
]
