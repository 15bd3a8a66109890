"""Access to the on-node agent through its ``hzn`` command line."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import json
import logging
from pathlib import Path
import re
import subprocess
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import PrerequisiteMissing, RegistrationRejected
from .keyfile import read_keyfile
from .shell import CommandRunner

logger = logging.getLogger("fleetnode.agent")

HZN = "hzn"
AGENT_VERSION_PREFIX = "Horizon Agent"


class ConfigState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ConfigState":
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.UNCONFIGURED


@dataclass(frozen=True)
class AgentStatus:
    """Point-in-time snapshot of the agent; never reused after a mutation."""

    installed_version: Optional[str]
    config_state: ConfigState
    listening_port: Optional[int] = None
    active_workload_ids: Tuple[str, ...] = ()
    node_id: str = ""
    pattern: str = ""

    @classmethod
    def absent(cls) -> "AgentStatus":
        return cls(installed_version=None, config_state=ConfigState.UNCONFIGURED)

    @property
    def is_configured(self) -> bool:
        return self.config_state is ConfigState.CONFIGURED

    @property
    def has_workloads(self) -> bool:
        return bool(self.active_workload_ids)


class AgentStatusReader:
    """Read-only queries against the local agent."""

    def __init__(self, runner: Optional[CommandRunner] = None, listening_port: Optional[int] = None):
        self.runner = runner or CommandRunner()
        self.listening_port = listening_port

    def is_installed(self) -> bool:
        return self.runner.which(HZN) is not None

    def installed_version(self) -> Optional[str]:
        """Return the agent version reported by ``hzn version``, or ``None``."""

        if not self.is_installed():
            return None
        result = self.runner.run([HZN, "version"], check=False)
        for line in result.stdout.splitlines():
            if line.startswith(AGENT_VERSION_PREFIX):
                raw = line.split(":", 1)[-1].strip()
                return raw.split("-", 1)[0] or None
        return None

    def node_info(self) -> Dict[str, Any]:
        return self._json([HZN, "node", "list"]) or {}

    def agreement_ids(self) -> Tuple[str, ...]:
        agreements = self._json([HZN, "agreement", "list"]) or []
        ids: List[str] = []
        for entry in agreements:
            if isinstance(entry, dict):
                ids.append(str(entry.get("current_agreement_id") or entry.get("name") or entry))
            elif entry:
                ids.append(str(entry))
        return tuple(ids)

    def policy_document(self) -> str:
        """Current node policy as the agent prints it (JSON text)."""

        return self._run([HZN, "policy", "list"]).stdout.strip()

    def read_status(self) -> AgentStatus:
        if not self.is_installed():
            return AgentStatus.absent()
        info = self.node_info()
        configstate = info.get("configstate") or {}
        pattern = info.get("pattern") or ""
        status = AgentStatus(
            installed_version=self.installed_version(),
            config_state=ConfigState.parse(configstate.get("state")),
            listening_port=self.listening_port,
            active_workload_ids=self.agreement_ids(),
            node_id=str(info.get("id") or ""),
            pattern="" if pattern == "null" else str(pattern),
        )
        logger.info(
            "Current node state is: %s (%d workload(s))",
            status.config_state.value,
            len(status.active_workload_ids),
        )
        return status

    def _run(self, args: Sequence[str]):
        try:
            return self.runner.run(args)
        except subprocess.CalledProcessError as exc:
            raise PrerequisiteMissing(
                f"Unable to query the agent with '{' '.join(args)}'",
                stage="agent",
            ) from exc

    def _json(self, args: Sequence[str]) -> Any:
        output = self._run(args).stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise PrerequisiteMissing(
                f"Unexpected output from '{' '.join(args)}'", stage="agent"
            ) from exc


class AgentClient(AgentStatusReader):
    """Status reader plus the node-identity commands the agent CLI exposes."""

    def unregister(self) -> None:
        logger.info("Unregistering the node...")
        try:
            self.runner.run([HZN, "unregister", "-rf"])
        except subprocess.CalledProcessError as exc:
            raise RegistrationRejected("Unregistering the node failed", stage="unregister") from exc

    def create_node(self, node_auth: str, node_name: str, org_id: str, user_auth: str) -> None:
        self._registry_call(
            "create",
            [HZN, "exchange", "node", "create", "-n", node_auth, "-m", node_name,
             "-o", org_id, "-u", user_auth],
        )

    def confirm_node(self, node_auth: str, org_id: str) -> None:
        self._registry_call(
            "confirm",
            [HZN, "exchange", "node", "confirm", "-n", node_auth, "-o", org_id],
        )

    def register(
        self,
        *,
        node_name: str,
        org_id: str,
        user_auth: str,
        node_auth: str,
        pattern: Optional[str] = None,
        policy: Optional[Path] = None,
        service: Optional[str] = None,
        service_org: Optional[str] = None,
    ) -> None:
        args = [HZN, "register"]
        if pattern:
            args += ["-p", pattern]
        args += ["-m", node_name, "-o", org_id, "-u", user_auth, "-n", node_auth]
        if policy:
            args += ["--policy", str(policy)]
        if service:
            args += ["-s", service]
            if service_org:
                args += ["--serviceorg", service_org]
        self._registry_call("register", args)

    def _registry_call(self, operation: str, args: List[str]) -> None:
        try:
            self.runner.run(args)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.output or "").strip()
            raise RegistrationRejected(
                f"Registry rejected node {operation}: {detail or f'exit {exc.returncode}'}",
                stage=f"registration.{operation}",
            ) from exc


def agent_port_from_config(agent_config: Path, default: int) -> int:
    """``HZN_AGENT_PORT`` from the agent's key=value config, else ``default``."""

    if not agent_config.exists():
        logger.info("Cannot detect agent port as %s cannot be found, using %s", agent_config, default)
        return default
    raw = read_keyfile(agent_config).get("HZN_AGENT_PORT", "").strip()
    if not raw.isdigit():
        logger.info("%s does not contain HZN_AGENT_PORT, using %s", agent_config, default)
        return default
    return int(raw)


def agent_port_from_api_config(api_config: Path, current: int) -> int:
    """Port from the ``APIListen`` entry of the agent API config, if present."""

    if not api_config.exists():
        return current
    try:
        data = json.loads(api_config.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Unable to read %s: %s", api_config, exc)
        return current
    listen = _find_key(data, "APIListen")
    if isinstance(listen, str):
        match = re.search(r":(\d+)$", listen.strip())
        if match and int(match.group(1)) != current:
            logger.info("Using agent port %s", match.group(1))
            return int(match.group(1))
    return current


def _find_key(data: Any, key: str) -> Any:
    if isinstance(data, dict):
        if key in data:
            return data[key]
        for value in data.values():
            found = _find_key(value, key)
            if found is not None:
                return found
    return None


__all__ = [
    "AgentClient",
    "AgentStatus",
    "AgentStatusReader",
    "ConfigState",
    "agent_port_from_api_config",
    "agent_port_from_config",
]
