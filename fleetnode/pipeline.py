"""Onboarding orchestration: build the reconciliation plan, then execute it.

Planning reads system state, resolves settings and asks every confirmation
question. Nothing on the node or in the exchange is changed until
:meth:`Orchestrator.execute` runs the finished plan top to bottom.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import socket
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from .agent import AgentClient, AgentStatus, agent_port_from_api_config, agent_port_from_config
from .batch import extract_install_archive, find_node_id, local_addresses
from .configuration import RuntimeProfile
from .errors import InvalidInput, PrerequisiteMissing
from .exchange import ExchangeClient
from .installers import PackageSource, PlatformInstaller, select_installer
from .keyfile import update_keyfile
from .node_state import NodeDecision, NodeStateMachine
from .plan import (
    Action,
    Downgrade,
    Install,
    ReconciliationPlan,
    RegisterWith,
    UnregisterExisting,
    Upgrade,
    WaitForService,
)
from .profiler import PlatformProfile, detect
from .prompts import BatchConfirmation, ConfirmationPort
from .registration import RegistrationEngine, RegistrationResult, generate_token
from .settings import (
    BATCH_MODE,
    CSS_URL,
    EXCHANGE_URL,
    MGMT_HUB_CERT,
    NODE_ID,
    Settings,
    SettingsResolver,
)
from .shell import CommandRunner
from .versions import Decision, reconcile

logger = logging.getLogger("fleetnode.pipeline")

DEVICE_ID = "HZN_DEVICE_ID"


@dataclass(frozen=True)
class RunOptions:
    """Inputs collected from the command line."""

    overrides: Mapping[str, Any] = field(default_factory=dict)
    config_file: Optional[Path] = None
    install_source: Optional[str] = None
    apt_key: Optional[Path] = None
    apt_branch: Optional[str] = None
    install_archive: Optional[Path] = None


@dataclass(frozen=True)
class PlannedRun:
    platform: PlatformProfile
    settings: Settings
    installer: PlatformInstaller
    agent_port: int
    status: AgentStatus
    version_decision: Decision
    node: NodeDecision
    plan: ReconciliationPlan


@dataclass(frozen=True)
class RunOutcome:
    plan: ReconciliationPlan
    registration: Optional[RegistrationResult] = None
    agent_config_changed: bool = False
    autocomplete_rc: Optional[Path] = None


def package_actions(decision: Decision, available: Optional[str]) -> List[Action]:
    if decision is Decision.NOOP:
        return []
    if decision is Decision.UPGRADE:
        return [Upgrade(available or "")]
    if decision is Decision.DOWNGRADE:
        return [Downgrade(available or "")]
    return [Install(available)]


def settings_table(settings: Settings) -> Table:
    table = Table(
        title="Node Configuration",
        show_header=True,
        header_style="bold magenta",
        box=box.SIMPLE,
        pad_edge=False,
    )
    table.add_column("Key", style="green", no_wrap=True)
    table.add_column("Value", overflow="fold", ratio=1)
    table.add_column("Source", style="dim", no_wrap=True)
    for key, value, source in settings.describe():
        table.add_row(key, value or "[dim]-[/dim]", source)
    return table


class Orchestrator:
    """Wires the pipeline stages together for one invocation."""

    def __init__(
        self,
        runtime: RuntimeProfile,
        confirm: ConfirmationPort,
        *,
        runner: Optional[CommandRunner] = None,
        agent: Optional[AgentClient] = None,
        env: Optional[Mapping[str, str]] = None,
        workdir: Optional[Path] = None,
        home: Optional[Path] = None,
        console: Optional[Console] = None,
        detect_platform: Callable[[], PlatformProfile] = detect,
        installer_factory: Callable[..., PlatformInstaller] = select_installer,
        exchange_factory: Callable[..., ExchangeClient] = ExchangeClient,
        hostname: Callable[[], str] = socket.gethostname,
        addresses: Callable[[], Sequence[str]] = local_addresses,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.runtime = runtime
        self.confirm = confirm
        self.runner = runner or CommandRunner()
        self.agent = agent or AgentClient(self.runner)
        self.env = os.environ if env is None else env
        self.workdir = workdir or Path.cwd()
        self.home = home or Path.home()
        self.console = console or Console()
        self.detect_platform = detect_platform
        self.installer_factory = installer_factory
        self.hostname = hostname
        self.addresses = addresses
        self.resolver = SettingsResolver(
            runtime, env=self.env, workdir=self.workdir, exchange_factory=exchange_factory
        )
        self.registration = RegistrationEngine(
            self.agent, node_name=hostname(), token_factory=token_factory
        )

    def run(self, options: RunOptions) -> RunOutcome:
        return self.execute(self.plan(options))

    # -- planning -----------------------------------------------------------

    def plan(self, options: RunOptions) -> PlannedRun:
        platform = self.detect_platform()
        logger.info(platform.describe())

        overrides = self._batch_overrides(options)
        settings = self.resolver.resolve(overrides, options.config_file)
        self.console.print(settings_table(settings))
        confirm = BatchConfirmation() if settings.batch_mode else self.confirm

        source = PackageSource.from_cli(
            options.install_source,
            apt_key=options.apt_key,
            apt_branch=options.apt_branch,
            default_branch=self.runtime.apt_branch,
        )
        installer = self.installer_factory(platform, source, self.runtime, self.runner)
        installer.check_prerequisites()

        port = agent_port_from_config(self.runtime.agent_config, self.runtime.default_agent_port)
        installer.check_port(port)
        self.agent.listening_port = port

        available = installer.available_version()
        version_decision = reconcile(
            self.agent.installed_version(),
            available,
            overwrite=settings.overwrite,
            batch_mode=settings.batch_mode,
            confirm=confirm,
        )

        if self.agent.is_installed():
            installer.prepare_environment()
            installer.service(port).ensure_running()
            status = self.agent.read_status()
        else:
            status = AgentStatus.absent()

        machine = NodeStateMachine(
            self.agent,
            confirm,
            containerized=installer.containerized,
            local_policy_file=self._local(self.runtime.local_policy_file),
            agent_config=self.runtime.agent_config,
            hostname=self.hostname,
        )
        overwrite_node = machine.wants_overwrite(settings, status)
        node = machine.decide(settings, status, overwrite_node=overwrite_node)

        plan = ReconciliationPlan.build(
            package_actions(version_decision, available), list(node.actions)
        )
        logger.info("Reconciliation plan: %s", plan.describe())
        return PlannedRun(
            platform=platform,
            settings=settings,
            installer=installer,
            agent_port=port,
            status=status,
            version_decision=version_decision,
            node=node,
            plan=plan,
        )

    def _batch_overrides(self, options: RunOptions) -> Dict[str, Any]:
        overrides: Dict[str, Any] = dict(options.overrides)

        archive = self._local(options.install_archive or self.runtime.install_archive)
        if archive.is_file():
            extract_install_archive(archive, self.workdir)
        elif options.install_archive is not None:
            raise InvalidInput(
                f"Agent install tar file {archive} does not exist",
                field="install_archive",
                value=str(archive),
            )

        mapping = self._local(self.runtime.node_id_mapping)
        if mapping.is_file():
            logger.info("Found node id mapping file %s, running in batch mode", mapping)
            overrides[BATCH_MODE] = True
            if not overrides.get(NODE_ID) and not self.env.get(NODE_ID):
                overrides[NODE_ID] = find_node_id(mapping, self.hostname(), self.addresses)
        return overrides

    # -- execution ----------------------------------------------------------

    def execute(self, run: PlannedRun) -> RunOutcome:
        settings, installer, plan = run.settings, run.installer, run.plan

        package = plan.package_action
        if package is not None:
            logger.info("Running %s", package.describe())
            installer.install(package, certificate=self._absolute(settings.certificate))

        installer.prepare_environment()
        port = agent_port_from_api_config(self.runtime.agent_api_config, run.agent_port)
        service = installer.service(port)
        service.ensure_running()

        stopped = False
        unregister = plan.first(UnregisterExisting)
        if unregister is not None:
            self.agent.unregister()
            if unregister.stop_container:
                service.stop()
                stopped = True

        changed = self._configure_agent(run.platform, settings)
        if changed and not stopped:
            service.restart()
            service.wait_ready()
        else:
            service.ensure_running()

        registration = None
        register = plan.first(RegisterWith)
        if register is not None:
            registration = self.registration.create_and_register(
                settings, register, plan.first(WaitForService)
            )

        rc_file = self._add_autocomplete()
        logger.info("Node onboarding finished")
        return RunOutcome(
            plan=plan,
            registration=registration,
            agent_config_changed=changed,
            autocomplete_rc=rc_file,
        )

    def _configure_agent(self, platform: PlatformProfile, settings: Settings) -> bool:
        updates = {EXCHANGE_URL: settings.exchange_url, CSS_URL: settings.css_url}
        certificate = self._absolute(settings.certificate)
        if certificate is not None:
            updates[MGMT_HUB_CERT] = str(certificate)

        path = self.runtime.agent_config
        if platform.is_macos:
            if not path.exists():
                logger.info("%s doesn't exist, creating...", path)
                updates = {DEVICE_ID: self.hostname(), **updates}
            changed = update_keyfile(path, updates, create=True)
            self._write_cli_config(updates)
            return changed

        if not path.exists():
            raise PrerequisiteMissing(
                f"{path} is missing; the agent package did not install correctly",
                field="agent_config",
                value=str(path),
            )
        logger.info("Checking the agent configuration in %s...", path)
        return update_keyfile(path, updates)

    def _write_cli_config(self, updates: Mapping[str, str]) -> None:
        path = self.runtime.mac_cli_config
        data: Dict[str, Any] = {}
        if path.exists():
            logger.info("%s config file exists, updating...", path)
            data = json.loads(path.read_text(encoding="utf-8") or "{}")
        keys = (EXCHANGE_URL, CSS_URL, MGMT_HUB_CERT)
        data.update({key: updates[key] for key in keys if key in updates})
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def _add_autocomplete(self) -> Optional[Path]:
        script = next((p for p in self.runtime.autocomplete_scripts if p.is_file()), None)
        if script is None:
            logger.info("There's no autocomplete script, skipping it...")
            return None
        shell = Path(self.env.get("SHELL") or "bash").name
        rc_file = self.home / f".{shell}rc"
        line = f"source {script}"
        existing = rc_file.read_text(encoding="utf-8") if rc_file.exists() else ""
        if line in existing.splitlines():
            return rc_file
        logger.info("Enabling autocomplete for the CLI commands in %s", rc_file)
        with rc_file.open("a", encoding="utf-8") as handle:
            if existing and not existing.endswith("\n"):
                handle.write("\n")
            handle.write(line + "\n")
        return rc_file

    def _absolute(self, path: Optional[Path]) -> Optional[Path]:
        return None if path is None else self._local(path).resolve()

    def _local(self, path: Path) -> Path:
        path = Path(path).expanduser()
        return path if path.is_absolute() else self.workdir / path


__all__ = [
    "Orchestrator",
    "PlannedRun",
    "RunOptions",
    "RunOutcome",
    "package_actions",
    "settings_table",
]
