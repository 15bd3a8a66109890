"""Start, stop and wait for the agent runtime (systemd daemon or container)."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import subprocess
import time
from typing import Any, Callable, Dict, Optional
from urllib.error import URLError
from urllib.request import urlopen

from .errors import PrerequisiteMissing, ServiceTimeout
from .shell import CommandRunner

logger = logging.getLogger("fleetnode.service")

DAEMON_POLL_INTERVAL = 1.0
DAEMON_TIMEOUT = 60.0
# Containers may need to pull images on a cold start.
CONTAINER_POLL_INTERVAL = 10.0
CONTAINER_TIMEOUT = 300.0

CONTAINER_HELPER = "horizon-container"
PROBE_TIMEOUT = 10.0


@dataclass(frozen=True)
class Ready:
    version: str
    waited: float


class ServiceController:
    """Common readiness loop; subclasses provide start/stop/probe."""

    name = "agent"
    poll_interval = DAEMON_POLL_INTERVAL
    timeout = DAEMON_TIMEOUT

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner or CommandRunner()
        self.clock = clock
        self.sleep = sleep

    def is_running(self) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def start(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def restart(self) -> None:
        self.stop()
        self.start()

    def probe(self, timeout: float) -> str:
        """Return the version reported by the runtime, or ``""`` if not ready.

        ``timeout`` bounds the probe itself so the deadline is never overrun.
        """
        raise NotImplementedError  # pragma: no cover - interface

    def ensure_running(self) -> Ready:
        if self.is_running():
            logger.info("The %s is running already...", self.name)
        else:
            logger.info("Starting the %s...", self.name)
            self.start()
        return self.wait_ready()

    def wait_ready(self) -> Ready:
        started = self.clock()
        while True:
            remaining = max(self.timeout - (self.clock() - started), 0.0)
            version = self.probe(min(PROBE_TIMEOUT, remaining))
            elapsed = self.clock() - started
            if version:
                logger.info("The %s is ready (version %s)", self.name, version)
                return Ready(version=version, waited=elapsed)
            if elapsed >= self.timeout:
                raise ServiceTimeout(
                    f"{self.name} timeout of {self.timeout:g} seconds occurred",
                    field="readiness",
                )
            logger.info(
                "the %s is not ready, will retry in %g second(s)", self.name, self.poll_interval
            )
            self.sleep(min(self.poll_interval, self.timeout - elapsed))


class DaemonService(ServiceController):
    """systemd-managed agent on Linux, probed through its local HTTP API."""

    name = "agent service"
    poll_interval = DAEMON_POLL_INTERVAL
    timeout = DAEMON_TIMEOUT

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        unit: str = "horizon.service",
        port: int = 8510,
        opener: Callable[..., Any] = urlopen,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(runner, clock=clock, sleep=sleep)
        self.unit = unit
        self.port = port
        self._opener = opener

    def is_running(self) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", self.unit], check=False).ok

    def start(self) -> None:
        self._systemctl("start")

    def stop(self) -> None:
        self._systemctl("stop")

    def restart(self) -> None:
        logger.info("Restarting the service...")
        self._systemctl("restart")

    def probe(self, timeout: float = PROBE_TIMEOUT) -> str:
        if timeout <= 0:
            return ""
        try:
            with self._opener(f"http://localhost:{self.port}/status", timeout=timeout) as resp:
                data: Dict[str, Any] = json.loads(resp.read().decode("utf-8"))
        except (URLError, OSError, ValueError) as exc:
            logger.debug("Status probe failed: %s", exc)
            return ""
        return str((data.get("configuration") or {}).get("exchange_version") or "")

    def _systemctl(self, verb: str) -> None:
        try:
            self.runner.run(["systemctl", verb, self.unit])
        except subprocess.CalledProcessError as exc:
            raise PrerequisiteMissing(
                f"systemctl {verb} {self.unit} failed", stage="service"
            ) from exc


class ContainerService(ServiceController):
    """Agent running in a container on macOS, managed by the helper script."""

    name = "agent container"
    poll_interval = CONTAINER_POLL_INTERVAL
    timeout = CONTAINER_TIMEOUT

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        container: str = "horizon1",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(runner, clock=clock, sleep=sleep)
        self.container = container

    def is_running(self) -> bool:
        self._require_helper()
        return bool(self._docker_ps().strip())

    def start(self) -> None:
        self._require_helper()
        if self._docker_ps("-a").strip():
            self._run(["docker", "start", self.container])
        else:
            self._run([CONTAINER_HELPER, "start"])

    def stop(self) -> None:
        if self.is_running():
            logger.info("Stopping the agent container...")
            self._run([CONTAINER_HELPER, "stop"])

    def probe(self, timeout: float = PROBE_TIMEOUT) -> str:
        if timeout <= 0:
            return ""
        try:
            result = self.runner.run(["hzn", "node", "list"], check=False, timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.debug("hzn node list did not answer within %g second(s)", timeout)
            return ""
        if not result.ok:
            return ""
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError:
            return ""
        return str((data.get("configuration") or {}).get("preferred_exchange_version") or "")

    def _docker_ps(self, *extra: str) -> str:
        args = ["docker", "ps", *extra, "-q", "--filter", f"name={self.container}"]
        return self.runner.run(args, check=False).stdout

    def _require_helper(self) -> None:
        if self.runner.which(CONTAINER_HELPER) is None:
            raise PrerequisiteMissing(
                f"{CONTAINER_HELPER} not found, the agent is not installed or its installation is broken",
                stage="service",
            )

    def _run(self, args) -> None:
        try:
            self.runner.run(args)
        except subprocess.CalledProcessError as exc:
            raise PrerequisiteMissing(f"'{' '.join(args)}' failed", stage="service") from exc


__all__ = [
    "CONTAINER_POLL_INTERVAL",
    "CONTAINER_TIMEOUT",
    "ContainerService",
    "DAEMON_POLL_INTERVAL",
    "DAEMON_TIMEOUT",
    "DaemonService",
    "Ready",
    "ServiceController",
]
