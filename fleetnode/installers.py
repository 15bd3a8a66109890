"""Per-platform agent package installation.

``select_installer`` picks the variant once from the detected platform; the rest
of the run talks to the :class:`PlatformInstaller` interface only.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess
from typing import Callable, List, Optional, Sequence, Tuple

import psutil

from .configuration import RuntimeProfile
from .errors import InvalidInput, PrerequisiteMissing, UnsupportedPlatform
from .plan import Action
from .profiler import PlatformProfile
from .service import ContainerService, DaemonService, ServiceController
from .shell import CommandRunner
from .versions import is_valid_version, parse_version

logger = logging.getLogger("fleetnode.installers")

MAC_PACKAGE_CERT = "horizon-cli.crt"
AGENT_PROCESS_NAME = "anax"


@dataclass(frozen=True)
class PackageSource:
    """Where packages come from: a local directory or an apt repository."""

    directory: Path = Path(".")
    tree_ignore: bool = False
    apt_repo: Optional[str] = None
    apt_key: Optional[Path] = None
    apt_branch: str = "updates"

    @classmethod
    def from_cli(
        cls,
        install_source: Optional[str],
        *,
        apt_key: Optional[Path] = None,
        apt_branch: Optional[str] = None,
        default_branch: str = "updates",
    ) -> "PackageSource":
        branch = apt_branch or default_branch
        if install_source and install_source.startswith("http"):
            return cls(
                apt_repo=install_source.rstrip("/"),
                apt_key=apt_key,
                apt_branch=branch,
            )
        if install_source is None:
            return cls(apt_branch=branch)
        directory = Path(install_source.rstrip("/") or "/")
        if not directory.is_dir():
            raise InvalidInput(
                f"The package installation directory {directory} doesn't exist",
                field="install_source",
                value=str(directory),
            )
        return cls(directory=directory, tree_ignore=True, apt_branch=branch)


class PlatformInstaller:
    containerized = False

    def __init__(
        self,
        platform: PlatformProfile,
        source: PackageSource,
        runtime: RuntimeProfile,
        runner: Optional[CommandRunner] = None,
    ) -> None:
        self.platform = platform
        self.source = source
        self.runtime = runtime
        self.runner = runner or CommandRunner()

    @property
    def packages_dir(self) -> Path:  # pragma: no cover - interface
        raise NotImplementedError

    def package_files(self) -> List[Path]:  # pragma: no cover - interface
        raise NotImplementedError

    def check_prerequisites(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def available_version(self) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    def check_port(self, port: int) -> None:
        """Fail if the agent port is taken; only the daemon variant checks."""

    def prepare_environment(self) -> None:
        """Export anything the runtime needs before it is started."""

    def install(self, action: Action, certificate: Optional[Path] = None) -> None:  # pragma: no cover
        raise NotImplementedError

    def service(self, port: int) -> ServiceController:  # pragma: no cover - interface
        raise NotImplementedError

    def _run(self, args: Sequence[str], *, check: bool = True) -> None:
        try:
            self.runner.run(args, check=check)
        except subprocess.CalledProcessError as exc:
            raise PrerequisiteMissing(
                f"'{' '.join(args)}' failed with exit code {exc.returncode}", stage="install"
            ) from exc


class LinuxInstaller(PlatformInstaller):
    def __init__(
        self,
        platform: PlatformProfile,
        source: PackageSource,
        runtime: RuntimeProfile,
        runner: Optional[CommandRunner] = None,
        *,
        euid: Callable[[], int] = os.geteuid,
    ) -> None:
        super().__init__(platform, source, runtime, runner)
        self.euid = euid

    @property
    def packages_dir(self) -> Path:
        if self.source.tree_ignore:
            return self.source.directory
        p = self.platform
        return self.source.directory / "linux" / p.distro / p.codename / p.arch

    def package_files(self) -> List[Path]:
        pattern = f"*horizon*{self.platform.distro}.{self.platform.codename}*.deb"
        return sorted(self.packages_dir.glob(pattern))

    def check_prerequisites(self) -> None:
        if self.source.apt_repo is None:
            logger.info("Checking path with packages %s", self.packages_dir)
            if not self.package_files():
                raise PrerequisiteMissing(
                    f"Linux installation files {self.packages_dir}/*horizon*"
                    f"{self.platform.distro}.{self.platform.codename}*.deb do not exist",
                    field="packages",
                    value=str(self.packages_dir),
                )
        if self.euid() != 0:
            raise PrerequisiteMissing(
                "Please run script with the root privileges by running 'sudo -s' command first"
            )

    def check_port(self, port: int) -> None:
        """Fail if something other than the agent listens on ``port``."""

        logger.info("Checking if the agent port %s is free...", port)
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.warning("Not allowed to list sockets; skipping the agent port check.")
            return
        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
                continue
            name = ""
            if conn.pid:
                try:
                    name = psutil.Process(conn.pid).name()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    name = ""
            if AGENT_PROCESS_NAME in name:
                logger.info("The agent already listens on %s, continuing...", port)
                return
            raise PrerequisiteMissing(
                f"Port {port} is used by '{name or 'unknown'}'; free it in order to install the agent",
                field="HZN_AGENT_PORT",
                value=str(port),
            )
        logger.info("Agent port %s is free, continuing...", port)

    def available_version(self) -> Optional[str]:
        if self.source.apt_repo is not None:
            return None
        for package in self.package_files():
            if "horizon-cli" in package.name:
                version = package.name.split("_")[1].split("~")[0] if "_" in package.name else ""
                if is_valid_version(version):
                    logger.info("The packages version is %s", version)
                    return version
        return None

    def install(self, action: Action, certificate: Optional[Path] = None) -> None:
        logger.info("Installing agent on %s", self.platform.describe())
        self._run(["apt", "update"])
        if self.source.apt_repo is not None:
            self._install_from_repository()
            return
        # dpkg leaves missing dependencies for apt-get -f to resolve.
        self._run(["dpkg", "-i", *[str(path) for path in self.package_files()]], check=False)
        logger.info("Resolving any dependency errors...")
        self._run(["apt-get", "install", "-y", "-f"])

    def service(self, port: int) -> ServiceController:
        return DaemonService(self.runner, unit=self.runtime.daemon_unit, port=port)

    def _install_from_repository(self) -> None:
        if self.source.apt_key is not None:
            logger.info("Adding key %s", self.source.apt_key)
            self._run(["apt-key", "add", str(self.source.apt_key)])
        entry = f"deb {self.source.apt_repo} {self.platform.codename}-{self.source.apt_branch} main"
        logger.info("Adding %s to the apt sources", self.source.apt_repo)
        self._run(["add-apt-repository", entry])
        self._run(["apt-get", "install", self.runtime.apt_package, "-y", "-f"])


class MacInstaller(PlatformInstaller):
    containerized = True
    required_tools = ("socat", "docker")

    @property
    def packages_dir(self) -> Path:
        if self.source.tree_ignore:
            return self.source.directory
        return self.source.directory / "macos"

    def package_files(self) -> List[Path]:
        return sorted(self.packages_dir.glob("horizon-cli-*.pkg"), key=_mac_package_key)

    def check_prerequisites(self) -> None:
        for tool in self.required_tools:
            if self.runner.which(tool) is None:
                raise PrerequisiteMissing(f"{tool} not found, please install it", field=tool)
        if self.source.apt_repo is not None:
            raise UnsupportedPlatform(
                "Installing from an apt repository is not supported on macos",
                field="install_source",
                value=self.source.apt_repo,
            )
        logger.info("Checking path with packages %s", self.packages_dir)
        if not self.package_files():
            raise PrerequisiteMissing(
                f"MacOS installation files {self.packages_dir}/horizon-cli-*.pkg do not exist",
                field="packages",
                value=str(self.packages_dir),
            )
        if not (self.packages_dir / MAC_PACKAGE_CERT).is_file():
            raise PrerequisiteMissing(
                f"The CLI package certificate file {self.packages_dir / MAC_PACKAGE_CERT} doesn't exist",
                field="packages",
            )

    @property
    def package(self) -> Optional[Path]:
        files = self.package_files()
        return files[-1] if files else None

    def available_version(self) -> Optional[str]:
        package = self.package
        if package is None:
            return None
        version = _mac_package_parts(package)[0]
        return version if is_valid_version(version) else None

    def docker_tag(self) -> Optional[str]:
        package = self.package
        if package is None:
            return None
        version, build = _mac_package_parts(package)
        return f"{version}-{build}" if build else version

    def prepare_environment(self) -> None:
        tag = self.docker_tag()
        if tag:
            logger.debug("HC_DOCKER_TAG is %s", tag)
            os.environ["HC_DOCKER_TAG"] = tag

    def install(self, action: Action, certificate: Optional[Path] = None) -> None:
        logger.info("Importing the package certificate into the system keychain...")
        self._trust(self.packages_dir / MAC_PACKAGE_CERT)
        if certificate is not None:
            logger.info("Configuring the node to trust the management hub certificate...")
            self._trust(certificate)
        self._run(["sudo", "installer", "-pkg", str(self.package), "-target", "/"])

    def service(self, port: int) -> ServiceController:
        return ContainerService(self.runner, container=self.runtime.container_name)

    def _trust(self, cert: Path) -> None:
        self._run([
            "sudo", "security", "add-trusted-cert", "-d", "-r", "trustRoot",
            "-k", "/Library/Keychains/System.keychain", str(cert),
        ])


def _mac_package_parts(package: Path) -> Tuple[str, str]:
    """``horizon-cli-2.28.0-123.pkg`` -> ``("2.28.0", "123")``."""

    stem = package.name[len("horizon-cli-"):]
    if stem.endswith(".pkg"):
        stem = stem[: -len(".pkg")]
    version, _, build = stem.partition("-")
    return version, build


def _mac_package_key(package: Path):
    version = _mac_package_parts(package)[0]
    return parse_version(version) if is_valid_version(version) else (0,)


def select_installer(
    platform: PlatformProfile,
    source: PackageSource,
    runtime: RuntimeProfile,
    runner: Optional[CommandRunner] = None,
) -> PlatformInstaller:
    if platform.is_linux:
        return LinuxInstaller(platform, source, runtime, runner)
    if platform.is_macos:
        return MacInstaller(platform, source, runtime, runner)
    raise UnsupportedPlatform("No installer for this platform", field="os", value=platform.os)


__all__ = [
    "LinuxInstaller",
    "MacInstaller",
    "PackageSource",
    "PlatformInstaller",
    "select_installer",
]
