"""Platform detection and the supported-platform matrix."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import platform as _platform
import re
import subprocess
import sys
from typing import Optional, Sequence, Tuple

from .errors import UnsupportedPlatform
from .keyfile import read_keyfile
from .shell import CommandRunner

logger = logging.getLogger("fleetnode.profiler")

SUPPORTED_OS: Sequence[str] = ("macos", "linux")
SUPPORTED_LINUX_DISTRO: Sequence[str] = ("ubuntu", "raspbian", "debian")
SUPPORTED_LINUX_CODENAME: Sequence[str] = ("bionic", "buster", "xenial", "stretch")
SUPPORTED_ARCH: Sequence[str] = ("amd64", "arm64", "armhf")
# ppc64el is recognised by detect_arch() but deliberately absent from SUPPORTED_ARCH.

OS_RELEASE = Path("/etc/os-release")
LSB_RELEASE = Path("/etc/lsb-release")


@dataclass(frozen=True)
class PlatformProfile:
    os: str
    distro: str = ""
    version: str = ""
    codename: str = ""
    arch: str = ""

    @property
    def is_linux(self) -> bool:
        return self.os == "linux"

    @property
    def is_macos(self) -> bool:
        return self.os == "macos"

    def describe(self) -> str:
        if self.is_linux:
            return (
                f"OS is {self.os}, distributive is {self.distro}, "
                f"release is {self.codename}, architecture is {self.arch}"
            )
        return f"OS is {self.os}"


def detect_os(sys_platform: Optional[str] = None) -> str:
    name = sys_platform if sys_platform is not None else sys.platform
    if name.startswith("linux"):
        return "linux"
    if name.startswith("darwin"):
        return "macos"
    return "unknown"


def detect_distro(
    os_release: Path = OS_RELEASE,
    lsb_release: Path = LSB_RELEASE,
    runner: Optional[CommandRunner] = None,
) -> Tuple[str, str, str]:
    """Return ``(distro, version, codename)`` for the running Linux system."""

    runner = runner or CommandRunner()
    distro = version = codename = ""
    pretty_version = ""

    if os_release.exists():
        values = read_keyfile(os_release)
        distro = values.get("ID", "")
        version = values.get("VERSION_ID", "")
        codename = values.get("VERSION_CODENAME", "")
        pretty_version = values.get("VERSION", "")
    elif runner.which("lsb_release"):
        try:
            distro = runner.run(["lsb_release", "-si"]).stdout.strip()
            version = runner.run(["lsb_release", "-sr"]).stdout.strip()
            codename = runner.run(["lsb_release", "-sc"]).stdout.strip()
        except subprocess.CalledProcessError as exc:
            raise UnsupportedPlatform("Cannot detect Linux version") from exc
    elif lsb_release.exists():
        values = read_keyfile(lsb_release)
        distro = values.get("DISTRIB_ID", "")
        version = values.get("DISTRIB_RELEASE", "")
        codename = values.get("DISTRIB_CODENAME", "")
    else:
        raise UnsupportedPlatform("Cannot detect Linux version")

    distro = distro.lower()
    # Raspbian carries its codename inside VERSION, e.g. "10 (buster)".
    if distro == "raspbian" and pretty_version:
        match = re.search(r"\(([^)]*)\)", pretty_version)
        if match:
            codename = match.group(1)

    logger.info(
        "Detected distributive is %s, version is %s, codename is %s", distro, version, codename
    )
    return distro, version, codename


def detect_arch(machine: Optional[str] = None) -> str:
    uname = machine if machine is not None else _platform.machine()
    if "aarch64" in uname:
        arch = "arm64"
    elif "arm" in uname:
        arch = "armhf"
    elif uname == "x86_64":
        arch = "amd64"
    elif uname == "ppc64le":
        arch = "ppc64el"
    else:
        raise UnsupportedPlatform("Unknown architecture", field="arch", value=uname)
    logger.info("Detected architecture is %s", arch)
    return arch


def check_support(supported: Sequence[str], detected: str, component: str) -> None:
    if detected not in supported:
        raise UnsupportedPlatform(
            f"The detected {component} is not supported; supported: {' '.join(supported)}",
            field=component,
            value=detected or "<none>",
        )
    logger.info("The detected %s %s is supported", component, detected)


def detect(
    *,
    sys_platform: Optional[str] = None,
    machine: Optional[str] = None,
    os_release: Path = OS_RELEASE,
    lsb_release: Path = LSB_RELEASE,
    runner: Optional[CommandRunner] = None,
) -> PlatformProfile:
    """Identify the platform and validate it against the supported matrix."""

    os_name = detect_os(sys_platform)
    logger.info("Detected OS is %s", os_name)
    check_support(SUPPORTED_OS, os_name, "os")

    if os_name != "linux":
        return PlatformProfile(os=os_name)

    distro, version, codename = detect_distro(os_release, lsb_release, runner)
    check_support(SUPPORTED_LINUX_DISTRO, distro, "distro")
    check_support(SUPPORTED_LINUX_CODENAME, codename, "codename")
    arch = detect_arch(machine)
    check_support(SUPPORTED_ARCH, arch, "arch")
    return PlatformProfile(
        os=os_name,
        distro=distro,
        version=version,
        codename=codename,
        arch=arch,
    )


__all__ = [
    "PlatformProfile",
    "SUPPORTED_ARCH",
    "SUPPORTED_LINUX_CODENAME",
    "SUPPORTED_LINUX_DISTRO",
    "SUPPORTED_OS",
    "check_support",
    "detect",
    "detect_arch",
    "detect_distro",
    "detect_os",
]
