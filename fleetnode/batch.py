"""Unattended (batch) installs driven by an install archive and a node-id map."""

from __future__ import annotations

import logging
from pathlib import Path
import socket
import tarfile
from typing import Callable, List, Sequence

import psutil

from .errors import InvalidInput

logger = logging.getLogger("fleetnode.batch")


def extract_install_archive(archive: Path, destination: Path) -> List[str]:
    """Unpack the agent install archive into ``destination``."""

    root = destination.resolve()
    with tarfile.open(archive, "r:gz") as bundle:
        members = bundle.getmembers()
        for member in members:
            targets = [root / member.name]
            if member.issym():
                targets.append(root / Path(member.name).parent / member.linkname)
            elif member.islnk():
                targets.append(root / member.linkname)
            for target in targets:
                if not _inside(root, target):
                    raise InvalidInput(
                        f"Refusing to extract {member.name} outside {destination}",
                        field="install_archive",
                        value=str(archive),
                    )
        if hasattr(tarfile, "data_filter"):
            bundle.extractall(destination, filter="data")
        else:
            bundle.extractall(destination)
    logger.info("Extracted %d file(s) from %s", len(members), archive)
    return [member.name for member in members]


def _inside(root: Path, target: Path) -> bool:
    resolved = target.resolve()
    return resolved == root or root in resolved.parents


def local_addresses() -> List[str]:
    addresses: List[str] = []
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family in (socket.AF_INET, socket.AF_INET6) and entry.address:
                addresses.append(entry.address.split("%", 1)[0])
    return addresses


def find_node_id(
    mapping_file: Path,
    hostname: str,
    addresses: Callable[[], Sequence[str]] = local_addresses,
) -> str:
    """Look the node id up by hostname, then by every local address.

    Mapping lines are ``<hostname-or-ip>,<node id>``.
    """

    rows = []
    for line in mapping_file.read_text(encoding="utf-8").splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, _, node_id = line.partition(",")
        rows.append((key.strip(), node_id.strip()))

    for key, node_id in rows:
        if key == hostname and node_id:
            return node_id

    logger.debug("Did not find node id with hostname %s. Trying with ip", hostname)
    candidates = list(addresses())
    for address in candidates:
        for key, node_id in rows:
            if key == address and node_id:
                return node_id

    raise InvalidInput(
        f"Failed to find node id in mapping file {mapping_file} with {hostname} "
        f"or {' '.join(candidates)}",
        field="NODE_ID",
    )


__all__ = ["extract_install_archive", "find_node_id", "local_addresses"]
