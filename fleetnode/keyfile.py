"""Reading and rewriting ``KEY=value`` configuration files."""

from __future__ import annotations

import logging
from pathlib import Path
import shutil
from typing import Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger("fleetnode.keyfile")

BACKUP_SUFFIX = ".bak"


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    """Return ``(key, value)`` for an assignment line, ``None`` otherwise."""

    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()
    key, _, value = stripped.partition("=")
    key = key.strip()
    if not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def read_keyfile(path: Path) -> Dict[str, str]:
    """Load every assignment from ``path``; later duplicates win."""

    values: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        parsed = parse_line(line)
        if parsed is not None:
            key, value = parsed
            values[key] = value
    return values


def render_updates(original: str, updates: Mapping[str, str]) -> str:
    """Rewrite assignments for ``updates`` keys in place, appending new keys.

    Unrelated lines, comments and ordering are preserved.
    """

    lines = original.splitlines()
    seen = set()
    output: List[str] = []
    for line in lines:
        parsed = parse_line(line)
        if parsed is not None and parsed[0] in updates:
            key = parsed[0]
            seen.add(key)
            output.append(f"{key}={updates[key]}")
            continue
        output.append(line)
    for key, value in updates.items():
        if key not in seen:
            output.append(f"{key}={value}")
    return "\n".join(output) + "\n"


def update_keyfile(
    path: Path,
    updates: Mapping[str, str],
    *,
    create: bool = False,
    backup: bool = True,
) -> bool:
    """Apply ``updates`` to ``path``.

    Returns ``True`` when the file content changed. When ``backup`` is set the
    previous content is kept next to the file with a ``.bak`` suffix.
    """

    if path.exists():
        original = path.read_text(encoding="utf-8")
    elif create:
        original = ""
    else:
        raise FileNotFoundError(path)

    rendered = render_updates(original, updates)
    if rendered.rstrip("\n") == original.rstrip("\n"):
        logger.debug("No changes required for %s.", path)
        return False

    if path.exists() and backup:
        shutil.copy2(path, path.with_name(path.name + BACKUP_SUFFIX))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(rendered, encoding="utf-8")
    logger.info("Updated %s (%s).", path, ", ".join(sorted(updates)))
    return True


__all__ = ["BACKUP_SUFFIX", "parse_line", "read_keyfile", "render_updates", "update_keyfile"]
