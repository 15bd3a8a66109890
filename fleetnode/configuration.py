"""Runtime profile loading for the installer.

The profile holds the installer's own knobs (file locations, unit and container
names, HTTP timeouts). It is distinct from the node configuration file, which
carries the operator's exchange settings (see :mod:`fleetnode.keyfile`).
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Sequence

import yaml

PROFILE_ENV = "FLEETNODE_PROFILE"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]

SchemaSpec = Dict[str, Any]

DEFAULT_AUTOCOMPLETE_SCRIPTS: List[str] = [
    "/etc/bash_completion.d/hzn_bash_autocomplete.sh",
    "/usr/local/share/horizon/hzn_bash_autocomplete.sh",
]


CONFIG_SCHEMA: SchemaSpec = {
    "paths": {
        "type": dict,
        "schema": {
            "config_file": {"type": str, "default": "agent-install.cfg"},
            "agent_config": {"type": str, "default": "/etc/default/horizon"},
            "agent_api_config": {"type": str, "default": "/etc/horizon/anax.json"},
            "mac_cli_config": {"type": str, "default": "~/.hzn/hzn.json"},
            "exchange_policy_file": {"type": str, "default": "exchange-node-policy.json"},
            "local_policy_file": {"type": str, "default": "local-node-policy.json"},
            "default_certificate": {"type": str, "default": "agent-install.crt"},
            "install_archive": {"type": str, "default": "agent-install-files.tar.gz"},
            "node_id_mapping": {"type": str, "default": "node-id-mapping.csv"},
            "log_dir": {"type": str, "default": "/var/log/fleetnode"},
            "autocomplete_scripts": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_AUTOCOMPLETE_SCRIPTS),
            },
        },
        "default": {},
    },
    "registry": {
        "type": dict,
        "schema": {
            "timeout": {"type": (int, float), "default": 30},
        },
        "default": {},
    },
    "installer": {
        "type": dict,
        "schema": {
            "apt_branch": {"type": str, "default": "updates"},
            "apt_package": {"type": str, "default": "bluehorizon"},
            "daemon_unit": {"type": str, "default": "horizon.service"},
            "container_name": {"type": str, "default": "horizon1"},
            "default_agent_port": {"type": int, "default": 8510},
        },
        "default": {},
    },
    "logging": {
        "type": dict,
        "schema": {
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a profile validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """Merged runtime profile plus everything learned while loading it."""

    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def section(self, name: str) -> Dict[str, Any]:
        return self.merged.get(name, {}) if self.merged else {}


@dataclass(frozen=True)
class RuntimeProfile:
    """Typed view over a loaded :class:`ConfigurationBundle`."""

    config_file: Path
    agent_config: Path
    agent_api_config: Path
    mac_cli_config: Path
    exchange_policy_file: Path
    local_policy_file: Path
    default_certificate: Path
    install_archive: Path
    node_id_mapping: Path
    log_dir: Path
    autocomplete_scripts: Sequence[Path]
    registry_timeout: float
    apt_branch: str
    apt_package: str
    daemon_unit: str
    container_name: str
    default_agent_port: int
    structured_logging: bool

    @classmethod
    def from_bundle(cls, bundle: ConfigurationBundle) -> "RuntimeProfile":
        paths = bundle.section("paths")
        registry = bundle.section("registry")
        installer = bundle.section("installer")
        logging_cfg = bundle.section("logging")

        def _path(key: str) -> Path:
            raw = str(paths.get(key) or _schema_default("paths", key)).strip()
            return Path(raw).expanduser()

        timeout = float(registry.get("timeout", 30))
        if timeout <= 0:
            timeout = 30.0

        return cls(
            config_file=_path("config_file"),
            agent_config=_path("agent_config"),
            agent_api_config=_path("agent_api_config"),
            mac_cli_config=_path("mac_cli_config"),
            exchange_policy_file=_path("exchange_policy_file"),
            local_policy_file=_path("local_policy_file"),
            default_certificate=_path("default_certificate"),
            install_archive=_path("install_archive"),
            node_id_mapping=_path("node_id_mapping"),
            log_dir=_path("log_dir"),
            autocomplete_scripts=tuple(
                Path(item).expanduser() for item in paths.get("autocomplete_scripts", [])
            ),
            registry_timeout=timeout,
            apt_branch=str(installer.get("apt_branch") or "updates"),
            apt_package=str(installer.get("apt_package") or "bluehorizon"),
            daemon_unit=str(installer.get("daemon_unit") or "horizon.service"),
            container_name=str(installer.get("container_name") or "horizon1"),
            default_agent_port=int(installer.get("default_agent_port", 8510)),
            structured_logging=bool(logging_cfg.get("structured", True)),
        )


def resolve_profile_path(
    explicit: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[Path]:
    """Pick the profile file from the CLI or the environment."""

    if explicit is not None:
        return Path(explicit).expanduser()
    env_source = os.environ if env is None else env
    raw = env_source.get(PROFILE_ENV)
    if raw:
        return Path(raw).expanduser()
    return None


def load_runtime_configuration(profile_path: Optional[Path] = None) -> ConfigurationBundle:
    """Load built-in defaults and merge an optional YAML profile over them."""

    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []
    status: ConfigurationStatus = "ready"
    overrides: Dict[str, Any] = {}

    if profile_path is not None:
        if not profile_path.exists():
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Profile '{profile_path}' does not exist.",
                    source=profile_path,
                )
            )
            status = "missing"
        elif not profile_path.is_file():
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Profile path '{profile_path}' is not a file.",
                    source=profile_path,
                )
            )
            status = "invalid"
        else:
            overrides = _load_profile_file(profile_path, diagnostics)
            files_loaded.append(profile_path)

    merged: Dict[str, Any] = {}
    _deep_merge_dicts(merged, overrides)
    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        status=status,
        merged=merged,
        overrides=overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def _load_profile_file(path: Path, diagnostics: List[Diagnostic]) -> Dict[str, Any]:
    try:
        content = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Failed to parse '{path}': {exc}",
                source=path,
            )
        )
        return {}

    if content is None:
        return {}

    if not isinstance(content, MutableMapping):
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"Ignoring '{path}' because it does not contain a mapping.",
                source=path,
            )
        )
        return {}
    return dict(content)


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _schema_default(section: str, key: str) -> Any:
    return _default_from_spec(CONFIG_SCHEMA[section]["schema"][key])


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "profile", diagnostics)


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    for key in list(target.keys()):
        if key not in schema:
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Unknown profile key '{path}.{key}'.",
                )
            )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            target[key] = _default_from_spec(spec)
            if spec.get("type") is dict:
                _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
            continue

        value = target[key]
        expected_type = spec.get("type")

        if expected_type is dict:
            if not isinstance(value, dict):
                diagnostics.append(
                    Diagnostic(level="error", message=f"'{child_path}' must be a mapping.")
                )
                target[key] = {}
            _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)
        elif expected_type is list:
            if not isinstance(value, list):
                diagnostics.append(
                    Diagnostic(level="error", message=f"'{child_path}' must be a list.")
                )
                target[key] = _default_from_spec(spec) or []
                continue
            item_type = spec.get("item_type")
            if item_type is not None:
                filtered: List[Any] = []
                for idx, item in enumerate(value):
                    if isinstance(item, item_type):
                        filtered.append(item)
                    else:
                        diagnostics.append(
                            Diagnostic(
                                level="error",
                                message=(
                                    f"'{child_path}[{idx}]' must be of type "
                                    f"{item_type.__name__}."
                                ),
                            )
                        )
                target[key] = filtered
        elif expected_type and (
            not isinstance(value, expected_type)
            # bool is an int subclass; reject it for numeric knobs
            or (isinstance(value, bool) and expected_type is not bool)
        ):
            if isinstance(expected_type, tuple):
                type_name = ", ".join(t.__name__ for t in expected_type)
            else:
                type_name = expected_type.__name__
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"'{child_path}' must be of type {type_name}.",
                )
            )
            target[key] = _default_from_spec(spec)


__all__ = [
    "CONFIG_SCHEMA",
    "ConfigurationBundle",
    "ConfigurationStatus",
    "Diagnostic",
    "PROFILE_ENV",
    "RuntimeProfile",
    "load_runtime_configuration",
    "resolve_profile_path",
]
