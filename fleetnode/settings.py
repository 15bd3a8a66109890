"""Resolved node settings and the resolver that produces them.

Each key is looked up in order: explicit override (CLI flag, then environment),
the key=value config file, a default derived from the exchange, and finally a
built-in default. Every value remembers where it came from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .configuration import RuntimeProfile
from .errors import ConflictingSelectors, InvalidInput, MissingRequiredValue
from .exchange import ExchangeClient
from .keyfile import read_keyfile
from .logging_utils import mask

logger = logging.getLogger("fleetnode.settings")

EXCHANGE_URL = "HZN_EXCHANGE_URL"
CSS_URL = "HZN_FSS_CSSURL"
ORG_ID = "HZN_ORG_ID"
USER_AUTH = "HZN_EXCHANGE_USER_AUTH"
NODE_ID = "NODE_ID"
CERTIFICATE = "CERTIFICATE"
MGMT_HUB_CERT = "HZN_MGMT_HUB_CERT_PATH"
PATTERN = "HZN_EXCHANGE_PATTERN"
NODE_POLICY = "HZN_NODE_POLICY"
NODE_AUTH = "HZN_EXCHANGE_NODE_AUTH"

OVERWRITE = "OVERWRITE"
SKIP_REGISTRATION = "SKIP_REGISTRATION"
BATCH_MODE = "BATCH_INSTALL"
WAIT_FOR_SERVICE = "WAIT_FOR_SERVICE"
WAIT_FOR_SERVICE_ORG = "WAIT_FOR_SERVICE_ORG"

REQUIRED_KEYS: Tuple[str, ...] = (EXCHANGE_URL, CSS_URL, ORG_ID, USER_AUTH)
STRING_KEYS: Tuple[str, ...] = (
    EXCHANGE_URL,
    CSS_URL,
    ORG_ID,
    USER_AUTH,
    NODE_ID,
    CERTIFICATE,
    MGMT_HUB_CERT,
    PATTERN,
    NODE_POLICY,
    NODE_AUTH,
    WAIT_FOR_SERVICE,
    WAIT_FOR_SERVICE_ORG,
)
FLAG_KEYS: Tuple[str, ...] = (OVERWRITE, SKIP_REGISTRATION, BATCH_MODE)
SECRET_KEYS = frozenset({USER_AUTH, NODE_AUTH})


class Source(enum.Enum):
    OVERRIDE = "override"
    CONFIG_FILE = "config-file"
    REGISTRY = "registry"
    DEFAULT = "default"


@dataclass(frozen=True)
class Setting:
    value: Any
    source: Source


@dataclass(frozen=True)
class Settings:
    """Immutable settings record; stages receive supplemented copies."""

    values: Mapping[str, Setting] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, key: str, default: Any = "") -> Any:
        setting = self.values.get(key)
        if setting is None or setting.value is None:
            return default
        return setting.value

    def source(self, key: str) -> Optional[Source]:
        setting = self.values.get(key)
        return setting.source if setting else None

    def supplement(self, updates: Mapping[str, Any], source: Source) -> "Settings":
        merged: Dict[str, Setting] = dict(self.values)
        for key, value in updates.items():
            merged[key] = Setting(value, source)
        return Settings(merged)

    @property
    def exchange_url(self) -> str:
        return self.get(EXCHANGE_URL)

    @property
    def css_url(self) -> str:
        return self.get(CSS_URL)

    @property
    def org_id(self) -> str:
        return self.get(ORG_ID)

    @property
    def user_auth(self) -> str:
        return self.get(USER_AUTH)

    @property
    def node_id(self) -> str:
        return self.get(NODE_ID)

    @property
    def node_auth(self) -> str:
        return self.get(NODE_AUTH)

    @property
    def certificate(self) -> Optional[Path]:
        raw = self.get(CERTIFICATE)
        return Path(raw) if raw else None

    @property
    def pattern(self) -> str:
        return self.get(PATTERN)

    @property
    def node_policy(self) -> Optional[Path]:
        raw = self.get(NODE_POLICY)
        return Path(raw) if raw else None

    @property
    def overwrite(self) -> bool:
        return bool(self.get(OVERWRITE, False))

    @property
    def skip_registration(self) -> bool:
        return bool(self.get(SKIP_REGISTRATION, False))

    @property
    def batch_mode(self) -> bool:
        return bool(self.get(BATCH_MODE, False))

    @property
    def wait_for_service(self) -> str:
        return self.get(WAIT_FOR_SERVICE)

    @property
    def wait_for_service_org(self) -> str:
        return self.get(WAIT_FOR_SERVICE_ORG)

    def describe(self) -> List[Tuple[str, str, str]]:
        """``(key, printable value, source)`` rows with secrets masked."""

        rows = []
        for key in STRING_KEYS + FLAG_KEYS:
            setting = self.values.get(key)
            if setting is None:
                continue
            value = setting.value
            if key in SECRET_KEYS:
                shown = mask(value)
            elif isinstance(value, bool):
                shown = "true" if value else "false"
            else:
                shown = str(value or "")
            rows.append((key, shown, setting.source.value))
        return rows


ExchangeFactory = Callable[..., ExchangeClient]


class SettingsResolver:
    """Merge every configuration source into one :class:`Settings` value."""

    def __init__(
        self,
        profile: RuntimeProfile,
        *,
        env: Optional[Mapping[str, str]] = None,
        workdir: Optional[Path] = None,
        exchange_factory: ExchangeFactory = ExchangeClient,
    ) -> None:
        self.profile = profile
        self.env = os.environ if env is None else env
        self.workdir = workdir or Path.cwd()
        self.exchange_factory = exchange_factory

    def resolve(
        self,
        overrides: Mapping[str, Any],
        config_file: Optional[Path] = None,
    ) -> Settings:
        explicit_file = config_file is not None
        path = self._local(config_file or self.profile.config_file)
        file_values = self._read_config_file(path, explicit_file)

        values: Dict[str, Setting] = {}
        for key in STRING_KEYS:
            values[key] = self._lookup(key, overrides, file_values, path)
        for key in FLAG_KEYS:
            source = Source.OVERRIDE if key in overrides else Source.DEFAULT
            values[key] = Setting(bool(overrides.get(key, False)), source)
        settings = Settings(values)

        missing = [key for key in REQUIRED_KEYS if not settings.get(key)]
        if missing:
            raise MissingRequiredValue(
                f"{', '.join(missing)} must be set either in the config file {path} "
                "or the environment",
                field=missing[0],
            )

        url = settings.exchange_url
        if url.endswith("/"):
            settings = settings.supplement({EXCHANGE_URL: url.rstrip("/")}, settings.source(EXCHANGE_URL))

        settings = self._derive_certificate(settings)
        self._check_selectors(settings)

        exchange = self.exchange_factory(
            settings.exchange_url,
            settings.org_id,
            settings.user_auth,
            certificate=settings.certificate,
            timeout=self.profile.registry_timeout,
        )
        exchange.check_org()

        if not settings.pattern and not settings.node_policy:
            settings = self._selector_from_exchange(settings, exchange)
        self._check_selectors(settings)

        policy = settings.node_policy
        if policy is not None and settings.source(NODE_POLICY) is not Source.REGISTRY:
            if not self._local(policy).is_file():
                raise InvalidInput(
                    f"The node policy file {policy} doesn't exist",
                    field=NODE_POLICY,
                    value=str(policy),
                )

        if settings.wait_for_service_org and not settings.wait_for_service:
            logger.warning(
                "Must specify service with -w to use with -o organization. Ignoring -o flag."
            )
            settings = settings.supplement({WAIT_FOR_SERVICE_ORG: ""}, Source.DEFAULT)

        return settings

    def _read_config_file(self, path: Path, explicit: bool) -> Dict[str, str]:
        if path.is_file():
            logger.info("Reading configuration from %s", path)
            return read_keyfile(path)
        if explicit:
            raise InvalidInput(
                f"The config file {path} doesn't exist", field="config_file", value=str(path)
            )
        logger.info("The config file %s doesn't exist; using environment and flags only.", path)
        return {}

    def _lookup(
        self,
        key: str,
        overrides: Mapping[str, Any],
        file_values: Mapping[str, str],
        path: Path,
    ) -> Setting:
        explicit = overrides.get(key) or self.env.get(key)
        if explicit:
            shown = mask(explicit) if key in SECRET_KEYS else explicit
            logger.info("Using variable from environment/command line, %s is %s", key, shown)
            return Setting(str(explicit), Source.OVERRIDE)
        from_file = file_values.get(key, "")
        if from_file:
            shown = mask(from_file) if key in SECRET_KEYS else from_file
            logger.info("Using variable from the config file %s, %s is %s", path, key, shown)
            return Setting(from_file, Source.CONFIG_FILE)
        return Setting("", Source.DEFAULT)

    def _derive_certificate(self, settings: Settings) -> Settings:
        if settings.certificate:
            return settings
        hub_cert = settings.get(MGMT_HUB_CERT)
        if hub_cert:
            return settings.supplement({CERTIFICATE: hub_cert}, settings.source(MGMT_HUB_CERT))
        default_cert = self._local(self.profile.default_certificate)
        if default_cert.is_file():
            logger.info("Using default certificate %s", default_cert)
            return settings.supplement({CERTIFICATE: str(default_cert)}, Source.DEFAULT)
        return settings

    def _check_selectors(self, settings: Settings) -> None:
        if settings.pattern and settings.node_policy:
            raise ConflictingSelectors(
                f"Both {NODE_POLICY}={settings.node_policy} and "
                f"{PATTERN}={settings.pattern} mutually exclusive parameters are defined",
                field=PATTERN,
                value=settings.pattern,
            )

    def _selector_from_exchange(self, settings: Settings, exchange: ExchangeClient) -> Settings:
        node_id = settings.node_id
        if not node_id:
            logger.info("Node id not set. Skipping finding node pattern and policy in the exchange.")
            return settings

        pattern = exchange.node_pattern(node_id)
        if pattern:
            return settings.supplement({PATTERN: pattern}, Source.REGISTRY)

        document = exchange.node_policy(node_id)
        if not document:
            return settings
        target = self._local(self.profile.exchange_policy_file)
        target.write_text(document + "\n", encoding="utf-8")
        logger.info("Saved the node policy stored in the exchange to %s", target)
        return settings.supplement({NODE_POLICY: str(target)}, Source.REGISTRY)

    def _local(self, path: Path) -> Path:
        path = Path(path).expanduser()
        return path if path.is_absolute() else self.workdir / path


__all__ = [
    "BATCH_MODE",
    "CERTIFICATE",
    "CSS_URL",
    "EXCHANGE_URL",
    "MGMT_HUB_CERT",
    "NODE_AUTH",
    "NODE_ID",
    "NODE_POLICY",
    "ORG_ID",
    "OVERWRITE",
    "PATTERN",
    "REQUIRED_KEYS",
    "SKIP_REGISTRATION",
    "Setting",
    "Settings",
    "SettingsResolver",
    "Source",
    "USER_AUTH",
    "WAIT_FOR_SERVICE",
    "WAIT_FOR_SERVICE_ORG",
]
