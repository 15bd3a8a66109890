"""Tests for settings resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from fleetnode.errors import (
    ConflictingSelectors,
    InvalidInput,
    MissingRequiredValue,
    RegistryUnreachable,
)
from fleetnode.settings import (
    CERTIFICATE,
    NODE_ID,
    NODE_POLICY,
    OVERWRITE,
    PATTERN,
    USER_AUTH,
    WAIT_FOR_SERVICE_ORG,
    SettingsResolver,
    Source,
)

REQUIRED = (
    "HZN_EXCHANGE_URL=https://hub.example.com/api/v1/\n"
    "HZN_FSS_CSSURL=https://hub.example.com/css/\n"
    "HZN_ORG_ID=myorg\n"
    "HZN_EXCHANGE_USER_AUTH=admin:pw\n"
)


class ExchangeStub:
    """Stands in for both the exchange factory and the client it returns."""

    def __init__(self, pattern: str = "", policy: str = "", reachable: bool = True) -> None:
        self.pattern = pattern
        self.policy = policy
        self.reachable = reachable
        self.args = None
        self.lookups = []

    def __call__(self, url, org_id, user_auth, *, certificate=None, timeout=30.0):
        self.args = {
            "url": url,
            "org_id": org_id,
            "user_auth": user_auth,
            "certificate": certificate,
            "timeout": timeout,
        }
        return self

    def check_org(self) -> None:
        if not self.reachable:
            raise RegistryUnreachable("exchange is down")

    def node_pattern(self, node_id: str) -> str:
        self.lookups.append(("pattern", node_id))
        return self.pattern

    def node_policy(self, node_id: str) -> str:
        self.lookups.append(("policy", node_id))
        return self.policy


def _resolver(runtime, tmp_path: Path, exchange: ExchangeStub, env=None) -> SettingsResolver:
    return SettingsResolver(runtime, env=env or {}, workdir=tmp_path, exchange_factory=exchange)


def _write_config(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "agent-install.cfg"
    path.write_text(REQUIRED + extra, encoding="utf-8")
    return path


def test_missing_required_value_fails_before_any_side_effect(runtime, tmp_path: Path):
    exchange = ExchangeStub(policy='{"properties": []}')
    before = sorted(tmp_path.iterdir())

    with pytest.raises(MissingRequiredValue) as exc_info:
        _resolver(runtime, tmp_path, exchange).resolve({NODE_ID: "node1"})

    assert exc_info.value.field == "HZN_EXCHANGE_URL"
    assert exchange.args is None
    assert sorted(tmp_path.iterdir()) == before


def test_each_required_key_is_enforced(runtime, tmp_path: Path):
    for key in ("HZN_EXCHANGE_URL", "HZN_FSS_CSSURL", "HZN_ORG_ID", "HZN_EXCHANGE_USER_AUTH"):
        lines = [line for line in REQUIRED.splitlines() if not line.startswith(key + "=")]
        (tmp_path / "agent-install.cfg").write_text("\n".join(lines) + "\n", encoding="utf-8")

        with pytest.raises(MissingRequiredValue) as exc_info:
            _resolver(runtime, tmp_path, ExchangeStub()).resolve({})

        assert exc_info.value.field == key


def test_override_beats_environment_beats_file(runtime, tmp_path: Path):
    _write_config(tmp_path, "NODE_ID=from-file\nHZN_EXCHANGE_PATTERN=file-pattern\n")
    env = {NODE_ID: "from-env", USER_AUTH: "env:pw"}

    settings = _resolver(runtime, tmp_path, ExchangeStub(), env).resolve({NODE_ID: "from-flag"})

    assert settings.node_id == "from-flag"
    assert settings.source(NODE_ID) is Source.OVERRIDE
    assert settings.user_auth == "env:pw"
    assert settings.source(USER_AUTH) is Source.OVERRIDE
    assert settings.pattern == "file-pattern"
    assert settings.source(PATTERN) is Source.CONFIG_FILE
    assert settings.org_id == "myorg"


def test_exchange_url_trailing_slash_is_stripped(runtime, tmp_path: Path):
    _write_config(tmp_path)
    exchange = ExchangeStub()

    settings = _resolver(runtime, tmp_path, exchange).resolve({})

    assert settings.exchange_url == "https://hub.example.com/api/v1"
    assert exchange.args["url"] == "https://hub.example.com/api/v1"
    assert exchange.args["timeout"] == runtime.registry_timeout


def test_explicit_config_file_must_exist(runtime, tmp_path: Path):
    with pytest.raises(InvalidInput):
        _resolver(runtime, tmp_path, ExchangeStub()).resolve({}, tmp_path / "nope.cfg")


def test_certificate_falls_back_to_hub_cert_then_default_file(runtime, tmp_path: Path):
    _write_config(tmp_path, "HZN_MGMT_HUB_CERT_PATH=/certs/hub.crt\n")
    settings = _resolver(runtime, tmp_path, ExchangeStub()).resolve({})
    assert settings.certificate == Path("/certs/hub.crt")

    _write_config(tmp_path)
    (tmp_path / "agent-install.crt").write_text("cert", encoding="utf-8")
    exchange = ExchangeStub()
    settings = _resolver(runtime, tmp_path, exchange).resolve({})
    assert settings.certificate == tmp_path / "agent-install.crt"
    assert settings.source(CERTIFICATE) is Source.DEFAULT
    assert exchange.args["certificate"] == tmp_path / "agent-install.crt"


def test_conflicting_selectors_from_configuration(runtime, tmp_path: Path):
    _write_config(tmp_path)
    (tmp_path / "policy.json").write_text("{}", encoding="utf-8")
    exchange = ExchangeStub()

    with pytest.raises(ConflictingSelectors):
        _resolver(runtime, tmp_path, exchange).resolve(
            {PATTERN: "edge-pattern", NODE_POLICY: "policy.json"}
        )
    assert exchange.args is None


def test_unreachable_exchange_aborts(runtime, tmp_path: Path):
    _write_config(tmp_path)

    with pytest.raises(RegistryUnreachable):
        _resolver(runtime, tmp_path, ExchangeStub(reachable=False)).resolve({NODE_ID: "node1"})


def test_pattern_is_fetched_from_exchange_when_absent_locally(runtime, tmp_path: Path):
    _write_config(tmp_path)
    exchange = ExchangeStub(pattern="myorg/edge-pattern", policy='{"properties": []}')

    settings = _resolver(runtime, tmp_path, exchange).resolve({NODE_ID: "node1"})

    assert settings.pattern == "myorg/edge-pattern"
    assert settings.source(PATTERN) is Source.REGISTRY
    assert settings.node_policy is None
    assert exchange.lookups == [("pattern", "node1")]


def test_policy_is_fetched_and_materialized(runtime, tmp_path: Path):
    _write_config(tmp_path)
    document = '{"properties": [{"name": "gpu", "value": true}]}'
    exchange = ExchangeStub(policy=document)

    settings = _resolver(runtime, tmp_path, exchange).resolve({NODE_ID: "node1"})

    target = tmp_path / "exchange-node-policy.json"
    assert settings.node_policy == target
    assert settings.source(NODE_POLICY) is Source.REGISTRY
    assert target.read_text(encoding="utf-8") == document + "\n"


def test_registry_is_not_queried_without_node_id_or_with_local_selector(runtime, tmp_path: Path):
    _write_config(tmp_path)
    exchange = ExchangeStub(pattern="other")

    settings = _resolver(runtime, tmp_path, exchange).resolve({})
    assert settings.pattern == ""

    settings = _resolver(runtime, tmp_path, exchange).resolve(
        {NODE_ID: "node1", PATTERN: "edge-pattern"}
    )
    assert settings.pattern == "edge-pattern"
    assert exchange.lookups == []


def test_local_policy_file_must_exist(runtime, tmp_path: Path):
    _write_config(tmp_path)

    with pytest.raises(InvalidInput) as exc_info:
        _resolver(runtime, tmp_path, ExchangeStub()).resolve({NODE_POLICY: "missing.json"})

    assert exc_info.value.field == NODE_POLICY


def test_service_org_without_service_is_dropped(runtime, tmp_path: Path, caplog):
    _write_config(tmp_path)

    with caplog.at_level("WARNING", logger="fleetnode.settings"):
        settings = _resolver(runtime, tmp_path, ExchangeStub()).resolve(
            {WAIT_FOR_SERVICE_ORG: "other-org"}
        )

    assert settings.wait_for_service_org == ""
    assert "Ignoring -o flag" in caplog.text


def test_flags_and_describe(runtime, tmp_path: Path):
    _write_config(tmp_path)

    settings = _resolver(runtime, tmp_path, ExchangeStub()).resolve({OVERWRITE: True})

    assert settings.overwrite is True
    assert settings.source(OVERWRITE) is Source.OVERRIDE
    assert settings.skip_registration is False
    rows = {key: (value, source) for key, value, source in settings.describe()}
    assert rows[USER_AUTH] == ("<specified>", "config-file")
    assert rows[OVERWRITE] == ("true", "override")


def test_supplement_returns_new_value(runtime, tmp_path: Path):
    _write_config(tmp_path)
    settings = _resolver(runtime, tmp_path, ExchangeStub()).resolve({})

    updated = settings.supplement({PATTERN: "p"}, Source.REGISTRY)

    assert settings.pattern == ""
    assert updated.pattern == "p"
    with pytest.raises(TypeError):
        settings.values[PATTERN] = None  # type: ignore[index]
