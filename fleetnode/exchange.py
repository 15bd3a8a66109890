"""Read-only HTTP client for the exchange (remote node registry)."""

from __future__ import annotations

import base64
import json
import logging
from pathlib import Path
import ssl
from typing import Any, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .errors import RegistryUnreachable

logger = logging.getLogger("fleetnode.exchange")

DEFAULT_TIMEOUT = 30.0


class ExchangeClient:
    """Queries the exchange as ``<org>/<user auth>``.

    Only the connectivity check is fatal on failure. Lookups of an existing
    node record or policy treat any HTTP or connection error as "nothing
    stored", the same way an absent node is treated.
    """

    def __init__(
        self,
        url: str,
        org_id: str,
        user_auth: str,
        *,
        certificate: Optional[Path] = None,
        timeout: float = DEFAULT_TIMEOUT,
        opener: Callable[..., Any] = urlopen,
    ) -> None:
        self.url = url.rstrip("/")
        self.org_id = org_id
        self.user_auth = user_auth
        self.certificate = certificate
        self.timeout = timeout
        self._opener = opener

    def check_org(self) -> None:
        """Fail with :class:`RegistryUnreachable` unless the org can be read."""

        try:
            body = self._get(f"/orgs/{quote(self.org_id)}")
        except (HTTPError, URLError, OSError) as exc:
            raise RegistryUnreachable(
                f"Failed to reach exchange using CERTIFICATE={self.certificate or ''} "
                f"HZN_EXCHANGE_URL={self.url} HZN_ORG_ID={self.org_id} "
                "and HZN_EXCHANGE_USER_AUTH=<specified>",
                field="HZN_EXCHANGE_URL",
                value=self.url,
            ) from exc
        if not body.strip():
            raise RegistryUnreachable(
                "Exchange returned an empty organization record",
                field="HZN_ORG_ID",
                value=self.org_id,
            )
        logger.info("Exchange %s is reachable for org %s.", self.url, self.org_id)

    def node_pattern(self, node_id: str) -> str:
        """Pattern currently assigned to ``node_id`` in the exchange, or ``""``."""

        body = self._lookup(f"/orgs/{quote(self.org_id)}/nodes/{quote(node_id)}")
        if not body:
            return ""
        try:
            data: Any = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed node record for %s.", node_id)
            return ""
        nodes = data.get("nodes") if isinstance(data, dict) else None
        if not isinstance(nodes, dict):
            logger.warning("Ignoring unexpected node record for %s.", node_id)
            return ""
        for record in nodes.values():
            if not isinstance(record, dict):
                return ""
            pattern = str(record.get("pattern") or "")
            if pattern:
                logger.info("Found pattern %s for node %s in the exchange.", pattern, node_id)
            return pattern
        return ""

    def node_policy(self, node_id: str) -> str:
        """Raw node policy document stored for ``node_id``, or ``""``."""

        return self._lookup(f"/orgs/{quote(self.org_id)}/nodes/{quote(node_id)}/policy").strip()

    def _lookup(self, path: str) -> str:
        try:
            return self._get(path)
        except (HTTPError, URLError, OSError) as exc:
            logger.debug("Exchange lookup %s failed: %s", path, exc)
            return ""

    def _get(self, path: str) -> str:
        credentials = f"{self.org_id}/{self.user_auth}".encode("utf-8")
        req = Request(
            f"{self.url}{path}",
            headers={
                "Accept": "application/json",
                "Authorization": "Basic " + base64.b64encode(credentials).decode("ascii"),
            },
            method="GET",
        )
        context = None
        if self.certificate:
            context = ssl.create_default_context(cafile=str(self.certificate))
        with self._opener(req, timeout=self.timeout, context=context) as resp:
            return resp.read().decode("utf-8")


__all__ = ["ExchangeClient"]
