"""
Domain: External data connectors
ID Prefix: observe only

Connectors fetch raw material for ``observe``. Payloads are stored opaquely:
the kernel never parses connector-specific schemas. Whether a cached fetch is
fresh enough is decided by a single StalenessPolicy passed to observe, not by
each connector.
"""
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import httpx

from ..kernel.errors import ConnectorError
from ..kernel.store import ArtifactStore, utc_now

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    payload: Any
    origin: str
    retrieved_at: datetime
    cached: bool = False


class Connector(Protocol):
    name: str

    def fetch(self, query: Dict[str, Any]) -> FetchResult:
        ...


@dataclass(frozen=True)
class StalenessPolicy:
    """A cached fetch younger than max_age_seconds is reused. None disables caching."""

    max_age_seconds: Optional[float] = None

    def is_fresh(self, retrieved_at: datetime, now: Optional[datetime] = None) -> bool:
        if self.max_age_seconds is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - retrieved_at <= timedelta(seconds=self.max_age_seconds)


def query_key(query: Dict[str, Any]) -> str:
    canonical = json.dumps(query, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class HttpConnector:
    """
    GET a URL with the query as parameters; JSON bodies are decoded, anything
    else is kept as text.

    Example:
        connector = HttpConnector("search", "https://search.example.com/api")
        result = connector.fetch({"q": "Q1 revenue"})
    """

    def __init__(
        self,
        name: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.name = name
        self.url = url
        self._client = client or httpx.Client(timeout=timeout, headers=headers or {})

    def fetch(self, query: Dict[str, Any]) -> FetchResult:
        try:
            response = self._client.get(self.url, params=query)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ConnectorError(
                f"Connector {self.name} failed: {exc}",
                primitive="observe",
                details={"connector": self.name},
            ) from exc

        content_type = response.headers.get("content-type", "")
        payload: Any = response.json() if "json" in content_type else response.text
        return FetchResult(payload=payload, origin=str(response.url), retrieved_at=utc_now())

    def close(self) -> None:
        self._client.close()


class ConnectorRegistry:
    def __init__(self) -> None:
        self._connectors: Dict[str, Connector] = {}

    def register(self, connector: Connector) -> None:
        self._connectors[connector.name] = connector

    def names(self) -> list[str]:
        return sorted(self._connectors)

    def get(self, name: str) -> Optional[Connector]:
        return self._connectors.get(name)


def fetch_with_policy(
    store: ArtifactStore,
    connector: Connector,
    query: Dict[str, Any],
    policy: StalenessPolicy,
) -> FetchResult:
    """Reuse a fresh cached fetch, otherwise call the connector.

    A fresh fetch is not cached here; the caller hands it to remember_fetch
    once the observation that used it has been committed.
    """
    key = query_key(query)
    cached = store.load_fetch(connector.name, key)
    if cached is not None and policy.is_fresh(cached["retrieved_at"]):
        logger.debug("Reusing cached fetch from %s (%s)", connector.name, key[:12])
        return FetchResult(
            payload=cached["payload"],
            origin=cached["origin"],
            retrieved_at=cached["retrieved_at"],
            cached=True,
        )

    return connector.fetch(query)


def remember_fetch(store: ArtifactStore, connector_name: str, query: Dict[str, Any], result: FetchResult) -> None:
    if result.cached:
        return
    store.cache_fetch(connector_name, query_key(query), result.origin, result.payload, result.retrieved_at)
