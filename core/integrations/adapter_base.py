"""
SyncHub Connector Contract.

Every provider integration inherits from BaseConnector and declares a
ConnectorDefinition. Subclasses implement five operations:
- test_connection (via _check_connection): cheap authenticated probe, never raises
- fetch: one page of one entity type, resumable from an opaque cursor
- verify_webhook: constant-time signature check over the raw body
- read_webhook_event / parse_webhook: envelope parsing and entity mapping

The base class provides:
- Authenticated HTTP pipeline over httpx (headers from the AuthManager)
- Error translation (timeouts, transport, 4xx/5xx) into the connector taxonomy
- Health tracking (latency, errors, auth failures)
- Record normalization through the transform engine
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, ClassVar, Mapping, Optional
import logging
import time

import httpx

from core.integrations.auth_manager import AuthManager
from core.integrations.entities import NormalizedEntity
from core.integrations.errors import (
    ConfigurationError,
    ConnectorError,
    ProviderError,
    ProviderHTTPError,
    ProviderNetworkError,
    ProviderTimeoutError,
)
from core.integrations.normalizer import Coercion, transform
from core.integrations.persistence import UpsertOutcome
from core.integrations.types import (
    ConnectionStatus,
    ConnectorDefinition,
    ConnectorState,
    EntityType,
    FetchOptions,
    FetchResult,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / Response envelope
# ---------------------------------------------------------------------------

@dataclass
class ConnectorRequest:
    """Standardized outbound request."""
    method: str  # GET, POST, PUT, PATCH, DELETE
    path: str
    params: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


@dataclass
class ConnectorResponse:
    """Standardized inbound response."""
    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    latency_ms: float = 0.0


# ---------------------------------------------------------------------------
# Health tracking
# ---------------------------------------------------------------------------

@dataclass
class IntegrationHealth:
    """Health metrics for one connector instance."""
    connector_id: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    auth_failures: int = 0
    avg_latency_ms: float = 0.0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests

    def record(self, latency_ms: float, success: bool, error: str | None = None) -> None:
        self.total_requests += 1
        self.avg_latency_ms += (latency_ms - self.avg_latency_ms) / self.total_requests
        now = datetime.now(timezone.utc)
        if success:
            self.successful_requests += 1
            self.last_success = now
        else:
            self.failed_requests += 1
            self.last_failure = now
            self.last_error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "total_requests": self.total_requests,
            "successful": self.successful_requests,
            "failed": self.failed_requests,
            "auth_failures": self.auth_failures,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


# ---------------------------------------------------------------------------
# BaseConnector
# ---------------------------------------------------------------------------

class BaseConnector(ABC):
    """
    Base class for all provider connectors.

    Subclasses must set:
        definition: ConnectorDefinition — static connector description
        base_url: str                    — API root, may hold {config} placeholders
    and may set:
        coercions: dict[str, Callable]   — provider-specific named coercions
    """

    definition: ClassVar[ConnectorDefinition]
    base_url: ClassVar[str] = ""
    coercions: ClassVar[Mapping[str, Coercion]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        # Skip validation for abstract subclasses
        if ABC in cls.__bases__:
            return
        if not isinstance(getattr(cls, "definition", None), ConnectorDefinition):
            raise TypeError(f"{cls.__name__} must define a 'definition' ConnectorDefinition")
        if not cls.base_url:
            raise TypeError(f"{cls.__name__} must define a 'base_url'")

    def __init__(
        self,
        state: ConnectorState,
        auth: AuthManager,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.state = state
        self.auth = auth
        self.client = client
        self.timeout = timeout
        self.last_access_token: str | None = None
        self.webhook_tolerance_seconds: int | None = None  # None = no replay window
        self._health = IntegrationHealth(connector_id=self.definition.id)

    @property
    def connector_id(self) -> str:
        return self.definition.id

    # --- Contract ---

    async def test_connection(self) -> ConnectionStatus:
        """Probe the provider with one authenticated call. Never raises."""
        checked_at = datetime.now(timezone.utc)
        try:
            details = await self._check_connection()
        except ConnectorError as e:
            return ConnectionStatus(connected=False, checked_at=checked_at, error=str(e))
        except Exception as e:
            logger.exception("Connection check for %s crashed", self.connector_id)
            return ConnectionStatus(connected=False, checked_at=checked_at, error=f"Unexpected error: {e}")
        return ConnectionStatus(connected=True, checked_at=checked_at, details=details or {})

    @abstractmethod
    async def _check_connection(self) -> dict[str, Any] | None:
        """Issue the cheapest authenticated call. Raise on failure."""

    @abstractmethod
    async def fetch(self, entity_type: EntityType, options: FetchOptions) -> FetchResult:
        """Fetch one page. Must be resumable from ``options.cursor`` alone."""

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        """Check the provider signature over the exact raw body."""

    @abstractmethod
    def read_webhook_event(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        """Parse the provider envelope. Raise ValueError on malformed payloads."""

    @abstractmethod
    def parse_webhook(self, event: WebhookEvent) -> NormalizedEntity | None:
        """Map a verified event to at most one entity mutation."""

    def webhook_action(self, event: WebhookEvent, outcome: UpsertOutcome) -> str:
        """Action label reported back to the provider for an applied event."""
        return outcome.value

    # --- Normalization ---

    def normalize(
        self,
        entity_type: EntityType,
        record: Mapping[str, Any],
        **overrides: Any,
    ) -> NormalizedEntity:
        definition = self.definition.transforms.get(entity_type)
        if definition is None:
            raise ConfigurationError(f"{self.connector_id} has no transform for {entity_type.value}")
        return transform(
            record,
            definition,
            self.coercions,
            record_id=self.record_id(entity_type, record),
            overrides=overrides,
        )

    def record_id(self, entity_type: EntityType, record: Mapping[str, Any]) -> str | None:
        entity = self.definition.entity(entity_type)
        key = entity.primary_key if entity else "id"
        value = record.get(key) if isinstance(record, Mapping) else None
        return str(value) if value is not None else None

    # --- HTTP pipeline ---

    def auth_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        """Provider auth headers. Override for non-standard header names."""
        return self.auth.build_headers(self.definition, credentials)

    def url_for(self, path: str) -> str:
        try:
            base = self.base_url.format(**self.state.config)
        except KeyError as e:
            raise ConfigurationError(f"{self.connector_id} needs config {e.args[0]!r}") from e
        return f"{base.rstrip('/')}/{path.lstrip('/')}"

    async def request(self, req: ConnectorRequest) -> ConnectorResponse:
        """
        Execute one authenticated request:
        Fresh credentials → Auth headers → Send → Error translation → Health

        No retries here; the sync orchestrator owns retry decisions.
        """
        credentials = await self.auth.ensure_fresh(self.definition, self.state)
        self.last_access_token = credentials.get("access_token")
        headers = {"Accept": "application/json", **self.auth_headers(credentials), **req.headers}
        params = {**self.auth.build_query_params(self.definition, credentials), **req.params}
        url = self.url_for(req.path)
        timeout = req.timeout or self.timeout

        start = time.monotonic()
        try:
            if self.client is not None:
                resp = await self._send(self.client, req, url, params, headers, timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await self._send(client, req, url, params, headers, timeout)
        except httpx.TimeoutException as e:
            self._health.record((time.monotonic() - start) * 1000, False, "timeout")
            raise ProviderTimeoutError(f"{self.connector_id}: {req.method} {req.path} timed out") from e
        except httpx.TransportError as e:
            self._health.record((time.monotonic() - start) * 1000, False, str(e))
            raise ProviderNetworkError(f"{self.connector_id}: {req.method} {req.path} failed: {e}") from e
        latency = (time.monotonic() - start) * 1000

        if resp.status_code >= 400:
            error = f"HTTP {resp.status_code}: {resp.text[:200]}"
            self._health.record(latency, False, error)
            if resp.status_code == 401:
                self._health.auth_failures += 1
            raise ProviderHTTPError(
                resp.status_code,
                f"{self.connector_id}: {req.method} {req.path} returned {error}",
                retry_after=_retry_after(resp),
            )

        self._health.record(latency, True)
        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError as e:
                raise ProviderError(
                    f"{self.connector_id}: {req.path} returned invalid JSON", retryable=True
                ) from e
        return ConnectorResponse(
            status_code=resp.status_code,
            data=data,
            headers=dict(resp.headers),
            latency_ms=latency,
        )

    @staticmethod
    async def _send(
        client: httpx.AsyncClient,
        req: ConnectorRequest,
        url: str,
        params: dict[str, Any],
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        return await client.request(
            method=req.method,
            url=url,
            params=params or None,
            json=req.body,
            headers=headers,
            timeout=timeout,
        )

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self.request(ConnectorRequest(method="GET", path=path, params=params or {}))
        return resp.data

    def get_health(self) -> IntegrationHealth:
        return self._health
