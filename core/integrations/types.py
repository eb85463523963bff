"""
SyncHub Connector Types — Definitions, State, and Results.

Shared vocabulary for every component of the sync framework:
- Enums: AuthType, EntityType, SyncMode
- Immutable connector definitions (auth, entities, endpoints, transforms)
- Mutable per-workspace ConnectorState (credentials, config, cursors)
- Result envelopes: SyncError, SyncResult, ConnectionStatus, WebhookResult
- Paging envelopes: FetchOptions, FetchResult
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
import copy


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AuthType(str, Enum):
    OAUTH2 = "oauth2"
    API_KEY = "api_key"
    BASIC = "basic"
    BEARER = "bearer"
    CUSTOM = "custom"
    NONE = "none"


class EntityType(str, Enum):
    CUSTOMER = "customer"
    ORDER = "order"
    PRODUCT = "product"
    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


# ---------------------------------------------------------------------------
# Connector definition (immutable after registration)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OAuth2Config:
    """OAuth2 endpoints and client. URLs may hold {placeholders} from state.config."""
    authorization_url: str
    token_url: str
    client_id: str = ""
    client_secret: str = ""
    scopes: tuple[str, ...] = ()
    redirect_uri: str = ""
    revoke_url: str | None = None


@dataclass(frozen=True)
class ApiKeyConfig:
    header_name: str = "Authorization"
    prefix: str = "Bearer"
    location: str = "header"  # header | query
    query_param: str = "api_key"


@dataclass(frozen=True)
class AuthConfig:
    type: AuthType = AuthType.NONE
    oauth2: OAuth2Config | None = None
    api_key: ApiKeyConfig | None = None


@dataclass(frozen=True)
class EntityDefinition:
    name: EntityType
    target_table: str
    primary_key: str = "id"
    supports_incremental: bool = True
    update_field: str | None = "updated_at"
    enabled: bool = True


@dataclass(frozen=True)
class EndpointDefinition:
    name: str
    method: str
    path: str
    entity: EntityType | None = None


@dataclass(frozen=True)
class FieldMapping:
    """Map one source path onto one target field."""
    source: str
    target: str
    coerce: str | None = None
    default: Any = None


@dataclass(frozen=True)
class TransformDefinition:
    entity: EntityType
    mappings: tuple[FieldMapping, ...]


@dataclass(frozen=True)
class WebhookConfig:
    events: tuple[str, ...] = ()
    signature_header: str = ""


@dataclass(frozen=True)
class ConnectorDefinition:
    """Static description of a provider connector."""
    id: str
    slug: str
    name: str
    version: str
    category: str
    auth: AuthConfig
    entities: tuple[EntityDefinition, ...]
    endpoints: tuple[EndpointDefinition, ...] = ()
    transforms: Mapping[EntityType, TransformDefinition] = field(
        default_factory=lambda: MappingProxyType({})
    )
    webhooks: WebhookConfig | None = None
    rate_limit_tier: str = "starter"

    def __post_init__(self) -> None:
        # Freeze the transforms mapping even when a plain dict was passed in
        if not isinstance(self.transforms, MappingProxyType):
            object.__setattr__(self, "transforms", MappingProxyType(dict(self.transforms)))

    def entity(self, entity_type: EntityType) -> EntityDefinition | None:
        for entity in self.entities:
            if entity.name == entity_type:
                return entity
        return None

    def enabled_entities(self) -> list[EntityType]:
        return [e.name for e in self.entities if e.enabled]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "version": self.version,
            "category": self.category,
            "auth_type": self.auth.type.value,
            "entities": [e.name.value for e in self.entities if e.enabled],
            "webhook_events": list(self.webhooks.events) if self.webhooks else [],
            "rate_limit_tier": self.rate_limit_tier,
        }


# ---------------------------------------------------------------------------
# Connector state (per workspace, mutated only through the state store)
# ---------------------------------------------------------------------------

@dataclass
class ConnectorState:
    workspace_id: str
    connector_id: str
    credentials: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    last_sync_cursors: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.workspace_id, self.connector_id)

    def cursor_for(self, entity_type: EntityType) -> str | None:
        return self.last_sync_cursors.get(entity_type.value)

    def copy(self) -> ConnectorState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "connector_id": self.connector_id,
            "credentials": dict(self.credentials),
            "config": dict(self.config),
            "last_sync_cursors": dict(self.last_sync_cursors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectorState:
        return cls(
            workspace_id=data["workspace_id"],
            connector_id=data["connector_id"],
            credentials=dict(data.get("credentials") or {}),
            config=dict(data.get("config") or {}),
            last_sync_cursors=dict(data.get("last_sync_cursors") or {}),
        )


# ---------------------------------------------------------------------------
# Paging
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchOptions:
    cursor: str | None = None
    limit: int = 100
    since: datetime | None = None


@dataclass(frozen=True)
class FetchResult:
    data: list[dict[str, Any]]
    next_cursor: str | None = None
    has_more: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncError:
    message: str
    retryable: bool = False
    record_id: str | None = None
    code: str = "internal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "retryable": self.retryable,
            "record_id": self.record_id,
            "code": self.code,
        }


@dataclass(frozen=True)
class SyncResult:
    connector_id: str
    entity_type: EntityType
    mode: SyncMode
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    errors: tuple[SyncError, ...] = ()
    pages_fetched: int = 0
    duration_ms: int = 0
    cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "entity_type": self.entity_type.value,
            "mode": self.mode.value,
            "success": self.success,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_deleted": self.records_deleted,
            "errors": [e.to_dict() for e in self.errors],
            "pages_fetched": self.pages_fetched,
            "duration_ms": self.duration_ms,
            "cursor": self.cursor,
        }


@dataclass(frozen=True)
class SyncSummary:
    connector_id: str
    mode: SyncMode
    results: tuple[SyncResult, ...]

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def records_processed(self) -> int:
        return sum(r.records_processed for r in self.results)

    def result_for(self, entity_type: EntityType) -> SyncResult | None:
        for result in self.results:
            if result.entity_type == entity_type:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "mode": self.mode.value,
            "success": self.success,
            "records_processed": self.records_processed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    checked_at: datetime
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
            "details": dict(self.details),
        }


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WebhookEvent:
    """One inbound provider event. Headers are lower-cased."""
    id: str
    type: str
    timestamp: datetime | None
    payload: dict[str, Any]
    headers: Mapping[str, str] = field(default_factory=dict)
    raw_body: bytes = b""
    object_id: str | None = None


@dataclass(frozen=True)
class WebhookResult:
    success: bool
    status_code: int
    event_id: str | None = None
    action: str | None = None
    object_id: str | None = None
    message: str | None = None
    error: str | None = None
    supported_providers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            body: dict[str, Any] = {"error": self.error or self.message}
            if self.event_id:
                body["eventId"] = self.event_id
            if self.supported_providers:
                body["supportedProviders"] = list(self.supported_providers)
            return body
        return {
            "received": True,
            "eventId": self.event_id,
            "action": self.action,
            "objectId": self.object_id,
            "message": self.message,
        }
