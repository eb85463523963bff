"""
SyncHub Core Integrations — Connector Sync Framework.

Provides provider-agnostic sync infrastructure:
- BaseConnector: connector contract with authenticated HTTP pipeline
- ConnectorRegistry: validated, frozen-after-startup connector catalog
- AuthManager: credential lifecycle (headers, OAuth2 exchange, single-flight refresh)
- Transform engine: declarative field mapping onto normalized entities
- SyncOrchestrator: paged full/incremental sync with durable cursors
- WebhookGateway: verify, dedupe and apply inbound provider events
"""
from core.integrations.adapter_base import (
    BaseConnector,
    ConnectorRequest,
    ConnectorResponse,
    IntegrationHealth,
)
from core.integrations.auth_manager import (
    AuthManager,
    CredentialState,
    OAuthToken,
    mask_credentials,
)
from core.integrations.entities import (
    NormalizedCustomer,
    NormalizedEntity,
    NormalizedInvoice,
    NormalizedOrder,
    NormalizedProduct,
    NormalizedSubscription,
    build_entity,
)
from core.integrations.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    CredentialsInvalidError,
    ProviderError,
    TransformError,
    UnsupportedProviderError,
)
from core.integrations.normalizer import COERCIONS, transform
from core.integrations.persistence import InMemoryPersistence, Persistence, UpsertOutcome
from core.integrations.registry import ConnectorRegistry
from core.integrations.state_store import ConnectorStateStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.types import (
    AuthType,
    ConnectorDefinition,
    ConnectorState,
    EntityType,
    FetchOptions,
    FetchResult,
    FieldMapping,
    SyncMode,
    SyncResult,
    TransformDefinition,
    WebhookEvent,
    WebhookResult,
)
from core.integrations.webhooks import WebhookGateway

__all__ = [
    # Contract
    "BaseConnector",
    "ConnectorRequest",
    "ConnectorResponse",
    "IntegrationHealth",
    "ConnectorRegistry",
    # Auth
    "AuthManager",
    "CredentialState",
    "OAuthToken",
    "mask_credentials",
    # Transform
    "COERCIONS",
    "transform",
    "build_entity",
    "NormalizedEntity",
    "NormalizedCustomer",
    "NormalizedOrder",
    "NormalizedProduct",
    "NormalizedSubscription",
    "NormalizedInvoice",
    # Sync
    "SyncOrchestrator",
    "ConnectorStateStore",
    "Persistence",
    "InMemoryPersistence",
    "UpsertOutcome",
    # Webhooks
    "WebhookGateway",
    # Types
    "AuthType",
    "ConnectorDefinition",
    "ConnectorState",
    "EntityType",
    "FetchOptions",
    "FetchResult",
    "FieldMapping",
    "SyncMode",
    "SyncResult",
    "TransformDefinition",
    "WebhookEvent",
    "WebhookResult",
    # Errors
    "ConnectorError",
    "ConfigurationError",
    "UnsupportedProviderError",
    "AuthenticationError",
    "CredentialsInvalidError",
    "ProviderError",
    "TransformError",
]
