"""FastAPI dependencies resolving the services wired onto app.state."""

from typing import Optional

import httpx
from fastapi import HTTPException, Request

from core.integrations.auth_manager import AuthManager
from core.integrations.errors import UnsupportedProviderError
from core.integrations.registry import ConnectorRegistry
from core.integrations.state_store import ConnectorStateStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.webhooks import WebhookGateway
from core.integrations.types import ConnectorDefinition


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_store(request: Request) -> ConnectorStateStore:
    return request.app.state.store


def get_auth(request: Request) -> AuthManager:
    return request.app.state.auth


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_gateway(request: Request) -> WebhookGateway:
    return request.app.state.gateway


def get_http_client(request: Request) -> Optional[httpx.AsyncClient]:
    return request.app.state.http_client


def require_definition(registry: ConnectorRegistry, provider: str) -> ConnectorDefinition:
    """Definition for ``provider`` or a 404 listing the supported providers."""
    try:
        return registry.definition(provider)
    except UnsupportedProviderError as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "Unsupported provider", "supportedProviders": e.supported},
        ) from e
