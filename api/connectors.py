"""Connector management router.

- Catalog of registered connectors
- Per-workspace status (credential state, cursors, optional live check)
- Credential and config entry
- On-demand sync runs
- OAuth2 authorize / callback
"""

from dataclasses import asdict
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query

from api.dependencies import (
    get_auth,
    get_http_client,
    get_orchestrator,
    get_registry,
    get_store,
    require_definition,
)
from api.middleware import get_current_workspace
from api.schemas import AuthorizeResponse, ConnectorStatusResponse, CredentialsUpdate, SyncRequest
from core.config import rate_limit_for
from core.integrations.auth_manager import AuthManager, CredentialState, mask_credentials
from core.integrations.errors import AuthenticationError, ConfigurationError, ProviderError
from core.integrations.registry import ConnectorRegistry
from core.integrations.state_store import ConnectorStateStore
from core.integrations.sync import SyncOrchestrator

router = APIRouter()


# ============================================================================
# Catalog
# ============================================================================

@router.get("")
async def list_connectors(registry: ConnectorRegistry = Depends(get_registry)):
    """List every registered connector definition with its rate limit."""
    definitions = [
        {**d.to_dict(), "rate_limit": asdict(rate_limit_for(d.rate_limit_tier))}
        for d in registry.definitions()
    ]
    return {"data": definitions, "count": len(definitions)}


# ============================================================================
# Status & credentials
# ============================================================================

@router.get("/{provider}/status", response_model=ConnectorStatusResponse)
async def connector_status(
    provider: str,
    check: bool = Query(False, description="Probe the provider with a live call"),
    registry: ConnectorRegistry = Depends(get_registry),
    store: ConnectorStateStore = Depends(get_store),
    auth: AuthManager = Depends(get_auth),
    client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Credential state and cursors for the current workspace."""
    definition = require_definition(registry, provider)
    workspace_id = get_current_workspace()
    state = await store.load(workspace_id, definition.id)
    configured = bool(state.credentials)

    connection = None
    health = None
    if check and configured:
        connector = registry.create(provider, state, auth, client=client)
        connection = (await connector.test_connection()).to_dict()
        health = connector.get_health().to_dict()

    return ConnectorStatusResponse(
        provider=provider,
        workspace_id=workspace_id,
        credential_status=auth.status(state).value if configured else "missing",
        configured=configured,
        credentials=mask_credentials(state.credentials),
        config=state.config,
        cursors=state.last_sync_cursors,
        connection=connection,
        health=health,
    )


@router.put("/{provider}/credentials")
async def update_credentials(
    provider: str,
    request: CredentialsUpdate,
    registry: ConnectorRegistry = Depends(get_registry),
    store: ConnectorStateStore = Depends(get_store),
    auth: AuthManager = Depends(get_auth),
):
    """Store credentials (and optionally config) for the current workspace."""
    definition = require_definition(registry, provider)
    state = await store.load(get_current_workspace(), definition.id)
    if request.config is not None:
        state.config = dict(request.config)
        await store.save(state)
    await auth.set_credentials(state, request.credentials)
    return {
        "provider": provider,
        "credential_status": CredentialState.VALID.value,
        "credentials": mask_credentials(state.credentials),
    }


# ============================================================================
# Sync
# ============================================================================

@router.post("/{provider}/sync")
async def run_sync(
    provider: str,
    request: SyncRequest,
    registry: ConnectorRegistry = Depends(get_registry),
    store: ConnectorStateStore = Depends(get_store),
    auth: AuthManager = Depends(get_auth),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    client: Optional[httpx.AsyncClient] = Depends(get_http_client),
):
    """Run a sync for the requested entity types and return the summary."""
    definition = require_definition(registry, provider)
    state = await store.load(get_current_workspace(), definition.id)
    if not state.credentials:
        raise HTTPException(status_code=409, detail=f"{provider} has no credentials for this workspace")

    connector = registry.create(provider, state, auth, client=client)
    summary = await orchestrator.sync_all(
        connector,
        mode=request.mode,
        since=request.since,
        entities=request.entities,
        deadline_seconds=request.deadline_seconds,
    )
    return summary.to_dict()


# ============================================================================
# OAuth2
# ============================================================================

@router.get("/{provider}/oauth/authorize", response_model=AuthorizeResponse)
async def oauth_authorize(
    provider: str,
    registry: ConnectorRegistry = Depends(get_registry),
    store: ConnectorStateStore = Depends(get_store),
    auth: AuthManager = Depends(get_auth),
):
    """Authorization URL for the provider consent screen."""
    definition = require_definition(registry, provider)
    state = await store.load(get_current_workspace(), definition.id)
    try:
        url = auth.authorization_url(definition, state)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return AuthorizeResponse(provider=provider, authorization_url=url)


@router.get("/{provider}/oauth/callback")
async def oauth_callback(
    provider: str,
    code: str,
    state: str,
    registry: ConnectorRegistry = Depends(get_registry),
    store: ConnectorStateStore = Depends(get_store),
    auth: AuthManager = Depends(get_auth),
):
    """Exchange the authorization code. The workspace comes from the CSRF state."""
    definition = require_definition(registry, provider)
    try:
        owner = auth.consume_oauth_state(state)
    except AuthenticationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if owner["connector_id"] != definition.id:
        raise HTTPException(status_code=400, detail="OAuth state mismatch")

    connector_state = await store.load(owner["workspace_id"], definition.id)
    try:
        token = await auth.exchange_code(definition, connector_state, code)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e

    return {
        "provider": provider,
        "workspace_id": owner["workspace_id"],
        "connected": True,
        "scopes": token.scopes,
    }
