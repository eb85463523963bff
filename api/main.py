"""SyncHub API — FastAPI entry point.

Registers middleware, routers, and lifecycle hooks. Services (registry,
state store, auth manager, sync orchestrator, webhook gateway) are built
once per app and exposed on ``app.state`` for the routers.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.connectors import router as connectors_router
from api.middleware import WorkspaceMiddleware
from api.webhooks import router as webhooks_router
from core.config import SyncHubConfig
from core.database import close_db, create_engine, create_session_factory, init_db
from core.integrations.auth_manager import AuthManager
from core.integrations.persistence import InMemoryPersistence, Persistence
from core.integrations.registry import ConnectorRegistry
from core.integrations.sql_store import SqlPersistence
from core.integrations.state_store import ConnectorStateStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.webhooks import WebhookGateway
from core.observability.logging_setup import configure_logging
from core.observability.otel_setup import setup_otel
from core.resilience.idempotency import IdempotencyStore
from providers import build_default_registry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown hooks."""
    engine = app.state.engine
    if engine is not None:
        await init_db(engine)
    logger.info("SyncHub API started", extra={"providers": app.state.registry.list_providers()})
    yield
    if engine is not None:
        await close_db(engine)
    logger.info("SyncHub API shutting down")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[SyncHubConfig] = None,
    persistence: Optional[Persistence] = None,
    registry: Optional[ConnectorRegistry] = None,
    environ: Optional[Mapping[str, str]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the API with its services. Arguments override the env-derived defaults."""
    config = config or SyncHubConfig.from_env()
    configure_logging(config.log_level)
    tracer = setup_otel("synchub") if os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") else None

    engine = None
    if persistence is None:
        if config.database_url:
            engine = create_engine(config.database_url)
            persistence = SqlPersistence(create_session_factory(engine))
        else:
            persistence = InMemoryPersistence()

    registry = registry or build_default_registry()
    store = ConnectorStateStore(persistence)
    auth = AuthManager(
        store,
        client=http_client,
        buffer_seconds=config.auth.refresh_buffer_seconds,
        timeout=config.auth.token_timeout_seconds,
    )

    app = FastAPI(
        title="SyncHub",
        description="Connector sync framework: provider syncs, credential lifecycle and webhook ingestion",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.engine = engine
    app.state.http_client = http_client
    app.state.registry = registry
    app.state.persistence = persistence
    app.state.store = store
    app.state.auth = auth
    app.state.orchestrator = SyncOrchestrator(
        store,
        persistence,
        auth,
        tracer=tracer,
        page_limit=config.sync.page_limit,
        deadline_seconds=config.sync.deadline_seconds,
    )
    app.state.gateway = WebhookGateway(
        registry,
        store,
        persistence,
        auth,
        idempotency=IdempotencyStore(default_ttl_seconds=config.webhooks.dedupe_ttl_seconds),
        tracer=tracer,
        environ=environ,
        app_url=config.webhooks.app_url,
        tolerance_seconds=config.webhooks.tolerance_seconds,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Workspace isolation middleware
    app.add_middleware(WorkspaceMiddleware)

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(connectors_router, prefix="/connectors", tags=["Connectors"])

    # -----------------------------------------------------------------------
    # Health & root
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": VERSION}

    @app.get("/")
    async def root():
        return {
            "name": "SyncHub",
            "version": VERSION,
            "docs": "/docs",
            "providers": registry.list_providers(),
        }

    return app


app = create_app()
