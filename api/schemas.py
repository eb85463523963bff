"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.integrations.types import EntityType, SyncMode


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CredentialsUpdate(BaseModel):
    credentials: dict[str, Any] = Field(..., min_length=1)
    config: Optional[dict[str, Any]] = None


class SyncRequest(BaseModel):
    mode: SyncMode = SyncMode.INCREMENTAL
    entities: Optional[list[EntityType]] = None
    since: Optional[datetime] = None
    deadline_seconds: Optional[float] = Field(None, gt=0)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class ConnectorStatusResponse(BaseModel):
    provider: str
    workspace_id: str
    credential_status: str
    configured: bool
    credentials: dict[str, Any] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    cursors: dict[str, str] = Field(default_factory=dict)
    connection: Optional[dict[str, Any]] = None
    health: Optional[dict[str, Any]] = None


class AuthorizeResponse(BaseModel):
    provider: str
    authorization_url: str
