"""SQLAlchemy models for synced records and connector state."""

from typing import Any

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from core.integrations.types import ConnectorState
from core.models.base import Base, JsonDict, WorkspaceScoped


class NormalizedRecord(Base, WorkspaceScoped):
    """One normalized entity, merged across fetches and webhook events."""

    __tablename__ = "normalized_records"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "connector_id", "entity_type", "external_id",
            name="uq_normalized_records_identity",
        ),
    )

    connector_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JsonDict, nullable=False, default=dict)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "workspace_id": self.workspace_id,
            "connector_id": self.connector_id,
            "entity_type": self.entity_type,
            "external_id": self.external_id,
            "data": dict(self.data or {}),
            "deleted": self.deleted,
        }


class ConnectorStateRecord(Base, WorkspaceScoped):
    """Credentials, config and cursors for one (workspace, connector) pair."""

    __tablename__ = "connector_states"
    __table_args__ = (
        UniqueConstraint("workspace_id", "connector_id", name="uq_connector_states_identity"),
    )

    connector_id: Mapped[str] = mapped_column(String(64), nullable=False)
    credentials: Mapped[dict[str, Any]] = mapped_column(JsonDict, nullable=False, default=dict)
    config: Mapped[dict[str, Any]] = mapped_column(JsonDict, nullable=False, default=dict)
    last_sync_cursors: Mapped[dict[str, str]] = mapped_column(JsonDict, nullable=False, default=dict)

    def to_state(self) -> ConnectorState:
        return ConnectorState(
            workspace_id=self.workspace_id,
            connector_id=self.connector_id,
            credentials=dict(self.credentials or {}),
            config=dict(self.config or {}),
            last_sync_cursors=dict(self.last_sync_cursors or {}),
        )
