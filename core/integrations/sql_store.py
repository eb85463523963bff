"""SQL-backed persistence.

Repositories wrap one AsyncSession each; SqlPersistence opens a session
per operation and commits or rolls back around it.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import session_scope
from core.integrations.entities import NormalizedEntity
from core.integrations.persistence import Persistence, UpsertOutcome, merge_reported, outcome_for
from core.integrations.types import ConnectorState, EntityType
from core.models.sync_models import ConnectorStateRecord, NormalizedRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class NormalizedRecordRepository:
    """Workspace-scoped access to normalized_records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self,
        workspace_id: str,
        connector_id: str,
        entity_type: str,
        external_id: str,
    ) -> NormalizedRecord | None:
        stmt = select(NormalizedRecord).where(
            NormalizedRecord.workspace_id == workspace_id,
            NormalizedRecord.connector_id == connector_id,
            NormalizedRecord.entity_type == entity_type,
            NormalizedRecord.external_id == external_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(
        self,
        workspace_id: str,
        connector_id: str,
        entity_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        stmt = (
            select(NormalizedRecord)
            .where(
                NormalizedRecord.workspace_id == workspace_id,
                NormalizedRecord.connector_id == connector_id,
                NormalizedRecord.entity_type == entity_type,
            )
            .order_by(NormalizedRecord.external_id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [row.to_dict() for row in result.scalars().all()]

    async def upsert(
        self,
        workspace_id: str,
        connector_id: str,
        entity: NormalizedEntity,
    ) -> UpsertOutcome:
        entity_type = entity.entity_type.value
        row = await self.get(workspace_id, connector_id, entity_type, entity.external_id)
        merged = merge_reported(row.data if row else None, entity)
        if row is None:
            self.session.add(NormalizedRecord(
                workspace_id=workspace_id,
                connector_id=connector_id,
                entity_type=entity_type,
                external_id=entity.external_id,
                data=merged,
                deleted=bool(merged.get("deleted", False)),
            ))
        else:
            # Reassign so the JSON column is flagged dirty
            row.data = merged
            row.deleted = bool(merged.get("deleted", False))
        await self.session.flush()
        return outcome_for(row is not None, entity)


class ConnectorStateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, workspace_id: str, connector_id: str) -> ConnectorStateRecord | None:
        stmt = select(ConnectorStateRecord).where(
            ConnectorStateRecord.workspace_id == workspace_id,
            ConnectorStateRecord.connector_id == connector_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def save(self, state: ConnectorState) -> None:
        row = await self.get(state.workspace_id, state.connector_id)
        if row is None:
            row = ConnectorStateRecord(workspace_id=state.workspace_id, connector_id=state.connector_id)
            self.session.add(row)
        row.credentials = dict(state.credentials)
        row.config = dict(state.config)
        row.last_sync_cursors = dict(state.last_sync_cursors)
        await self.session.flush()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class SqlPersistence(Persistence):
    """Persistence over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def upsert(
        self,
        workspace_id: str,
        connector_id: str,
        entity: NormalizedEntity,
    ) -> UpsertOutcome:
        try:
            async with session_scope(self.session_factory) as session:
                return await NormalizedRecordRepository(session).upsert(workspace_id, connector_id, entity)
        except IntegrityError:
            # A concurrent writer inserted the same identity first; merge into it
            logger.debug("Upsert race on %s %s, retrying as update", entity.entity_type.value, entity.external_id)
            async with session_scope(self.session_factory) as session:
                return await NormalizedRecordRepository(session).upsert(workspace_id, connector_id, entity)

    async def get_connector_state(
        self, workspace_id: str, connector_id: str
    ) -> ConnectorState | None:
        async with session_scope(self.session_factory) as session:
            row = await ConnectorStateRepository(session).get(workspace_id, connector_id)
            return row.to_state() if row else None

    async def save_connector_state(self, state: ConnectorState) -> None:
        async with session_scope(self.session_factory) as session:
            await ConnectorStateRepository(session).save(state)

    async def list_records(
        self,
        workspace_id: str,
        connector_id: str,
        entity_type: EntityType,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            return await NormalizedRecordRepository(session).list(
                workspace_id, connector_id, entity_type.value, limit
            )
