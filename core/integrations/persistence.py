"""
SyncHub Persistence Interface — Upserts and Connector State.

The sync framework only talks to storage through this interface:
- upsert(): idempotent merge of a normalized entity keyed by
  (workspace, connector, entity type, external id)
- get_connector_state() / save_connector_state(): credentials, config, cursors

InMemoryPersistence backs tests and single-process runs; SqlPersistence
(core.integrations.sql_store) backs production.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any
import asyncio
import copy

from core.integrations.entities import ENTITY_MODELS, NormalizedEntity
from core.integrations.types import ConnectorState, EntityType


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


RecordKey = tuple[str, str, str, str]


def merge_reported(existing: dict[str, Any] | None, entity: NormalizedEntity) -> dict[str, Any]:
    """Overlay the entity's reported fields on a stored record."""
    merged = dict(existing or {})
    reported = entity.reported_fields()
    if "metadata" in reported and isinstance(merged.get("metadata"), dict):
        reported["metadata"] = {**merged["metadata"], **reported["metadata"]}
    merged.update(reported)
    return merged


def outcome_for(existed: bool, entity: NormalizedEntity) -> UpsertOutcome:
    if entity.deleted:
        return UpsertOutcome.DELETED
    return UpsertOutcome.UPDATED if existed else UpsertOutcome.CREATED


class Persistence(ABC):
    """Narrow storage boundary used by the orchestrator and webhook gateway."""

    @abstractmethod
    async def upsert(
        self,
        workspace_id: str,
        connector_id: str,
        entity: NormalizedEntity,
    ) -> UpsertOutcome:
        """Insert or merge one entity. Re-applying the same entity is a no-op."""

    @abstractmethod
    async def get_connector_state(
        self, workspace_id: str, connector_id: str
    ) -> ConnectorState | None:
        ...

    @abstractmethod
    async def save_connector_state(self, state: ConnectorState) -> None:
        ...


class InMemoryPersistence(Persistence):
    """Dict-backed persistence. Stored values are deep copies."""

    def __init__(self):
        self._records: dict[RecordKey, dict[str, Any]] = {}
        self._states: dict[tuple[str, str], ConnectorState] = {}
        self._lock = asyncio.Lock()
        self.upsert_calls = 0
        self.state_saves = 0

    async def upsert(
        self,
        workspace_id: str,
        connector_id: str,
        entity: NormalizedEntity,
    ) -> UpsertOutcome:
        key = (workspace_id, connector_id, entity.entity_type.value, entity.external_id)
        async with self._lock:
            self.upsert_calls += 1
            existing = self._records.get(key)
            self._records[key] = merge_reported(existing, entity)
            return outcome_for(existing is not None, entity)

    async def get_connector_state(
        self, workspace_id: str, connector_id: str
    ) -> ConnectorState | None:
        state = self._states.get((workspace_id, connector_id))
        return state.copy() if state else None

    async def save_connector_state(self, state: ConnectorState) -> None:
        self.state_saves += 1
        self._states[state.key] = state.copy()

    # --- Inspection helpers ---

    def get_record(
        self,
        workspace_id: str,
        connector_id: str,
        entity_type: EntityType,
        external_id: str,
    ) -> dict[str, Any] | None:
        record = self._records.get((workspace_id, connector_id, entity_type.value, external_id))
        return copy.deepcopy(record) if record is not None else None

    def get_entity(
        self,
        workspace_id: str,
        connector_id: str,
        entity_type: EntityType,
        external_id: str,
    ) -> NormalizedEntity | None:
        record = self.get_record(workspace_id, connector_id, entity_type, external_id)
        if record is None:
            return None
        return ENTITY_MODELS[entity_type].model_validate(record)

    def count(
        self,
        workspace_id: str | None = None,
        connector_id: str | None = None,
        entity_type: EntityType | None = None,
    ) -> int:
        return sum(
            1
            for (ws, conn, kind, _) in self._records
            if (workspace_id is None or ws == workspace_id)
            and (connector_id is None or conn == connector_id)
            and (entity_type is None or kind == entity_type.value)
        )
