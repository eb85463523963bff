"""Serialized access to ConnectorState.

Credentials (written by the auth manager) and cursors (written by the sync
orchestrator) live in the same record. Every write reloads the persisted
state under a per-(workspace, connector) lock and changes only its own
part, so a token refresh can never clobber a cursor or the reverse.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from core.integrations.persistence import Persistence
from core.integrations.types import ConnectorState, EntityType

logger = logging.getLogger(__name__)


class ConnectorStateStore:
    def __init__(self, persistence: Persistence):
        self.persistence = persistence
        self._state_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._entity_locks: dict[tuple[str, str, str], asyncio.Lock] = {}

    def _state_lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._state_locks.get(key)
        if lock is None:
            lock = self._state_locks[key] = asyncio.Lock()
        return lock

    def entity_lock(self, key: tuple[str, str], entity_type: EntityType) -> asyncio.Lock:
        """Lock serializing whole sync runs of one entity type."""
        full_key = (*key, entity_type.value)
        lock = self._entity_locks.get(full_key)
        if lock is None:
            lock = self._entity_locks[full_key] = asyncio.Lock()
        return lock

    async def load(self, workspace_id: str, connector_id: str) -> ConnectorState:
        state = await self.persistence.get_connector_state(workspace_id, connector_id)
        if state is None:
            state = ConnectorState(workspace_id=workspace_id, connector_id=connector_id)
        return state

    async def _current(self, state: ConnectorState) -> ConnectorState:
        stored = await self.persistence.get_connector_state(*state.key)
        return stored if stored is not None else state.copy()

    async def save(self, state: ConnectorState) -> None:
        """Replace the stored state wholesale (initial credential setup)."""
        async with self._state_lock(state.key):
            await self.persistence.save_connector_state(state)

    async def save_cursor(
        self,
        state: ConnectorState,
        entity_type: EntityType,
        cursor: str | None,
    ) -> None:
        async with self._state_lock(state.key):
            current = await self._current(state)
            if cursor is None:
                current.last_sync_cursors.pop(entity_type.value, None)
            else:
                current.last_sync_cursors[entity_type.value] = cursor
            await self.persistence.save_connector_state(current)
        if cursor is None:
            state.last_sync_cursors.pop(entity_type.value, None)
        else:
            state.last_sync_cursors[entity_type.value] = cursor
        logger.debug(
            "Saved cursor for %s/%s %s", state.workspace_id, state.connector_id, entity_type.value
        )

    async def save_credentials(self, state: ConnectorState, credentials: dict[str, Any]) -> None:
        async with self._state_lock(state.key):
            current = await self._current(state)
            current.credentials = dict(credentials)
            await self.persistence.save_connector_state(current)
        state.credentials = dict(credentials)
