"""
SyncHub Sync Orchestrator — Full and Incremental Syncs.

Drives a connector through cursor-paginated pulls:
- Full sync: walk every page from an empty cursor, overwrite records
- Incremental sync: resume from the stored cursor, persist it after each page
- 401 handling: one forced credential refresh, one retry of the same page
- Per-record transform errors are collected, the page carries on
- Persistence failures stop the run without advancing the cursor
- Cooperative cancellation and deadlines checked between pages
- sync_all: every enabled entity type concurrently, failures isolated

Entry points never raise for connector or data problems; everything is
reported through SyncResult.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
import asyncio
import logging
import time

from core.integrations.adapter_base import BaseConnector
from core.integrations.auth_manager import AuthManager
from core.integrations.errors import (
    ConnectorError,
    CredentialsInvalidError,
    ProviderHTTPError,
    TransformError,
)
from core.integrations.persistence import Persistence, UpsertOutcome
from core.integrations.state_store import ConnectorStateStore
from core.integrations.types import (
    ConnectorState,
    EntityType,
    FetchOptions,
    FetchResult,
    SyncError,
    SyncMode,
    SyncResult,
    SyncSummary,
)
from core.observability.otel_setup import set_span_attributes, start_span

logger = logging.getLogger(__name__)

# First attempt plus one retry after a forced refresh
_AUTH_ATTEMPTS = 2


@dataclass
class _RunStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    pages: int = 0
    errors: list[SyncError] = field(default_factory=list)
    aborted: bool = False

    def fail(self, error: SyncError) -> None:
        self.errors.append(error)
        self.aborted = True


def _error_from(exc: ConnectorError, record_id: str | None = None) -> SyncError:
    return SyncError(
        message=exc.message,
        retryable=exc.retryable,
        record_id=record_id,
        code=exc.code,
    )


def _track_cursor(state: ConnectorState, entity_type: EntityType, cursor: str | None) -> None:
    if cursor is None:
        state.last_sync_cursors.pop(entity_type.value, None)
    else:
        state.last_sync_cursors[entity_type.value] = cursor


class SyncOrchestrator:
    """Runs syncs for connector instances and reports SyncResults."""

    def __init__(
        self,
        store: ConnectorStateStore,
        persistence: Persistence,
        auth: AuthManager,
        tracer=None,
        page_limit: int = 100,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.persistence = persistence
        self.auth = auth
        self.tracer = tracer
        self.page_limit = page_limit
        self.deadline_seconds = deadline_seconds
        self.clock = clock

    # --- Public API ---

    async def full_sync(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        *,
        cancel: Optional[asyncio.Event] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SyncResult:
        return await self._run(connector, entity_type, SyncMode.FULL, None, cancel, deadline_seconds)

    async def incremental_sync(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        since: Optional[datetime] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SyncResult:
        return await self._run(connector, entity_type, SyncMode.INCREMENTAL, since, cancel, deadline_seconds)

    async def sync_all(
        self,
        connector: BaseConnector,
        mode: SyncMode = SyncMode.INCREMENTAL,
        since: Optional[datetime] = None,
        *,
        entities: Optional[list[EntityType]] = None,
        cancel: Optional[asyncio.Event] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SyncSummary:
        """Sync every enabled entity type concurrently."""
        targets = entities or connector.definition.enabled_entities()
        results = await asyncio.gather(*[
            self._run(
                connector,
                entity_type,
                mode,
                since if mode == SyncMode.INCREMENTAL else None,
                cancel,
                deadline_seconds,
            )
            for entity_type in targets
        ])
        return SyncSummary(connector_id=connector.connector_id, mode=mode, results=tuple(results))

    # --- Run loop ---

    async def _run(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        mode: SyncMode,
        since: Optional[datetime],
        cancel: Optional[asyncio.Event],
        deadline_seconds: Optional[float],
    ) -> SyncResult:
        started = self.clock()
        stats = _RunStats()
        state = connector.state
        entity = connector.definition.entity(entity_type)
        cursor: Optional[str] = None

        if entity is None or not entity.enabled:
            stats.fail(SyncError(
                f"{connector.connector_id} does not sync {entity_type.value}", code="config"
            ))
            return self._result(connector, entity_type, mode, stats, None, started)

        if mode == SyncMode.INCREMENTAL and not entity.supports_incremental:
            logger.info(
                "%s/%s has no incremental support, running full sync",
                connector.connector_id, entity_type.value,
            )
            mode = SyncMode.FULL
            since = None

        if self.auth.is_invalid(state):
            stats.fail(SyncError(
                f"Credentials for {connector.connector_id} need re-authorization",
                retryable=False,
                code="auth",
            ))
            return self._result(connector, entity_type, mode, stats, None, started)

        deadline = deadline_seconds if deadline_seconds is not None else self.deadline_seconds
        deadline_at = started + deadline if deadline is not None else None
        attributes = {
            "sync.connector": connector.connector_id,
            "sync.workspace": state.workspace_id,
            "sync.entity": entity_type.value,
            "sync.mode": mode.value,
        }

        async with self.store.entity_lock(state.key, entity_type):
            with start_span(self.tracer, f"sync.{connector.connector_id}.{entity_type.value}", attributes) as span:
                if mode == SyncMode.INCREMENTAL:
                    # A queued run must start where the previous one stopped
                    try:
                        stored = await self.store.load(*state.key)
                    except Exception as e:
                        logger.exception("Loading cursor for %s/%s failed", connector.connector_id, entity_type.value)
                        stats.fail(SyncError(f"Cursor load failed: {e}", retryable=True, code="persistence"))
                    else:
                        cursor = stored.cursor_for(entity_type)
                        _track_cursor(state, entity_type, cursor)
                if not stats.aborted:
                    logger.info(
                        "Starting %s sync of %s/%s for workspace %s (cursor=%s)",
                        mode.value, connector.connector_id, entity_type.value, state.workspace_id, cursor,
                    )
                    cursor = await self._page_loop(
                        connector, entity_type, mode, since, cursor, stats, cancel, deadline_at
                    )
                set_span_attributes(
                    span,
                    **{
                        "sync.records_processed": stats.processed,
                        "sync.pages": stats.pages,
                        "sync.errors": len(stats.errors),
                        "sync.success": not stats.aborted,
                    },
                )

        result = self._result(
            connector,
            entity_type,
            mode,
            stats,
            cursor if mode == SyncMode.INCREMENTAL else None,
            started,
        )
        log = logger.warning if stats.aborted else logger.info
        log(
            "Finished %s sync of %s/%s: processed=%d created=%d updated=%d deleted=%d errors=%d",
            mode.value, connector.connector_id, entity_type.value,
            result.records_processed, result.records_created, result.records_updated,
            result.records_deleted, len(result.errors),
        )
        return result

    async def _page_loop(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        mode: SyncMode,
        since: Optional[datetime],
        cursor: Optional[str],
        stats: _RunStats,
        cancel: Optional[asyncio.Event],
        deadline_at: Optional[float],
    ) -> Optional[str]:
        """Fetch and persist pages until done. Returns the last committed cursor."""
        state = connector.state
        while True:
            if (cancel is not None and cancel.is_set()) or (
                deadline_at is not None and self.clock() >= deadline_at
            ):
                stats.fail(SyncError("Sync cancelled", retryable=True, code="cancelled"))
                return cursor

            options = FetchOptions(cursor=cursor, limit=self.page_limit, since=since)
            try:
                page = await self._fetch_page(connector, entity_type, options)
            except ConnectorError as e:
                stats.fail(_error_from(e))
                return cursor
            except Exception as e:
                logger.exception("Fetch of %s/%s crashed", connector.connector_id, entity_type.value)
                stats.fail(SyncError(f"Unexpected fetch error: {e}", retryable=True, code="internal"))
                return cursor

            stats.pages += 1
            if page.data:
                stats.processed += len(page.data)
                if not await self._persist_page(connector, entity_type, mode, page, stats):
                    return cursor

            next_cursor = page.next_cursor
            if mode == SyncMode.INCREMENTAL and next_cursor is not None and next_cursor != cursor:
                try:
                    await self.store.save_cursor(state, entity_type, next_cursor)
                except Exception as e:
                    logger.exception("Saving cursor for %s/%s failed", connector.connector_id, entity_type.value)
                    stats.fail(SyncError(f"Cursor save failed: {e}", retryable=True, code="persistence"))
                    return cursor
            if next_cursor is not None:
                cursor = next_cursor

            if not page.data or not page.has_more:
                return cursor
            if next_cursor is None:
                logger.warning(
                    "%s/%s reported has_more without a cursor; stopping",
                    connector.connector_id, entity_type.value,
                )
                return cursor

    async def _fetch_page(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        options: FetchOptions,
    ) -> FetchResult:
        """Fetch one page, refreshing credentials once on HTTP 401."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await connector.fetch(entity_type, options)
            except ProviderHTTPError as e:
                if not e.is_unauthorized:
                    raise
                if attempt >= _AUTH_ATTEMPTS:
                    await self.auth.mark_invalid(connector.state, "provider rejected refreshed credentials")
                    raise CredentialsInvalidError(
                        f"{connector.connector_id} rejected credentials after refresh"
                    ) from e
                logger.info(
                    "%s returned 401 for %s, refreshing credentials",
                    connector.connector_id, entity_type.value,
                )
                await self.auth.refresh(
                    connector.definition,
                    connector.state,
                    force=True,
                    stale_token=connector.last_access_token,
                )

    async def _persist_page(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        mode: SyncMode,
        page: FetchResult,
        stats: _RunStats,
    ) -> bool:
        """Normalize and upsert one page in provider order. False aborts the run."""
        state = connector.state
        for record in page.data:
            record_id = connector.record_id(entity_type, record)
            try:
                entity = connector.normalize(entity_type, record)
            except TransformError as e:
                stats.errors.append(_error_from(e, record_id=e.record_id or record_id))
                continue
            except ConnectorError as e:
                stats.fail(_error_from(e, record_id=record_id))
                return False

            try:
                outcome = await self.persistence.upsert(state.workspace_id, connector.connector_id, entity)
            except Exception as e:
                logger.exception(
                    "Upsert of %s %s failed for %s", entity_type.value, entity.external_id, connector.connector_id
                )
                stats.fail(SyncError(
                    f"Persistence failed: {e}", retryable=True, record_id=entity.external_id, code="persistence"
                ))
                return False

            if mode == SyncMode.FULL:
                if entity.deleted:
                    stats.deleted += 1
                else:
                    stats.created += 1
            elif outcome == UpsertOutcome.CREATED:
                stats.created += 1
            elif outcome == UpsertOutcome.UPDATED:
                stats.updated += 1
            else:
                stats.deleted += 1
        return True

    def _result(
        self,
        connector: BaseConnector,
        entity_type: EntityType,
        mode: SyncMode,
        stats: _RunStats,
        cursor: Optional[str],
        started: float,
    ) -> SyncResult:
        return SyncResult(
            connector_id=connector.connector_id,
            entity_type=entity_type,
            mode=mode,
            success=not stats.aborted,
            records_processed=stats.processed,
            records_created=stats.created,
            records_updated=stats.updated,
            records_deleted=stats.deleted,
            errors=tuple(stats.errors),
            pages_fetched=stats.pages,
            duration_ms=int((self.clock() - started) * 1000),
            cursor=cursor,
        )
