"""
SyncHub Idempotency Store — Webhook Event Dedupe.

Providers redeliver webhooks; an event must be applied at most once.
- Keys digest (provider, workspace, event id), so ids only need to be
  unique per provider
- reserve() claims a key before any side effect
- A failed attempt releases its key so the provider's retry can succeed
- Entries expire after a retention window and the ledger is bounded
"""
from __future__ import annotations
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
import hashlib
import logging

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def webhook_event_key(provider: str, workspace_id: str, event_id: str) -> str:
    """Stable dedupe key for one provider event in one workspace."""
    raw = "\x1f".join(("webhook", provider, workspace_id, event_id))
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


class ReservationState(str, Enum):
    PROCESSING = "processing"
    APPLIED = "applied"


@dataclass
class IdempotencyRecord:
    key: str
    scope: str
    reserved_at: datetime
    expires_at: datetime
    state: ReservationState = ReservationState.PROCESSING
    outcome: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "scope": self.scope,
            "state": self.state.value,
            "outcome": self.outcome,
            "reserved_at": self.reserved_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class IdempotencyStore:
    """In-process event ledger. Multi-process deployments need a shared store."""

    def __init__(
        self,
        default_ttl_seconds: int = 7 * 24 * 3600,
        max_entries: int = 100_000,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._entries: OrderedDict[str, IdempotencyRecord] = OrderedDict()
        self.ttl = timedelta(seconds=default_ttl_seconds)
        self.max_entries = max_entries
        self.clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        record = self._entries.get(key)
        if record is not None and self.clock() >= record.expires_at:
            del self._entries[key]
            return None
        return record

    def reserve(self, key: str, scope: str = "") -> bool:
        """Claim ``key``. False when it is already processing or applied."""
        if self.get(key) is not None:
            return False
        now = self.clock()
        self._entries[key] = IdempotencyRecord(key=key, scope=scope, reserved_at=now, expires_at=now + self.ttl)
        # Oldest reservations go first once the ledger is full
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted idempotency key %s", evicted)
        return True

    def complete(self, key: str, outcome: Any = None) -> None:
        record = self._entries.get(key)
        if record is not None:
            record.state = ReservationState.APPLIED
            record.outcome = outcome

    def release(self, key: str) -> None:
        """Forget a reservation after a failed attempt."""
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, record in self._entries.items() if now >= record.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)
