"""SyncHub resilience primitives: at-most-once webhook processing."""
from core.resilience.idempotency import (
    IdempotencyRecord,
    IdempotencyStore,
    ReservationState,
    webhook_event_key,
)

__all__ = [
    "IdempotencyRecord",
    "IdempotencyStore",
    "ReservationState",
    "webhook_event_key",
]
