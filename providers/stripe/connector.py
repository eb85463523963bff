"""
SyncHub Stripe Connector.

API-key connector over the Stripe REST API:
- Lists come newest first; ``starting_after`` walks toward older objects
- Incremental runs filter on ``created[gte]`` from the watermark of the
  last finished walk, so new objects are picked up on the next run
- Webhooks signed with ``Stripe-Signature: t=<ts>,v1=<hex>``
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Mapping
import json

from core.integrations.adapter_base import BaseConnector
from core.integrations.entities import NormalizedEntity
from core.integrations.errors import TransformError
from core.integrations.normalizer import to_datetime
from core.integrations.persistence import UpsertOutcome
from core.integrations.types import EntityType, FetchOptions, FetchResult, WebhookEvent
from core.integrations.webhooks import verify_timestamped_signature
from providers.stripe.definition import STRIPE_DEFINITION

MAX_PAGE_SIZE = 100

_LIST_PATHS: dict[EntityType, str] = {
    EntityType.CUSTOMER: "/customers",
    EntityType.PRODUCT: "/products",
    EntityType.SUBSCRIPTION: "/subscriptions",
    EntityType.INVOICE: "/invoices",
}

# Longest prefix first: "customer.subscription." must win over "customer."
_EVENT_ENTITIES: tuple[tuple[str, EntityType], ...] = (
    ("customer.subscription.", EntityType.SUBSCRIPTION),
    ("customer.", EntityType.CUSTOMER),
    ("product.", EntityType.PRODUCT),
    ("invoice.", EntityType.INVOICE),
)

_EVENT_ACTIONS: dict[str, str] = {
    "customer.subscription.deleted": "canceled",
    "invoice.paid": "paid",
    "invoice.voided": "voided",
    "invoice.payment_failed": "payment_failed",
    "invoice.finalized": "finalized",
}

_SUBSCRIPTION_STATUS: dict[str, str] = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "incomplete_expired": "canceled",
    "canceled": "canceled",
    "paused": "paused",
}


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

def _first_name(value: Any) -> str | None:
    if not value:
        return None
    parts = str(value).split(None, 1)
    return parts[0] if parts else None


def _last_name(value: Any) -> str | None:
    if not value:
        return None
    parts = str(value).split(None, 1)
    return parts[1] if len(parts) > 1 else None


def _upper_currency(value: Any) -> str | None:
    return str(value).upper() if value else None


def _product_status(value: Any) -> str:
    return "active" if value is True else "archived"


def _subscription_status(value: Any) -> str:
    return _SUBSCRIPTION_STATUS.get(str(value), "active")


def _latest(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass(frozen=True)
class StripeCursor:
    """Sync position for a newest-first Stripe list.

    ``created`` is the watermark of the last finished walk. While a walk is
    in progress ``after`` holds the last object id seen and ``high`` the
    newest ``created`` value seen so far.
    """

    created: int | None = None
    high: int | None = None
    after: str | None = None

    def encode(self) -> str | None:
        fields = {
            key: value
            for key, value in (("created", self.created), ("high", self.high), ("after", self.after))
            if value is not None
        }
        return json.dumps(fields, separators=(",", ":"), sort_keys=True) if fields else None

    @classmethod
    def decode(cls, value: str | None) -> "StripeCursor":
        if not value:
            return cls()
        try:
            data = json.loads(value)
        except ValueError:
            # Bare object id
            return cls(after=value)
        if not isinstance(data, dict):
            return cls(after=value)
        return cls(created=data.get("created"), high=data.get("high"), after=data.get("after"))


class StripeConnector(BaseConnector):
    definition = STRIPE_DEFINITION
    base_url = "https://api.stripe.com/v1"
    coercions = {
        "first_name": _first_name,
        "last_name": _last_name,
        "upper_currency": _upper_currency,
        "product_status": _product_status,
        "subscription_status": _subscription_status,
    }

    async def _check_connection(self) -> dict[str, Any] | None:
        data = await self.get("/balance")
        return {"livemode": bool((data or {}).get("livemode"))}

    async def fetch(self, entity_type: EntityType, options: FetchOptions) -> FetchResult:
        path = _LIST_PATHS.get(entity_type)
        if path is None:
            return FetchResult(data=[])

        cursor = StripeCursor.decode(options.cursor)
        params: dict[str, Any] = {"limit": min(max(options.limit, 1), MAX_PAGE_SIZE)}
        if cursor.after:
            params["starting_after"] = cursor.after
        window = cursor.created
        if options.since is not None:
            window = _latest(window, int(options.since.timestamp()))
        if window is not None:
            params["created[gte]"] = window
        if entity_type == EntityType.SUBSCRIPTION:
            params["status"] = "all"

        data = await self.get(path, params) or {}
        items = list(data.get("data") or [])
        has_more = bool(data.get("has_more")) and bool(items)
        newest = cursor.high
        for item in items:
            if isinstance(item.get("created"), (int, float)):
                newest = _latest(newest, int(item["created"]))

        # Lists are newest first: the watermark only moves once the walk ends
        if has_more:
            next_cursor = StripeCursor(created=cursor.created, high=newest, after=str(items[-1]["id"]))
        else:
            next_cursor = StripeCursor(created=_latest(cursor.created, newest))
        return FetchResult(data=items, next_cursor=next_cursor.encode(), has_more=has_more)

    # --- Webhooks ---

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        return verify_timestamped_signature(
            raw_body,
            headers.get("stripe-signature"),
            secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )

    def read_webhook_event(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = json.loads(raw_body)
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise ValueError("Stripe event needs 'id' and 'type'")
        data = payload.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValueError("Stripe event 'data' must be an object")
        obj = (data or {}).get("object") or {}
        object_id = obj.get("id") if isinstance(obj, dict) else None
        return WebhookEvent(
            id=str(payload["id"]),
            type=str(payload["type"]),
            timestamp=to_datetime(payload.get("created")),
            payload=payload,
            headers=dict(headers),
            raw_body=raw_body,
            object_id=str(object_id) if object_id is not None else None,
        )

    def parse_webhook(self, event: WebhookEvent) -> NormalizedEntity | None:
        entity_type = _entity_for_event(event.type)
        if entity_type is None:
            return None
        obj = (event.payload.get("data") or {}).get("object")
        if not isinstance(obj, dict):
            raise TransformError(f"Stripe event {event.id} has no data.object", record_id=event.object_id)
        if event.type.endswith(".deleted"):
            return self.normalize(entity_type, obj, deleted=True)
        return self.normalize(entity_type, obj)

    def webhook_action(self, event: WebhookEvent, outcome: UpsertOutcome) -> str:
        if event.type in _EVENT_ACTIONS:
            return _EVENT_ACTIONS[event.type]
        return outcome.value


def _entity_for_event(event_type: str) -> EntityType | None:
    if event_type not in STRIPE_DEFINITION.webhooks.events:
        return None
    for prefix, entity_type in _EVENT_ENTITIES:
        if event_type.startswith(prefix):
            return entity_type
    return None
