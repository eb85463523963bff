"""
SyncHub Shopify Connector.

OAuth2 connector over the Shopify Admin REST API:
- ``X-Shopify-Access-Token`` header instead of a bearer token
- ``since_id`` pagination (cursor = last record id), ``updated_at_min`` windows
- Webhooks signed with base64 HMAC-SHA256 in ``X-Shopify-Hmac-Sha256``
"""
from __future__ import annotations
from typing import Any, Mapping
import html
import json
import re

from core.integrations.adapter_base import BaseConnector
from core.integrations.entities import NormalizedEntity
from core.integrations.errors import AuthenticationError
from core.integrations.normalizer import to_currency, to_datetime, to_number
from core.integrations.persistence import UpsertOutcome
from core.integrations.types import EntityType, FetchOptions, FetchResult, WebhookEvent
from core.integrations.webhooks import verify_base64_hmac
from providers.shopify.definition import API_VERSION, SHOPIFY_DEFINITION

MAX_PAGE_SIZE = 250

_RESOURCES: dict[EntityType, str] = {
    EntityType.ORDER: "orders",
    EntityType.CUSTOMER: "customers",
    EntityType.PRODUCT: "products",
}

_TOPIC_ENTITIES: dict[str, EntityType] = {
    "orders": EntityType.ORDER,
    "customers": EntityType.CUSTOMER,
    "products": EntityType.PRODUCT,
}

_TOPIC_ACTIONS: dict[str, str] = {
    "orders/paid": "paid",
    "orders/fulfilled": "fulfilled",
    "orders/cancelled": "cancelled",
}

_TAG = re.compile(r"<[^>]+>")


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

def _optional_id(value: Any) -> str | None:
    return str(value) if value is not None else None


def _line_items(value: Any) -> list[dict[str, Any]]:
    items = []
    for item in value or []:
        items.append({
            "external_id": str(item["id"]),
            "product_id": _optional_id(item.get("product_id")),
            "variant_id": _optional_id(item.get("variant_id")),
            "name": item.get("title") or item.get("name"),
            "quantity": int(to_number(item.get("quantity"))),
            "price": to_currency(item.get("price")),
            "total_discount": to_currency(item.get("total_discount")),
        })
    return items


def _variants(value: Any) -> list[dict[str, Any]]:
    variants = []
    for variant in value or []:
        compare_at = variant.get("compare_at_price")
        variants.append({
            "external_id": str(variant["id"]),
            "sku": variant.get("sku") or None,
            "price": to_currency(variant.get("price")),
            "compare_at_price": to_currency(compare_at) if compare_at not in (None, "") else None,
            "inventory_quantity": variant.get("inventory_quantity"),
            "weight": variant.get("weight"),
            "weight_unit": variant.get("weight_unit"),
        })
    return variants


def _strip_html(value: Any) -> str | None:
    if value is None:
        return None
    text = html.unescape(_TAG.sub(" ", str(value)))
    return " ".join(text.split()) or None


def order_status(order: Mapping[str, Any]) -> str:
    """Collapse Shopify's financial and fulfillment states into one status."""
    if order.get("cancelled_at"):
        return "cancelled"
    financial = order.get("financial_status")
    if financial == "refunded":
        return "refunded"
    if financial == "paid" and order.get("fulfillment_status") == "fulfilled":
        return "fulfilled"
    if financial == "paid":
        return "paid"
    return "pending"


class ShopifyConnector(BaseConnector):
    definition = SHOPIFY_DEFINITION
    base_url = "https://{shop}.myshopify.com/admin/api/" + API_VERSION
    coercions = {
        "line_items": _line_items,
        "variants": _variants,
        "strip_html": _strip_html,
    }

    def auth_headers(self, credentials: dict[str, Any]) -> dict[str, str]:
        token = credentials.get("access_token")
        if not token:
            raise AuthenticationError(f"{self.connector_id}: missing access_token")
        return {"X-Shopify-Access-Token": str(token)}

    def normalize(
        self,
        entity_type: EntityType,
        record: Mapping[str, Any],
        **overrides: Any,
    ) -> NormalizedEntity:
        # Deletion payloads carry only the id, so there is no status to derive
        if entity_type == EntityType.ORDER and "financial_status" in record:
            overrides.setdefault("status", order_status(record))
        return super().normalize(entity_type, record, **overrides)

    async def _check_connection(self) -> dict[str, Any] | None:
        data = await self.get("/shop.json")
        shop = (data or {}).get("shop") or {}
        return {"shop": shop.get("name"), "domain": shop.get("myshopify_domain")}

    async def fetch(self, entity_type: EntityType, options: FetchOptions) -> FetchResult:
        resource = _RESOURCES.get(entity_type)
        if resource is None:
            return FetchResult(data=[])

        limit = min(max(options.limit, 1), MAX_PAGE_SIZE)
        params: dict[str, Any] = {"limit": limit}
        if options.cursor:
            params["since_id"] = options.cursor
        if options.since is not None:
            params["updated_at_min"] = options.since.isoformat()
        if entity_type == EntityType.ORDER:
            params["status"] = "any"

        data = await self.get(f"/{resource}.json", params) or {}
        items = list(data.get(resource) or [])
        next_cursor = str(items[-1]["id"]) if items else options.cursor
        return FetchResult(data=items, next_cursor=next_cursor, has_more=len(items) == limit)

    # --- Webhooks ---

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str], secret: str) -> bool:
        return verify_base64_hmac(raw_body, headers.get("x-shopify-hmac-sha256"), secret)

    def read_webhook_event(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            raise ValueError("Shopify webhook body must be a JSON object")
        event_id = headers.get("x-shopify-webhook-id") or headers.get("x-shopify-event-id")
        if not event_id:
            raise ValueError("Shopify webhook is missing X-Shopify-Webhook-Id")
        topic = headers.get("x-shopify-topic")
        if not topic:
            raise ValueError("Shopify webhook is missing X-Shopify-Topic")
        return WebhookEvent(
            id=event_id,
            type=topic,
            timestamp=to_datetime(headers.get("x-shopify-triggered-at") or payload.get("updated_at")),
            payload=payload,
            headers=dict(headers),
            raw_body=raw_body,
            object_id=_optional_id(payload.get("id")),
        )

    def parse_webhook(self, event: WebhookEvent) -> NormalizedEntity | None:
        if event.type not in SHOPIFY_DEFINITION.webhooks.events:
            return None
        resource, _, action = event.type.partition("/")
        entity_type = _TOPIC_ENTITIES.get(resource)
        if entity_type is None:
            return None
        if action == "delete":
            return self.normalize(entity_type, event.payload, deleted=True)
        return self.normalize(entity_type, event.payload)

    def webhook_action(self, event: WebhookEvent, outcome: UpsertOutcome) -> str:
        return _TOPIC_ACTIONS.get(event.type, outcome.value)
