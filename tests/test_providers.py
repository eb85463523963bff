"""Test the Stripe and Shopify connectors against mocked provider APIs."""
import json
from datetime import datetime, timezone

import httpx
import pytest

from core.integrations.auth_manager import AuthManager
from core.integrations.entities import NormalizedOrder, NormalizedProduct, NormalizedSubscription
from core.integrations.errors import AuthenticationError, ConfigurationError, ProviderHTTPError, TransformError
from core.integrations.persistence import InMemoryPersistence, UpsertOutcome
from core.integrations.state_store import ConnectorStateStore
from core.integrations.sync import SyncOrchestrator
from core.integrations.types import ConnectorState, EntityType, FetchOptions
from core.integrations.webhooks import compute_base64_hmac, compute_signature
from providers import build_default_registry
from providers.shopify import ShopifyConnector
from providers.shopify.connector import order_status
from providers.stripe import StripeConnector
from providers.stripe.connector import StripeCursor


async def _connector(cls, connector_id, credentials, config=None, handler=None):
    persistence = InMemoryPersistence()
    store = ConnectorStateStore(persistence)
    auth = AuthManager(store)
    state = ConnectorState(
        workspace_id="ws-1",
        connector_id=connector_id,
        credentials=credentials,
        config=config or {},
    )
    await store.save(state)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler)) if handler else None
    connector = cls(await store.load("ws-1", connector_id), auth, client=client)
    return connector, persistence, store, auth


def _offline(cls, connector_id):
    store = ConnectorStateStore(InMemoryPersistence())
    return cls(ConnectorState(workspace_id="ws-1", connector_id=connector_id), AuthManager(store))


def _stripe(handler=None):
    return _connector(StripeConnector, "stripe", {"api_key": "sk_test_123"}, handler=handler)


def _shopify(handler=None):
    return _connector(
        ShopifyConnector, "shopify", {"access_token": "shpat_1"}, config={"shop": "acme"}, handler=handler
    )


SUBSCRIPTION = {
    "id": "sub_1",
    "customer": "cus_1",
    "status": "unpaid",
    "currency": "usd",
    "items": {"data": [{"price": {
        "id": "price_1",
        "unit_amount": 1500,
        "recurring": {"interval": "month", "interval_count": 1},
    }}]},
    "current_period_start": 1700000000,
    "current_period_end": 1702592000,
    "canceled_at": None,
    "created": 1700000000,
    "metadata": {"plan": "pro"},
}

ORDER = {
    "id": 1001,
    "order_number": 1001,
    "customer": {"id": 77},
    "financial_status": "paid",
    "fulfillment_status": "fulfilled",
    "currency": "USD",
    "total_price": "29.99",
    "subtotal_price": "27.00",
    "total_tax": "2.99",
    "total_discounts": "0.00",
    "tags": "vip, wholesale",
    "cancelled_at": None,
    "created_at": "2024-01-05T10:00:00-05:00",
    "updated_at": "2024-01-06T10:00:00Z",
    "line_items": [
        {"id": 5, "product_id": 9, "variant_id": None, "title": "Mug", "quantity": 2, "price": "13.50"},
    ],
}


def test_default_registry_holds_builtin_connectors():
    registry = build_default_registry()
    assert registry.list_providers() == ["shopify", "stripe"]
    assert registry.frozen


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stripe_fetch_sends_cursor_and_window():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "cus_1"}, {"id": "cus_2"}], "has_more": True})

    connector, *_ = await _stripe(handler)
    since = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    page = await connector.fetch(EntityType.CUSTOMER, FetchOptions(cursor="cus_0", limit=500, since=since))

    request = seen[0]
    assert request.url.host == "api.stripe.com"
    assert request.url.path == "/v1/customers"
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert request.url.params["limit"] == "100"
    assert request.url.params["starting_after"] == "cus_0"
    assert request.url.params["created[gte]"] == "1700000000"
    assert StripeCursor.decode(page.next_cursor) == StripeCursor(after="cus_2")
    assert page.has_more is True


@pytest.mark.asyncio
async def test_stripe_walk_end_moves_watermark_forward():
    """Finishing a walk turns the newest created value seen into the watermark."""
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["status"] == "all"
        assert request.url.params["starting_after"] == "sub_9"
        assert request.url.params["created[gte]"] == "1700000000"
        return httpx.Response(200, json={"data": [], "has_more": True})

    connector, *_ = await _stripe(handler)
    cursor = StripeCursor(created=1700000000, high=1700000500, after="sub_9").encode()
    page = await connector.fetch(EntityType.SUBSCRIPTION, FetchOptions(cursor=cursor))
    assert page.data == []
    assert page.has_more is False
    assert StripeCursor.decode(page.next_cursor) == StripeCursor(created=1700000500)


def _stripe_list(objects):
    """Serve ``objects`` like a Stripe list endpoint: newest first, paged by starting_after."""
    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        rows = sorted(objects, key=lambda o: o["created"], reverse=True)
        if "created[gte]" in params:
            rows = [o for o in rows if o["created"] >= int(params["created[gte]"])]
        if "starting_after" in params:
            ids = [o["id"] for o in rows]
            rows = rows[ids.index(params["starting_after"]) + 1:]
        limit = int(params["limit"])
        return httpx.Response(200, json={"data": rows[:limit], "has_more": len(rows) > limit})
    return handler


def _customers():
    return [
        {"id": "cus_1", "email": "a@b.co", "created": 1700000100},
        {"id": "cus_2", "created": 1700000200},
        {"id": "cus_3", "name": "Grace Hopper", "created": 1700000300},
    ]


@pytest.mark.asyncio
async def test_stripe_incremental_sync_picks_up_new_customers():
    """A later incremental run sees customers created after the previous run."""
    customers = _customers()
    connector, persistence, store, auth = await _stripe(_stripe_list(customers))
    orchestrator = SyncOrchestrator(store, persistence, auth, page_limit=2)

    first = await orchestrator.incremental_sync(connector, EntityType.CUSTOMER)

    assert first.success is True
    assert first.records_created == 3
    assert first.pages_fetched == 2
    assert StripeCursor.decode(first.cursor) == StripeCursor(created=1700000300)
    customer = persistence.get_entity("ws-1", "stripe", EntityType.CUSTOMER, "cus_3")
    assert (customer.first_name, customer.last_name) == ("Grace", "Hopper")

    customers.append({"id": "cus_4", "email": "new@b.co", "created": 1700000400})
    second = await orchestrator.incremental_sync(connector, EntityType.CUSTOMER)

    assert second.success is True
    assert second.records_created == 1
    assert persistence.count("ws-1", "stripe", EntityType.CUSTOMER) == 4
    assert StripeCursor.decode(second.cursor) == StripeCursor(created=1700000400)


@pytest.mark.asyncio
async def test_stripe_interrupted_walk_resumes_then_advances():
    """A walk cut short resumes toward older objects, then newer ones are found."""
    customers = _customers()
    serve = _stripe_list(customers)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 2:
            return httpx.Response(503, json={"error": {"message": "try again"}})
        return serve(request)

    connector, persistence, store, auth = await _stripe(handler)
    orchestrator = SyncOrchestrator(store, persistence, auth, page_limit=2)

    interrupted = await orchestrator.incremental_sync(connector, EntityType.CUSTOMER)
    assert interrupted.success is False
    assert interrupted.records_processed == 2
    assert StripeCursor.decode(interrupted.cursor) == StripeCursor(high=1700000300, after="cus_2")

    customers.append({"id": "cus_4", "created": 1700000400})
    resumed = await orchestrator.incremental_sync(connector, EntityType.CUSTOMER)
    assert resumed.success is True
    assert resumed.records_processed == 1
    assert persistence.get_entity("ws-1", "stripe", EntityType.CUSTOMER, "cus_1").email == "a@b.co"

    caught_up = await orchestrator.incremental_sync(connector, EntityType.CUSTOMER)
    assert caught_up.records_created == 1
    assert persistence.count("ws-1", "stripe", EntityType.CUSTOMER) == 4


def test_stripe_customer_transform():
    connector = _offline(StripeConnector, "stripe")
    entity = connector.normalize(EntityType.CUSTOMER, {
        "id": "cus_1",
        "email": "ada@example.com",
        "name": "Ada King Lovelace",
        "created": 1700000000,
        "metadata": {"tier": "gold"},
        "livemode": False,
        "currency": "eur",
    })
    assert entity.first_name == "Ada"
    assert entity.last_name == "King Lovelace"
    assert entity.created_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert entity.metadata == {"tier": "gold", "livemode": False, "currency": "EUR"}


def test_stripe_subscription_transform():
    connector = _offline(StripeConnector, "stripe")
    entity = connector.normalize(EntityType.SUBSCRIPTION, SUBSCRIPTION)
    assert isinstance(entity, NormalizedSubscription)
    assert entity.customer_id == "cus_1"
    assert entity.plan_id == "price_1"
    assert entity.status == "past_due"
    assert entity.currency == "USD"
    assert entity.amount == 1500
    assert entity.interval == "month"
    assert entity.interval_count == 1
    assert entity.canceled_at is None
    assert entity.metadata == {"plan": "pro"}


def test_stripe_product_status():
    connector = _offline(StripeConnector, "stripe")
    active = connector.normalize(EntityType.PRODUCT, {"id": "prod_1", "name": "Mug", "active": True})
    archived = connector.normalize(EntityType.PRODUCT, {"id": "prod_2", "name": "Hat", "active": False})
    assert isinstance(active, NormalizedProduct)
    assert (active.status, archived.status) == ("active", "archived")


@pytest.mark.asyncio
async def test_stripe_webhook_round():
    connector, *_ = await _stripe()
    body = json.dumps({
        "id": "evt_1",
        "type": "customer.subscription.deleted",
        "created": 1700000000,
        "data": {"object": SUBSCRIPTION},
    }).encode()
    headers = {"stripe-signature": f"t=1700000000,v1={compute_signature('whsec_1', 1700000000, body)}"}

    assert connector.verify_webhook(body, headers, "whsec_1")
    assert not connector.verify_webhook(body, headers, "whsec_2")

    event = connector.read_webhook_event(body, headers)
    assert event.object_id == "sub_1"
    entity = connector.parse_webhook(event)
    assert entity.deleted is True
    assert connector.webhook_action(event, UpsertOutcome.DELETED) == "canceled"


@pytest.mark.asyncio
async def test_stripe_webhook_edge_cases():
    connector, *_ = await _stripe()

    def event(payload):
        return connector.read_webhook_event(json.dumps(payload).encode(), {})

    ignored = event({"id": "evt_2", "type": "customer.discount.created", "data": {"object": {"id": "di_1"}}})
    assert connector.parse_webhook(ignored) is None

    with pytest.raises(TransformError):
        connector.parse_webhook(event({"id": "evt_3", "type": "customer.updated", "data": {}}))

    with pytest.raises(ValueError):
        connector.read_webhook_event(b'{"type": "customer.updated"}', {})

    updated = event({"id": "evt_4", "type": "invoice.updated", "data": {"object": {"id": "in_1"}}})
    assert connector.webhook_action(updated, UpsertOutcome.UPDATED) == "updated"


@pytest.mark.asyncio
async def test_stripe_unauthorized_maps_to_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API Key"}})

    connector, *_ = await _stripe(handler)
    with pytest.raises(ProviderHTTPError) as exc:
        await connector.fetch(EntityType.CUSTOMER, FetchOptions())
    assert exc.value.is_unauthorized

    status = await connector.test_connection()
    assert status.connected is False
    assert connector.get_health().auth_failures == 2


@pytest.mark.asyncio
async def test_stripe_connection_check():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/balance"
        return httpx.Response(200, json={"object": "balance", "livemode": False})

    connector, *_ = await _stripe(handler)
    status = await connector.test_connection()
    assert status.connected is True
    assert status.details == {"livemode": False}


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_shopify_fetch_uses_shop_url_and_token_header():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"orders": [{"id": 1001}, {"id": 1002}]})

    connector, *_ = await _shopify(handler)
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    page = await connector.fetch(EntityType.ORDER, FetchOptions(cursor="1000", limit=2, since=since))

    request = seen[0]
    assert request.url.host == "acme.myshopify.com"
    assert request.url.path == "/admin/api/2024-01/orders.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_1"
    assert "Authorization" not in request.headers
    assert request.url.params["since_id"] == "1000"
    assert request.url.params["status"] == "any"
    assert request.url.params["updated_at_min"] == "2024-01-01T00:00:00+00:00"
    assert page.next_cursor == "1002"
    assert page.has_more is True


@pytest.mark.asyncio
async def test_shopify_short_page_ends_walk():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"customers": [{"id": 1}]})

    connector, *_ = await _shopify(handler)
    page = await connector.fetch(EntityType.CUSTOMER, FetchOptions(limit=50))
    assert page.has_more is False


@pytest.mark.asyncio
async def test_shopify_requires_shop_and_token():
    connector, *_ = await _connector(ShopifyConnector, "shopify", {"access_token": "shpat_1"})
    with pytest.raises(ConfigurationError, match="shop"):
        connector.url_for("/shop.json")
    with pytest.raises(AuthenticationError):
        connector.auth_headers({})


def test_shopify_order_transform():
    connector = _offline(ShopifyConnector, "shopify")
    entity = connector.normalize(EntityType.ORDER, ORDER)
    assert isinstance(entity, NormalizedOrder)
    assert entity.external_id == "1001"
    assert entity.customer_id == "77"
    assert entity.status == "fulfilled"
    assert entity.total_price == 2999
    assert entity.total_tax == 299
    assert entity.total_discount == 0
    assert entity.created_at == datetime(2024, 1, 5, 15, 0, tzinfo=timezone.utc)
    assert entity.line_items[0].price == 1350
    assert entity.line_items[0].quantity == 2
    assert entity.line_items[0].product_id == "9"
    assert entity.line_items[0].variant_id is None
    assert entity.metadata == {"order_number": "1001", "tags": ["vip", "wholesale"], "cancelled_at": None}


def test_shopify_product_transform():
    connector = _offline(ShopifyConnector, "shopify")
    entity = connector.normalize(EntityType.PRODUCT, {
        "id": 9,
        "title": "Mug",
        "body_html": "<p>Soft &amp; <b>warm</b></p>",
        "status": "active",
        "product_type": "Kitchen",
        "tags": "ceramic",
        "handle": "mug",
        "variants": [{"id": 90, "sku": "", "price": "13.50", "compare_at_price": "", "weight": 0.5}],
    })
    assert entity.description == "Soft & warm"
    assert entity.category == "Kitchen"
    assert entity.tags == ["ceramic"]
    assert entity.variants[0].sku is None
    assert entity.variants[0].price == 1350
    assert entity.variants[0].compare_at_price is None
    assert entity.metadata == {"handle": "mug"}


@pytest.mark.parametrize(
    "order, expected",
    [
        ({"cancelled_at": "2024-01-01", "financial_status": "paid"}, "cancelled"),
        ({"financial_status": "refunded"}, "refunded"),
        ({"financial_status": "paid", "fulfillment_status": "fulfilled"}, "fulfilled"),
        ({"financial_status": "paid", "fulfillment_status": None}, "paid"),
        ({"financial_status": "pending"}, "pending"),
    ],
)
def test_shopify_order_status(order, expected):
    assert order_status(order) == expected


@pytest.mark.asyncio
async def test_shopify_webhook_round():
    connector, *_ = await _shopify()
    body = json.dumps(ORDER).encode()
    headers = {
        "x-shopify-hmac-sha256": compute_base64_hmac("shpss_1", body),
        "x-shopify-webhook-id": "wh-1",
        "x-shopify-topic": "orders/paid",
    }

    assert connector.verify_webhook(body, headers, "shpss_1")
    assert not connector.verify_webhook(body + b" ", headers, "shpss_1")

    event = connector.read_webhook_event(body, headers)
    assert (event.id, event.object_id) == ("wh-1", "1001")
    assert event.timestamp == datetime(2024, 1, 6, 10, 0, tzinfo=timezone.utc)
    entity = connector.parse_webhook(event)
    assert entity.status == "fulfilled"
    assert connector.webhook_action(event, UpsertOutcome.UPDATED) == "paid"


@pytest.mark.asyncio
async def test_shopify_webhook_delete_and_unknown_topics():
    connector, *_ = await _shopify()
    body = b'{"id": 1001}'

    deleted = connector.read_webhook_event(body, {"x-shopify-webhook-id": "wh-2", "x-shopify-topic": "orders/delete"})
    entity = connector.parse_webhook(deleted)
    assert entity.deleted is True
    assert entity.status is None

    unknown = connector.read_webhook_event(body, {"x-shopify-webhook-id": "wh-3", "x-shopify-topic": "carts/create"})
    assert connector.parse_webhook(unknown) is None

    with pytest.raises(ValueError, match="Topic"):
        connector.read_webhook_event(body, {"x-shopify-webhook-id": "wh-4"})
