"""Shopify connector definition: entities, endpoints and field mappings.

OAuth client credentials come from SHOPIFY_CLIENT_ID / SHOPIFY_CLIENT_SECRET.
URLs hold a ``{shop}`` placeholder filled from the workspace connector config.
"""

import os

from core.integrations.types import (
    AuthConfig,
    AuthType,
    ConnectorDefinition,
    EndpointDefinition,
    EntityDefinition,
    EntityType,
    FieldMapping,
    OAuth2Config,
    TransformDefinition,
    WebhookConfig,
)

API_VERSION = "2024-01"

# ---------------------------------------------------------------------------
# Field mappings
# ---------------------------------------------------------------------------

ORDER_TRANSFORM = TransformDefinition(
    entity=EntityType.ORDER,
    mappings=(
        FieldMapping("id", "external_id", coerce="string"),
        FieldMapping("customer.id", "customer_id", coerce="string"),
        FieldMapping("financial_status", "financial_status"),
        FieldMapping("fulfillment_status", "fulfillment_status"),
        FieldMapping("currency", "currency"),
        FieldMapping("total_price", "total_price", coerce="currency"),
        FieldMapping("subtotal_price", "subtotal_price", coerce="currency"),
        FieldMapping("total_tax", "total_tax", coerce="currency"),
        FieldMapping("total_discounts", "total_discount", coerce="currency"),
        FieldMapping("line_items", "line_items", coerce="line_items"),
        FieldMapping("created_at", "created_at", coerce="datetime"),
        FieldMapping("updated_at", "updated_at", coerce="datetime"),
        FieldMapping("order_number", "metadata.order_number", coerce="string"),
        FieldMapping("tags", "metadata.tags", coerce="array"),
        FieldMapping("cancelled_at", "metadata.cancelled_at", coerce="datetime"),
    ),
)

CUSTOMER_TRANSFORM = TransformDefinition(
    entity=EntityType.CUSTOMER,
    mappings=(
        FieldMapping("id", "external_id", coerce="string"),
        FieldMapping("email", "email"),
        FieldMapping("first_name", "first_name"),
        FieldMapping("last_name", "last_name"),
        FieldMapping("phone", "phone"),
        FieldMapping("created_at", "created_at", coerce="datetime"),
        FieldMapping("updated_at", "updated_at", coerce="datetime"),
        FieldMapping("orders_count", "metadata.orders_count", coerce="number"),
        FieldMapping("total_spent", "metadata.total_spent", coerce="currency"),
        FieldMapping("state", "metadata.state"),
        FieldMapping("tags", "metadata.tags", coerce="array"),
    ),
)

PRODUCT_TRANSFORM = TransformDefinition(
    entity=EntityType.PRODUCT,
    mappings=(
        FieldMapping("id", "external_id", coerce="string"),
        FieldMapping("title", "name"),
        FieldMapping("body_html", "description", coerce="strip_html"),
        FieldMapping("status", "status"),
        FieldMapping("vendor", "vendor"),
        FieldMapping("product_type", "category"),
        FieldMapping("tags", "tags", coerce="array"),
        FieldMapping("variants", "variants", coerce="variants"),
        FieldMapping("handle", "metadata.handle"),
        FieldMapping("created_at", "created_at", coerce="datetime"),
        FieldMapping("updated_at", "updated_at", coerce="datetime"),
    ),
)

# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------

WEBHOOK_TOPICS = (
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/fulfilled",
    "orders/cancelled",
    "orders/delete",
    "customers/create",
    "customers/update",
    "customers/delete",
    "products/create",
    "products/update",
    "products/delete",
)

SHOPIFY_DEFINITION = ConnectorDefinition(
    id="shopify",
    slug="shopify",
    name="Shopify",
    version="1.0.0",
    category="commerce",
    auth=AuthConfig(
        type=AuthType.OAUTH2,
        oauth2=OAuth2Config(
            authorization_url="https://{shop}.myshopify.com/admin/oauth/authorize",
            token_url="https://{shop}.myshopify.com/admin/oauth/access_token",
            client_id=os.getenv("SHOPIFY_CLIENT_ID", ""),
            client_secret=os.getenv("SHOPIFY_CLIENT_SECRET", ""),
            scopes=("read_orders", "read_customers", "read_products"),
            redirect_uri=os.getenv(
                "SHOPIFY_REDIRECT_URI",
                "http://localhost:8000/connectors/shopify/oauth/callback",
            ),
        ),
    ),
    entities=(
        EntityDefinition(EntityType.ORDER, target_table="orders"),
        EntityDefinition(EntityType.CUSTOMER, target_table="customers"),
        EntityDefinition(EntityType.PRODUCT, target_table="products"),
    ),
    endpoints=(
        EndpointDefinition("shop", "GET", "/shop.json"),
        EndpointDefinition("list_orders", "GET", "/orders.json", EntityType.ORDER),
        EndpointDefinition("list_customers", "GET", "/customers.json", EntityType.CUSTOMER),
        EndpointDefinition("list_products", "GET", "/products.json", EntityType.PRODUCT),
    ),
    transforms={
        EntityType.ORDER: ORDER_TRANSFORM,
        EntityType.CUSTOMER: CUSTOMER_TRANSFORM,
        EntityType.PRODUCT: PRODUCT_TRANSFORM,
    },
    webhooks=WebhookConfig(events=WEBHOOK_TOPICS, signature_header="x-shopify-hmac-sha256"),
    rate_limit_tier="starter",
)
