"""Stripe connector definition: entities, endpoints and field mappings."""

from core.integrations.types import (
    ApiKeyConfig,
    AuthConfig,
    AuthType,
    ConnectorDefinition,
    EndpointDefinition,
    EntityDefinition,
    EntityType,
    FieldMapping,
    TransformDefinition,
    WebhookConfig,
)

# ---------------------------------------------------------------------------
# Field mappings
# ---------------------------------------------------------------------------

CUSTOMER_TRANSFORM = TransformDefinition(
    entity=EntityType.CUSTOMER,
    mappings=(
        FieldMapping("id", "external_id"),
        FieldMapping("email", "email"),
        FieldMapping("name", "first_name", coerce="first_name"),
        FieldMapping("name", "last_name", coerce="last_name"),
        FieldMapping("phone", "phone"),
        FieldMapping("created", "created_at", coerce="datetime"),
        FieldMapping("metadata", "metadata", coerce="json"),
        FieldMapping("livemode", "metadata.livemode", coerce="boolean"),
        FieldMapping("currency", "metadata.currency", coerce="upper_currency"),
    ),
)

PRODUCT_TRANSFORM = TransformDefinition(
    entity=EntityType.PRODUCT,
    mappings=(
        FieldMapping("id", "external_id"),
        FieldMapping("name", "name"),
        FieldMapping("description", "description"),
        FieldMapping("active", "status", coerce="product_status"),
        FieldMapping("created", "created_at", coerce="datetime"),
        FieldMapping("updated", "updated_at", coerce="datetime"),
        FieldMapping("metadata", "metadata", coerce="json"),
        FieldMapping("default_price", "metadata.default_price", coerce="string"),
    ),
)

SUBSCRIPTION_TRANSFORM = TransformDefinition(
    entity=EntityType.SUBSCRIPTION,
    mappings=(
        FieldMapping("id", "external_id"),
        FieldMapping("customer", "customer_id", coerce="string"),
        FieldMapping("items.data[0].price.id", "plan_id"),
        FieldMapping("status", "status", coerce="subscription_status"),
        FieldMapping("currency", "currency", coerce="upper_currency"),
        # Stripe amounts are already in minor units
        FieldMapping("items.data[0].price.unit_amount", "amount", coerce="number"),
        FieldMapping("items.data[0].price.recurring.interval", "interval"),
        FieldMapping("items.data[0].price.recurring.interval_count", "interval_count", coerce="number"),
        FieldMapping("current_period_start", "current_period_start", coerce="datetime"),
        FieldMapping("current_period_end", "current_period_end", coerce="datetime"),
        FieldMapping("canceled_at", "canceled_at", coerce="datetime"),
        FieldMapping("created", "created_at", coerce="datetime"),
        FieldMapping("metadata", "metadata", coerce="json"),
    ),
)

INVOICE_TRANSFORM = TransformDefinition(
    entity=EntityType.INVOICE,
    mappings=(
        FieldMapping("id", "external_id"),
        FieldMapping("metadata", "metadata", coerce="json"),
        FieldMapping("customer", "customer_id", coerce="string"),
        FieldMapping("subscription", "subscription_id", coerce="string"),
        FieldMapping("status", "status"),
        FieldMapping("currency", "currency", coerce="upper_currency"),
        FieldMapping("amount_due", "amount_due", coerce="number"),
        FieldMapping("amount_paid", "amount_paid", coerce="number"),
        FieldMapping("due_date", "due_date", coerce="datetime"),
        FieldMapping("status_transitions.paid_at", "paid_at", coerce="datetime"),
        FieldMapping("created", "created_at", coerce="datetime"),
        FieldMapping("number", "metadata.number"),
    ),
)

# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------

WEBHOOK_EVENTS = (
    "customer.created",
    "customer.updated",
    "customer.deleted",
    "product.created",
    "product.updated",
    "product.deleted",
    "price.created",
    "price.updated",
    "price.deleted",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.created",
    "invoice.updated",
    "invoice.finalized",
    "invoice.paid",
    "invoice.payment_failed",
    "invoice.voided",
)

STRIPE_DEFINITION = ConnectorDefinition(
    id="stripe",
    slug="stripe",
    name="Stripe",
    version="1.0.0",
    category="payments",
    auth=AuthConfig(
        type=AuthType.API_KEY,
        api_key=ApiKeyConfig(header_name="Authorization", prefix="Bearer"),
    ),
    entities=(
        EntityDefinition(EntityType.CUSTOMER, target_table="customers", update_field=None),
        EntityDefinition(EntityType.PRODUCT, target_table="products", update_field="updated"),
        EntityDefinition(EntityType.SUBSCRIPTION, target_table="subscriptions", update_field=None),
        EntityDefinition(EntityType.INVOICE, target_table="invoices", update_field=None),
    ),
    endpoints=(
        EndpointDefinition("balance", "GET", "/balance"),
        EndpointDefinition("list_customers", "GET", "/customers", EntityType.CUSTOMER),
        EndpointDefinition("list_products", "GET", "/products", EntityType.PRODUCT),
        EndpointDefinition("list_subscriptions", "GET", "/subscriptions", EntityType.SUBSCRIPTION),
        EndpointDefinition("list_invoices", "GET", "/invoices", EntityType.INVOICE),
    ),
    transforms={
        EntityType.CUSTOMER: CUSTOMER_TRANSFORM,
        EntityType.PRODUCT: PRODUCT_TRANSFORM,
        EntityType.SUBSCRIPTION: SUBSCRIPTION_TRANSFORM,
        EntityType.INVOICE: INVOICE_TRANSFORM,
    },
    webhooks=WebhookConfig(events=WEBHOOK_EVENTS, signature_header="stripe-signature"),
    rate_limit_tier="pro",
)
