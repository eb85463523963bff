"""
SyncHub Providers — Reference Connectors.

- stripe: payments (API key, timestamped HMAC webhooks)
- shopify: commerce (OAuth2, base64 HMAC webhooks)
"""
from core.integrations.registry import ConnectorRegistry
from providers.shopify import ShopifyConnector
from providers.stripe import StripeConnector

BUILTIN_CONNECTORS = (StripeConnector, ShopifyConnector)


def build_default_registry() -> ConnectorRegistry:
    """Registry with every built-in connector, frozen for serving."""
    registry = ConnectorRegistry()
    for connector_class in BUILTIN_CONNECTORS:
        registry.register(connector_class)
    registry.freeze()
    return registry
