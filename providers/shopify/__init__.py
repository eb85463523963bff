"""Shopify commerce connector."""
from providers.shopify.connector import ShopifyConnector
from providers.shopify.definition import SHOPIFY_DEFINITION

__all__ = ["ShopifyConnector", "SHOPIFY_DEFINITION"]
