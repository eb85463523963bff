"""Stripe payments connector."""
from providers.stripe.connector import StripeConnector
from providers.stripe.definition import STRIPE_DEFINITION

__all__ = ["StripeConnector", "STRIPE_DEFINITION"]
