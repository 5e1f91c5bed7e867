"""Stripe integration: API client and webhook intake."""
from .stripe_client import StripeClient, StripeError, StripeErrorType
from .webhook_handler import WebhookError, WebhookHandler, WebhookProcessingError

__all__ = [
    "StripeClient",
    "StripeError",
    "StripeErrorType",
    "WebhookError",
    "WebhookHandler",
    "WebhookProcessingError",
]
