"""Subscription billing services."""

from .errors import (
    WebhookConfigurationError,
    WebhookError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from .event_handlers import HandlerResult, handle_stripe_event
from .normalization import StripeWebhookEvent, SubscriptionSnapshot, normalize_event, normalize_subscription
from .webhook_processor import StripeWebhookProcessor, WebhookOutcome

__all__ = [
    "HandlerResult",
    "StripeWebhookEvent",
    "StripeWebhookProcessor",
    "SubscriptionSnapshot",
    "WebhookConfigurationError",
    "WebhookError",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookSignatureError",
    "handle_stripe_event",
    "normalize_event",
    "normalize_subscription",
]
