"""Errors raised while ingesting billing provider webhooks."""


class WebhookError(RuntimeError):
    """Base class for webhook ingestion failures."""


class WebhookConfigurationError(WebhookError):
    """The service cannot verify webhooks, e.g. the signing secret is missing."""


class WebhookSignatureError(WebhookError):
    """The signature header is missing or does not match the raw body."""


class WebhookPayloadError(WebhookError):
    """The verified body is not a well-formed provider event."""


__all__ = [
    "WebhookConfigurationError",
    "WebhookError",
    "WebhookPayloadError",
    "WebhookSignatureError",
]
