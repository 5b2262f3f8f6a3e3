"""Stripe provider abstractions for subscription billing."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import stripe
from loguru import logger

from truckstamp_api.core.settings import settings
from truckstamp_api.services.billing.errors import (
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookSignatureError,
)


class StripeBillingProvider:
    """Thin asynchronous wrapper around the official Stripe SDK."""

    def __init__(
        self,
        secret_key: str | None,
        webhook_secret: str | None = None,
        *,
        tolerance_seconds: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ) -> None:
        self._secret_key = secret_key or None
        self._webhook_secret = webhook_secret or None
        self._tolerance_seconds = tolerance_seconds
        if self._secret_key:
            stripe.api_key = self._secret_key

    @classmethod
    def from_settings(cls) -> "StripeBillingProvider":
        """Build the provider using application settings."""

        return cls(
            settings.stripe_secret_key,
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute blocking Stripe SDK calls in a worker thread."""

        return await asyncio.to_thread(func, *args, **kwargs)

    @property
    def webhook_secret(self) -> str | None:
        """Expose configured webhook signing secret."""

        return self._webhook_secret

    def construct_event(self, payload: bytes, signature: str | None) -> stripe.Event:
        """Verify ``signature`` against the raw ``payload`` and build the event.

        Raises:
            WebhookConfigurationError: no signing secret is configured.
            WebhookSignatureError: the header is missing or does not match.
            WebhookPayloadError: the signed body is not valid JSON.
        """

        if not self._webhook_secret:
            raise WebhookConfigurationError("Stripe webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                tolerance=self._tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Failed to verify Stripe webhook signature", error=str(exc))
            raise WebhookSignatureError("Invalid Stripe signature") from exc
        except ValueError as exc:
            # Covers both undecodable bytes and malformed JSON.
            raise WebhookPayloadError("Invalid payload body") from exc

    async def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Retrieve a subscription from Stripe as a plain (recursive) dict."""

        if not subscription_id:
            raise ValueError("subscription_id is required")
        if not self._secret_key:
            raise WebhookConfigurationError("Stripe secret key not configured")
        subscription = await self._run(stripe.Subscription.retrieve, subscription_id)
        # StripeObject is not a Mapping in current SDK releases.
        return subscription.to_dict()


__all__ = ["StripeBillingProvider"]
