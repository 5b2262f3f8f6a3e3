"""Exactly-once application of at-least-once Stripe webhook deliveries."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from fastapi import status
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.models.idempotency import ClaimScopeEnum
from truckstamp_api.observability.tracing import get_tracer
from truckstamp_api.services.billing.errors import (
    WebhookConfigurationError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from truckstamp_api.services.billing.event_handlers import HandlerResult, handle_stripe_event
from truckstamp_api.services.billing.normalization import StripeWebhookEvent, normalize_event
from truckstamp_api.services.billing.providers import StripeBillingProvider
from truckstamp_api.services.idempotency import IdempotencyLedger

tracer = get_tracer(__name__)


def stripe_event_claim_key(event_id: str) -> str:
    return f"stripe:{event_id}"


@dataclass(slots=True)
class WebhookOutcome:
    """Transport response for one delivery. The status code controls retries."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class StripeWebhookProcessor:
    """Verify, claim, dispatch and finalize a single Stripe delivery.

    2xx tells Stripe to stop (applied, duplicate or ignored), 4xx marks the
    delivery as permanently invalid and 5xx asks for a retry.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeBillingProvider,
        *,
        ledger: IdempotencyLedger | None = None,
    ) -> None:
        self._session = session
        self._provider = provider
        self._ledger = ledger or IdempotencyLedger(session)

    async def process(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        with tracer.start_as_current_span("billing.webhook.process") as span:
            outcome = await self._process(raw_body, signature, span)
            span.set_attribute("billing.webhook.status_code", outcome.status_code)
            return outcome

    async def _process(self, raw_body: bytes, signature: str | None, span: Any) -> WebhookOutcome:
        try:
            event = self._verify(raw_body, signature)
        except WebhookConfigurationError as exc:
            logger.error("Rejecting Stripe webhook: signing secret not configured")
            return WebhookOutcome(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                {"error": str(exc), "willRetry": True},
            )
        except WebhookSignatureError as exc:
            logger.warning("Rejecting Stripe webhook with invalid signature", error=str(exc))
            return WebhookOutcome(status.HTTP_400_BAD_REQUEST, {"error": str(exc)})
        except WebhookPayloadError as exc:
            logger.warning("Rejecting malformed Stripe webhook body", error=str(exc))
            return WebhookOutcome(status.HTTP_400_BAD_REQUEST, {"error": str(exc)})

        span.set_attribute("billing.webhook.event_id", event.id)
        span.set_attribute("billing.webhook.event_type", event.type)

        claim = await self._ledger.claim(stripe_event_claim_key(event.id), scope=ClaimScopeEnum.STRIPE_EVENT)
        span.set_attribute("billing.webhook.claim_outcome", claim.outcome.value)
        if not claim.acquired:
            logger.info(
                "Duplicate Stripe event delivery",
                event_id=event.id,
                event_type=event.type,
                claim_outcome=claim.outcome.value,
            )
            return WebhookOutcome(
                status.HTTP_200_OK,
                {"received": True, "processed": False, "duplicate": True},
            )

        try:
            result = await handle_stripe_event(self._session, event, self._provider)
            await self._ledger.finalize(claim, result_ref=result.value)
            await self._session.commit()
        except Exception as exc:  # handler failures are retried by Stripe
            await self._session.rollback()
            logger.opt(exception=exc).error(
                "Stripe webhook handler failed",
                event_id=event.id,
                event_type=event.type,
                attempt=claim.attempt_count,
            )
            try:
                await self._ledger.mark_failed(claim, f"{type(exc).__name__}: {exc}")
            except SQLAlchemyError as cleanup_exc:
                # The claim stays claimed and is reclaimed once its lease goes stale.
                await self._session.rollback()
                logger.opt(exception=cleanup_exc).error(
                    "Failed to mark Stripe event claim as failed",
                    event_id=event.id,
                )
            return WebhookOutcome(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                {"error": "Webhook handler failed", "willRetry": True},
            )

        logger.info(
            "Stripe event processed",
            event_id=event.id,
            event_type=event.type,
            result=result.value,
        )
        return WebhookOutcome(
            status.HTTP_200_OK,
            {"received": True, "processed": result == HandlerResult.APPLIED},
        )

    def _verify(self, raw_body: bytes, signature: str | None) -> StripeWebhookEvent:
        self._provider.construct_event(raw_body, signature)
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid payload body") from exc
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Event body must be a JSON object")
        return normalize_event(payload)


__all__ = ["StripeWebhookProcessor", "WebhookOutcome", "stripe_event_claim_key"]
