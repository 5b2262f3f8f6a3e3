"""Webhook endpoints for billing processors."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.db.session import get_session
from truckstamp_api.services.billing import StripeWebhookProcessor
from truckstamp_api.services.billing.providers import StripeBillingProvider

router = APIRouter(prefix="/billing/webhooks", tags=["billing-webhooks"])


def get_stripe_provider() -> StripeBillingProvider:
    return StripeBillingProvider.from_settings()


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_session),
    provider: StripeBillingProvider = Depends(get_stripe_provider),
) -> JSONResponse:
    """Handle Stripe webhook callbacks. The body is read raw for signature verification."""

    payload_bytes = await request.body()
    signature = request.headers.get("Stripe-Signature")
    outcome = await StripeWebhookProcessor(db, provider).process(payload_bytes, signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
