"""Apply verified Stripe subscription events to local billing state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.core.settings import settings
from truckstamp_api.models.subscription import Subscription, SubscriptionStatusEnum
from truckstamp_api.models.user import User
from truckstamp_api.models.vendor import Vendor, VendorTierEnum
from truckstamp_api.services.billing.normalization import (
    StripeWebhookEvent,
    SubscriptionSnapshot,
    checkout_session_refs,
    invoice_subscription_id,
    normalize_subscription,
)
from truckstamp_api.services.billing.providers import StripeBillingProvider

PAID_STATUSES = {SubscriptionStatusEnum.ACTIVE, SubscriptionStatusEnum.TRIALING}


class HandlerResult(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    STALE = "stale"


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def tier_for_status(status: SubscriptionStatusEnum) -> VendorTierEnum:
    return VendorTierEnum.PRO if status in PAID_STATUSES else VendorTierEnum.FREE


def _is_stale(record: Subscription, event: StripeWebhookEvent) -> bool:
    if record.last_event_at is None or event.created is None:
        return False
    return event.created < _ensure_aware(record.last_event_at)


def _stamp_event(record: Subscription, event: StripeWebhookEvent) -> None:
    record.last_event_id = event.id
    if event.created is not None:
        record.last_event_at = event.created


def _apply_snapshot(record: Subscription, snapshot: SubscriptionSnapshot) -> None:
    record.stripe_subscription_id = snapshot.subscription_id
    if snapshot.customer_id:
        record.stripe_customer_id = snapshot.customer_id
    if snapshot.price_id:
        record.stripe_price_id = snapshot.price_id
    record.status = snapshot.status
    record.current_period_start = snapshot.current_period_start
    record.current_period_end = snapshot.current_period_end
    record.cancel_at_period_end = snapshot.cancel_at_period_end


async def set_vendor_tier(db: AsyncSession, owner_id: UUID, tier: VendorTierEnum) -> None:
    """Move the owner's vendors to ``tier``, dropping featured placement when no longer eligible."""

    values: dict[str, Any] = {"subscription_tier": tier.value}
    if tier.value not in settings.featured_eligible_tiers:
        values["is_featured"] = False
    stmt = (
        update(Vendor)
        .where(Vendor.owner_id == owner_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)


async def _subscription_for_user(db: AsyncSession, user_id: UUID) -> Subscription | None:
    result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
    return result.scalar_one_or_none()


async def _subscription_by_stripe_id(db: AsyncSession, subscription_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == subscription_id)
    )
    return result.scalar_one_or_none()


async def handle_stripe_event(
    db: AsyncSession,
    event: StripeWebhookEvent,
    provider: StripeBillingProvider,
) -> HandlerResult:
    """Dispatch Stripe webhook event processing. Unknown types are no-ops."""

    if event.type == "checkout.session.completed":
        return await _handle_checkout_completed(db, event, provider)
    if event.type == "customer.subscription.updated":
        return await _handle_subscription_updated(db, event)
    if event.type == "customer.subscription.deleted":
        return await _handle_subscription_deleted(db, event)
    if event.type == "invoice.payment_failed":
        return await _handle_payment_failed(db, event)
    logger.info("Unhandled Stripe event type", event_type=event.type, event_id=event.id)
    return HandlerResult.IGNORED


async def _handle_checkout_completed(
    db: AsyncSession,
    event: StripeWebhookEvent,
    provider: StripeBillingProvider,
) -> HandlerResult:
    user_id, customer_id, subscription_id = checkout_session_refs(event.data_object)
    if user_id is None or subscription_id is None:
        logger.error("Checkout session missing user or subscription reference", event_id=event.id)
        return HandlerResult.IGNORED

    user = await db.get(User, user_id)
    if user is None:
        logger.warning("Checkout session references unknown user", event_id=event.id, user_id=str(user_id))
        return HandlerResult.IGNORED

    subscription_object: Mapping[str, Any] = await provider.retrieve_subscription(subscription_id)
    snapshot = normalize_subscription(subscription_object)

    record = await _subscription_for_user(db, user_id)
    if record is None:
        record = Subscription(user_id=user_id, stripe_subscription_id=snapshot.subscription_id)
        db.add(record)
    elif _is_stale(record, event):
        logger.info("Skipping out-of-order Stripe event", event_id=event.id, event_type=event.type)
        return HandlerResult.STALE

    if customer_id:
        user.stripe_customer_id = customer_id
    _apply_snapshot(record, snapshot)
    if customer_id and not snapshot.customer_id:
        record.stripe_customer_id = customer_id
    record.tier = VendorTierEnum.PRO.value
    _stamp_event(record, event)
    await set_vendor_tier(db, user_id, VendorTierEnum.PRO)

    logger.info("Subscription activated", user_id=str(user_id), subscription_id=snapshot.subscription_id)
    return HandlerResult.APPLIED


async def _handle_subscription_updated(db: AsyncSession, event: StripeWebhookEvent) -> HandlerResult:
    snapshot = normalize_subscription(event.data_object)

    record = None
    if snapshot.user_id is not None:
        record = await _subscription_for_user(db, snapshot.user_id)
    if record is None:
        record = await _subscription_by_stripe_id(db, snapshot.subscription_id)
    if record is None:
        logger.error("No subscription record found", subscription_id=snapshot.subscription_id, event_id=event.id)
        return HandlerResult.IGNORED
    if _is_stale(record, event):
        logger.info("Skipping out-of-order Stripe event", event_id=event.id, event_type=event.type)
        return HandlerResult.STALE

    tier = tier_for_status(snapshot.status)
    _apply_snapshot(record, snapshot)
    record.tier = tier.value
    _stamp_event(record, event)
    await set_vendor_tier(db, record.user_id, tier)

    logger.info("Subscription updated", user_id=str(record.user_id), status=snapshot.status.value)
    return HandlerResult.APPLIED


async def _handle_subscription_deleted(db: AsyncSession, event: StripeWebhookEvent) -> HandlerResult:
    snapshot = normalize_subscription(event.data_object)
    record = await _subscription_by_stripe_id(db, snapshot.subscription_id)
    if record is None:
        logger.error("No subscription record found for deleted", subscription_id=snapshot.subscription_id)
        return HandlerResult.IGNORED
    if _is_stale(record, event):
        logger.info("Skipping out-of-order Stripe event", event_id=event.id, event_type=event.type)
        return HandlerResult.STALE

    record.status = SubscriptionStatusEnum.CANCELED
    record.tier = VendorTierEnum.FREE.value
    _stamp_event(record, event)
    await set_vendor_tier(db, record.user_id, VendorTierEnum.FREE)

    logger.info("Subscription canceled", user_id=str(record.user_id))
    return HandlerResult.APPLIED


async def _handle_payment_failed(db: AsyncSession, event: StripeWebhookEvent) -> HandlerResult:
    subscription_id = invoice_subscription_id(event.data_object)
    if not subscription_id:
        return HandlerResult.IGNORED
    record = await _subscription_by_stripe_id(db, subscription_id)
    if record is None:
        logger.warning("Payment failed for unknown subscription", subscription_id=subscription_id)
        return HandlerResult.IGNORED
    if _is_stale(record, event):
        logger.info("Skipping out-of-order Stripe event", event_id=event.id, event_type=event.type)
        return HandlerResult.STALE

    record.status = SubscriptionStatusEnum.PAST_DUE
    _stamp_event(record, event)

    logger.info("Payment failed for subscription", subscription_id=subscription_id)
    return HandlerResult.APPLIED


__all__ = ["HandlerResult", "handle_stripe_event", "set_vendor_tier", "tier_for_status"]
