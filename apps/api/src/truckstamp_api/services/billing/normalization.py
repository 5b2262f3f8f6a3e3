"""Normalize Stripe payloads into one internal shape right after verification.

Stripe moves fields between API versions (period bounds live on subscription
items in newer versions, invoice subscription ids under ``parent``), so every
branch on payload shape lives here and nowhere downstream.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import UUID

from loguru import logger

from truckstamp_api.models.subscription import SubscriptionStatusEnum
from truckstamp_api.services.billing.errors import WebhookPayloadError


@dataclass(slots=True)
class StripeWebhookEvent:
    id: str
    type: str
    created: datetime | None
    data_object: Mapping[str, Any]


@dataclass(slots=True)
class SubscriptionSnapshot:
    subscription_id: str
    customer_id: str | None
    price_id: str | None
    status: SubscriptionStatusEnum
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    user_id: UUID | None


def _timestamp(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _identifier(value: Any) -> str | None:
    """Return an object id whether Stripe sent it bare or expanded."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def metadata_user_id(obj: Mapping[str, Any]) -> UUID | None:
    metadata = obj.get("metadata") or {}
    raw = metadata.get("userId") or metadata.get("user_id")
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        logger.warning("Ignoring malformed user id in Stripe metadata", value=str(raw))
        return None


def normalize_status(raw: Any) -> SubscriptionStatusEnum:
    try:
        return SubscriptionStatusEnum(str(raw))
    except ValueError:
        logger.warning("Unknown Stripe subscription status", status=str(raw))
        return SubscriptionStatusEnum.INCOMPLETE


def normalize_event(payload: Mapping[str, Any]) -> StripeWebhookEvent:
    event_id = payload.get("id")
    event_type = payload.get("type")
    data = payload.get("data")
    if not event_id or not event_type or not isinstance(data, Mapping):
        raise WebhookPayloadError("Event is missing id, type or data")
    data_object = data.get("object")
    if not isinstance(data_object, Mapping):
        raise WebhookPayloadError("Event data has no object")
    return StripeWebhookEvent(
        id=str(event_id),
        type=str(event_type),
        created=_timestamp(payload.get("created")),
        data_object=data_object,
    )


def normalize_subscription(obj: Mapping[str, Any]) -> SubscriptionSnapshot:
    items = (obj.get("items") or {}).get("data") or []
    first_item: Mapping[str, Any] = items[0] if items else {}
    price = first_item.get("price") or {}

    period_start = first_item.get("current_period_start") or obj.get("current_period_start")
    period_end = first_item.get("current_period_end") or obj.get("current_period_end")

    subscription_id = _identifier(obj.get("id"))
    if not subscription_id:
        raise WebhookPayloadError("Subscription object has no id")

    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        customer_id=_identifier(obj.get("customer")),
        price_id=_identifier(price),
        status=normalize_status(obj.get("status")),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        user_id=metadata_user_id(obj),
    )


def checkout_session_refs(obj: Mapping[str, Any]) -> tuple[UUID | None, str | None, str | None]:
    """Return ``(user_id, customer_id, subscription_id)`` from a checkout session."""

    return (
        metadata_user_id(obj),
        _identifier(obj.get("customer")),
        _identifier(obj.get("subscription")),
    )


def invoice_subscription_id(obj: Mapping[str, Any]) -> str | None:
    direct = _identifier(obj.get("subscription"))
    if direct:
        return direct
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _identifier(details.get("subscription"))


__all__ = [
    "StripeWebhookEvent",
    "SubscriptionSnapshot",
    "checkout_session_refs",
    "invoice_subscription_id",
    "metadata_user_id",
    "normalize_event",
    "normalize_status",
    "normalize_subscription",
]
