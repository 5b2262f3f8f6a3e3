from datetime import datetime, timezone
from uuid import uuid4

import pytest

from truckstamp_api.models.subscription import SubscriptionStatusEnum
from truckstamp_api.models.vendor import VendorTierEnum
from truckstamp_api.services.billing import WebhookPayloadError, normalize_event, normalize_subscription
from truckstamp_api.services.billing.event_handlers import tier_for_status
from truckstamp_api.services.billing.normalization import (
    checkout_session_refs,
    invoice_subscription_id,
    metadata_user_id,
    normalize_status,
)


def test_period_bounds_prefer_subscription_items() -> None:
    user_id = uuid4()
    snapshot = normalize_subscription(
        {
            "id": "sub_1",
            "customer": {"id": "cus_1", "object": "customer"},
            "status": "trialing",
            "current_period_start": 100,
            "current_period_end": 200,
            "metadata": {"user_id": str(user_id)},
            "items": {
                "data": [
                    {
                        "price": {"id": "price_1"},
                        "current_period_start": 1_790_000_000,
                        "current_period_end": 1_792_592_000,
                    }
                ]
            },
        }
    )

    assert snapshot.subscription_id == "sub_1"
    assert snapshot.customer_id == "cus_1"
    assert snapshot.price_id == "price_1"
    assert snapshot.status == SubscriptionStatusEnum.TRIALING
    assert snapshot.current_period_start == datetime.fromtimestamp(1_790_000_000, tz=timezone.utc)
    assert snapshot.user_id == user_id
    assert snapshot.cancel_at_period_end is False


def test_period_bounds_fall_back_to_top_level() -> None:
    snapshot = normalize_subscription(
        {"id": "sub_2", "customer": "cus_2", "status": "active", "current_period_end": 1_790_000_000}
    )

    assert snapshot.current_period_start is None
    assert snapshot.current_period_end == datetime.fromtimestamp(1_790_000_000, tz=timezone.utc)
    assert snapshot.price_id is None
    assert snapshot.user_id is None


def test_subscription_without_id_is_rejected() -> None:
    with pytest.raises(WebhookPayloadError):
        normalize_subscription({"status": "active"})


def test_unknown_status_is_treated_as_incomplete() -> None:
    assert normalize_status("brand_new_status") == SubscriptionStatusEnum.INCOMPLETE
    assert normalize_status("past_due") == SubscriptionStatusEnum.PAST_DUE


@pytest.mark.parametrize(
    ("status", "tier"),
    [
        (SubscriptionStatusEnum.ACTIVE, VendorTierEnum.PRO),
        (SubscriptionStatusEnum.TRIALING, VendorTierEnum.PRO),
        (SubscriptionStatusEnum.PAST_DUE, VendorTierEnum.FREE),
        (SubscriptionStatusEnum.CANCELED, VendorTierEnum.FREE),
    ],
)
def test_tier_follows_paid_statuses(status: SubscriptionStatusEnum, tier: VendorTierEnum) -> None:
    assert tier_for_status(status) == tier


def test_invoice_subscription_id_reads_both_shapes() -> None:
    assert invoice_subscription_id({"subscription": "sub_a"}) == "sub_a"
    assert invoice_subscription_id({"parent": {"subscription_details": {"subscription": "sub_b"}}}) == "sub_b"
    assert invoice_subscription_id({"subscription": None, "parent": None}) is None


def test_checkout_session_refs_and_metadata() -> None:
    user_id = uuid4()
    refs = checkout_session_refs(
        {"customer": "cus_1", "subscription": {"id": "sub_1"}, "metadata": {"userId": str(user_id)}}
    )

    assert refs == (user_id, "cus_1", "sub_1")
    assert metadata_user_id({"metadata": {"userId": "not-a-uuid"}}) is None
    assert metadata_user_id({}) is None


def test_normalize_event_requires_object() -> None:
    event = normalize_event({"id": "evt_1", "type": "invoice.payment_failed", "created": 1, "data": {"object": {}}})
    assert event.id == "evt_1"
    assert event.created == datetime.fromtimestamp(1, tz=timezone.utc)

    with pytest.raises(WebhookPayloadError):
        normalize_event({"id": "evt_2", "type": "invoice.paid", "data": {}})
    with pytest.raises(WebhookPayloadError):
        normalize_event({"type": "invoice.paid", "data": {"object": {}}})
