import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import pytest

from services.billing_events import (
    MalformedBillingEvent,
    WebhookVerificationError,
    normalize_stripe_event,
    verify_webhook,
)
from services.entitlement_types import BillingEventType, SubscriptionStatus

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def test_verify_webhook_accepts_valid_signature():
    payload = json.dumps(_event("checkout.session.completed", {"client_reference_id": "user-1"}))
    event = verify_webhook(payload.encode(), sign(payload), WEBHOOK_SECRET)
    assert event["type"] == "checkout.session.completed"


def test_verify_webhook_rejects_tampered_or_missing_signature():
    payload = json.dumps(_event("checkout.session.completed", {"client_reference_id": "user-1"}))
    with pytest.raises(WebhookVerificationError):
        verify_webhook(payload.encode(), sign(payload, secret="whsec_other"), WEBHOOK_SECRET)
    with pytest.raises(WebhookVerificationError):
        verify_webhook(payload.encode(), None, WEBHOOK_SECRET)
    with pytest.raises(WebhookVerificationError):
        verify_webhook(payload.encode(), sign(payload, timestamp=time.time() - 3600), WEBHOOK_SECRET)

    undecodable = b"\xff\xfe{}"
    with pytest.raises(WebhookVerificationError):
        verify_webhook(undecodable, "t=1,v1=00", WEBHOOK_SECRET)


def test_checkout_completed_prefers_client_reference_id():
    event = normalize_stripe_event(
        _event(
            "checkout.session.completed",
            {
                "client_reference_id": "user-1",
                "customer": "cus_123",
                "subscription": "sub_1",
                "metadata": {"userId": "someone-else"},
            },
        )
    )
    assert event.type is BillingEventType.CHECKOUT_COMPLETED
    assert event.subject_user_id == "user-1"
    assert event.billing_customer_ref == "cus_123"
    assert event.event_id == "evt_1"


def test_checkout_completed_reads_metadata_and_expanded_customer():
    event = normalize_stripe_event(
        _event(
            "checkout.session.completed",
            {"customer": {"id": "cus_456", "object": "customer"}, "metadata": {"firebaseUID": "user-2"}},
        )
    )
    assert event.subject_user_id == "user-2"
    assert event.billing_customer_ref == "cus_456"


def test_checkout_without_any_identifier_is_malformed():
    with pytest.raises(MalformedBillingEvent):
        normalize_stripe_event(_event("checkout.session.completed", {"mode": "subscription"}))


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("trialing", SubscriptionStatus.ACTIVE),
        ("past_due", SubscriptionStatus.INACTIVE),
        ("unpaid", SubscriptionStatus.INACTIVE),
        ("canceled", SubscriptionStatus.INACTIVE),
    ],
)
def test_subscription_updated_status_mapping(provider_status, expected):
    event = normalize_stripe_event(
        _event(
            "customer.subscription.updated",
            {"customer": "cus_123", "status": provider_status, "current_period_end": 1795046400},
        )
    )
    assert event.type is BillingEventType.SUBSCRIPTION_UPDATED
    assert event.status is expected
    assert event.provider_status == provider_status
    assert event.period_end == datetime.fromtimestamp(1795046400, tz=timezone.utc)


def test_subscription_period_end_falls_back_to_first_item():
    event = normalize_stripe_event(
        _event(
            "customer.subscription.updated",
            {
                "customer": "cus_123",
                "status": "active",
                "items": {"data": [{"current_period_end": 1795046400}]},
            },
        )
    )
    assert event.period_end == datetime.fromtimestamp(1795046400, tz=timezone.utc)


def test_subscription_deleted_is_always_a_downgrade():
    event = normalize_stripe_event(
        _event("customer.subscription.deleted", {"customer": "cus_123", "status": "canceled"})
    )
    assert event.type is BillingEventType.SUBSCRIPTION_DELETED
    assert event.status is SubscriptionStatus.INACTIVE
    assert event.billing_customer_ref == "cus_123"


def test_unsupported_event_types_are_ignored():
    assert normalize_stripe_event(_event("invoice.paid", {"customer": "cus_123"})) is None
