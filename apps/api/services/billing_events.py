"""Stripe webhook verification and event normalization."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from services.entitlement_types import BillingEvent, BillingEventType, SubscriptionStatus

logger = logging.getLogger(__name__)

ACTIVE_PROVIDER_STATUSES = {"active", "trialing"}


class WebhookVerificationError(ValueError):
    """Raised when an inbound webhook cannot be authenticated."""


class MalformedBillingEvent(ValueError):
    """Raised when a recognized event lacks the identifiers it needs."""


def verify_webhook(payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the decoded event."""
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Webhook payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise WebhookVerificationError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookVerificationError("Webhook payload is not a JSON object")
    return event


def _ref(value: Any) -> Optional[str]:
    # Stripe sends either an id string or an expanded object.
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value or "").strip()
    return text or None


def _metadata_user_id(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        return None
    for key in ("userId", "user_id", "firebaseUID"):
        value = _ref(metadata.get(key))
        if value:
            return value
    return None


def _period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    raw = obj.get("current_period_end")
    if raw is None:
        items = (obj.get("items") or {}).get("data") or []
        if items and isinstance(items[0], dict):
            raw = items[0].get("current_period_end")
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring unparseable current_period_end=%r", raw)
        return None


def normalize_stripe_event(event: Dict[str, Any]) -> Optional[BillingEvent]:
    """Map a Stripe event onto a ``BillingEvent``; unsupported types return None."""
    event_type = str(event.get("type") or "")
    event_id = _ref(event.get("id"))
    obj = (event.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict):
        raise MalformedBillingEvent(f"Event {event_id} has no data object")

    if event_type == "checkout.session.completed":
        user_id = _ref(obj.get("client_reference_id")) or _metadata_user_id(obj)
        customer_ref = _ref(obj.get("customer"))
        if not user_id and not customer_ref:
            raise MalformedBillingEvent(f"Checkout session in event {event_id} has no user or customer")
        return BillingEvent(
            type=BillingEventType.CHECKOUT_COMPLETED,
            subject_user_id=user_id,
            billing_customer_ref=customer_ref,
            event_id=event_id,
        )

    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        customer_ref = _ref(obj.get("customer"))
        user_id = _metadata_user_id(obj)
        if not customer_ref and not user_id:
            raise MalformedBillingEvent(f"Subscription in event {event_id} has no customer")

        provider_status = str(obj.get("status") or "").strip().lower() or None
        if event_type == "customer.subscription.deleted":
            return BillingEvent(
                type=BillingEventType.SUBSCRIPTION_DELETED,
                subject_user_id=user_id,
                billing_customer_ref=customer_ref,
                status=SubscriptionStatus.INACTIVE,
                provider_status=provider_status or "canceled",
                period_end=_period_end(obj),
                event_id=event_id,
            )

        status = (
            SubscriptionStatus.ACTIVE
            if provider_status in ACTIVE_PROVIDER_STATUSES
            else SubscriptionStatus.INACTIVE
        )
        return BillingEvent(
            type=BillingEventType.SUBSCRIPTION_UPDATED,
            subject_user_id=user_id,
            billing_customer_ref=customer_ref,
            status=status,
            provider_status=provider_status,
            period_end=_period_end(obj),
            event_id=event_id,
        )

    logger.info("Unhandled billing event type %s (%s)", event_type, event_id)
    return None
