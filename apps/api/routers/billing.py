"""Billing router: entitlement projection, Stripe checkout and webhooks."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from config import settings
from routers.dependencies import AuthContext, ensure_user_scope, get_auth_context, get_ledger
from routers.rate_limit import rate_limit
from services.billing_client import BillingNotConfigured, BillingProviderError
from services.billing_events import (
    MalformedBillingEvent,
    WebhookVerificationError,
    normalize_stripe_event,
    verify_webhook,
)
from services.entitlements import (
    AccountNotFound,
    AlreadySubscribed,
    EntitlementLedger,
    NoBillingCustomer,
    UnresolvedUser,
    describe_entitlement,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    user_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    user_id: Optional[str] = None
    return_url: Optional[str] = None


def _app_url(path: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}{path}"


@router.get("/entitlement")
async def entitlement_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    ledger: EntitlementLedger = Depends(get_ledger),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        account = await ledger.get_account(scoped_user_id)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    return describe_entitlement(account)


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: EntitlementLedger = Depends(get_ledger),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        session = await ledger.start_checkout(
            scoped_user_id,
            success_url=request.success_url
            or _app_url("/dashboard/account?success=true&session_id={CHECKOUT_SESSION_ID}"),
            cancel_url=request.cancel_url or _app_url("/dashboard/account?canceled=true"),
        )
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except AlreadySubscribed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BillingNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return {"session_id": session.session_id, "url": session.url}


@router.post("/portal")
async def create_billing_portal_session(
    request: PortalRequest,
    _rate_limit: None = Depends(rate_limit("billing_portal", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: EntitlementLedger = Depends(get_ledger),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        url = await ledger.open_billing_portal(
            scoped_user_id,
            return_url=request.return_url or _app_url("/dashboard/account"),
        )
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except NoBillingCustomer as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except BillingNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return {"url": url}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    ledger: EntitlementLedger = Depends(get_ledger),
):
    """
    Receive Stripe events.
    Once the signature checks out the event is always acknowledged, even if no
    account matches, so Stripe does not keep redelivering it.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook")
        raise HTTPException(status_code=503, detail="Webhook secret not configured.")

    payload = await request.body()
    try:
        raw_event = verify_webhook(payload, request.headers.get("stripe-signature"), settings.STRIPE_WEBHOOK_SECRET)
    except WebhookVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

    try:
        event = normalize_stripe_event(raw_event)
    except MalformedBillingEvent as exc:
        logger.error("Malformed billing event %s: %s", raw_event.get("id"), exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if event is None:
        return {"received": True, "action": "ignored", "event_type": raw_event.get("type")}

    try:
        account = await ledger.apply_billing_event(event)
    except UnresolvedUser as exc:
        logger.error("Unresolved billing event, manual reconciliation needed: %s", exc.event.describe())
        return {"received": True, "action": "unresolved", "event_type": raw_event.get("type")}

    return {
        "received": True,
        "action": "applied",
        "event_type": raw_event.get("type"),
        "user_id": account.id,
        "plan_tier": account.plan_tier.value,
    }
