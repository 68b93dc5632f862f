"""Stripe customer, checkout and billing-portal calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import stripe

from config import settings
from services.entitlement_types import CheckoutSession

logger = logging.getLogger(__name__)


class BillingNotConfigured(RuntimeError):
    """Raised when Stripe keys or the Pro price are missing."""


class BillingProviderError(RuntimeError):
    """Raised when Stripe rejects a request."""


class StripeBillingClient:
    """Thin async wrapper over the Stripe SDK for the Pro subscription."""

    def __init__(self, api_key: Optional[str] = None, price_id: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.price_id = price_id if price_id is not None else settings.STRIPE_PRO_PRICE_ID

    def _require_key(self) -> str:
        if not self.api_key:
            raise BillingNotConfigured("Stripe is not configured (STRIPE_SECRET_KEY).")
        return self.api_key

    async def _call(self, func, **params):
        try:
            return await asyncio.to_thread(func, api_key=self._require_key(), **params)
        except stripe.StripeError as exc:
            logger.exception("Stripe request failed: %s", exc)
            raise BillingProviderError(f"Stripe error: {exc}") from exc

    async def create_customer(self, *, user_id: str, email: Optional[str] = None) -> str:
        params = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        customer = await self._call(stripe.Customer.create, **params)
        return str(customer.id)

    async def create_checkout_session(
        self,
        *,
        customer_ref: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        if not self.price_id:
            raise BillingNotConfigured("Stripe Pro price is not configured (STRIPE_PRO_PRICE_ID).")
        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_ref,
            line_items=[{"price": self.price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"userId": user_id},
            subscription_data={"metadata": {"userId": user_id}},
        )
        return CheckoutSession(session_id=str(session.id), url=getattr(session, "url", None))

    async def create_portal_session(self, *, customer_ref: str, return_url: str) -> str:
        portal = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return str(portal.url)
