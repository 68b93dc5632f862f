"""Entitlement ledger: plan tier, generation credits and billing reconciliation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from config import free_starting_credits
from services.entitlement_types import (
    BillingEvent,
    BillingEventType,
    CheckoutSession,
    PlanTier,
    SubscriptionStatus,
    UserAccount,
)

logger = logging.getLogger(__name__)


class EntitlementError(Exception):
    """Base class for ledger outcomes that are not storage failures."""


class InsufficientCredit(EntitlementError):
    """A FREE account has no generation credits left."""

    def __init__(self, account: UserAccount):
        super().__init__(f"User {account.id} has no generation credits remaining.")
        self.account = account


class AccountNotFound(EntitlementError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found.")
        self.user_id = user_id


class UnresolvedUser(EntitlementError):
    """A billing event did not match any account."""

    def __init__(self, event: BillingEvent):
        super().__init__(
            "No user matches billing event "
            f"(user_id={event.subject_user_id}, customer={event.billing_customer_ref})."
        )
        self.event = event


class AlreadySubscribed(EntitlementError):
    pass


class NoBillingCustomer(EntitlementError):
    pass


def can_afford(account: UserAccount) -> bool:
    """Return whether ``account`` may start one costed generation now."""
    if account.plan_tier is PlanTier.PRO:
        return True
    return account.credit_balance > 0


def describe_entitlement(account: UserAccount) -> Dict[str, Any]:
    """Read-only projection used for UI gating."""
    unlimited = account.plan_tier is PlanTier.PRO
    balance = None if unlimited else max(account.credit_balance, 0)
    if unlimited:
        status_text = "Unlimited generations"
    elif balance == 0:
        status_text = "Upgrade to Pro to continue"
    else:
        status_text = f"{balance} credit{'' if balance == 1 else 's'} remaining"
    return {
        "plan_tier": account.plan_tier.value,
        "credit_balance": balance,
        "unlimited": unlimited,
        "can_generate": can_afford(account),
        "status_text": status_text,
        "subscription_status": account.subscription_status,
        "has_billing_customer": bool(account.billing_customer_ref),
    }


class EntitlementLedger:
    """Single source of truth for who may run a costed operation.

    ``store`` persists accounts (see ``services.account_store``) and
    ``billing`` talks to the payment provider (see ``services.billing_client``).
    Both are injected so tests can substitute in-memory fakes.
    """

    def __init__(self, store, billing=None):
        self.store = store
        self.billing = billing

    async def get_account(self, user_id: str) -> UserAccount:
        account = await self.store.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    async def register(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserAccount:
        """Create a FREE account with the starting allotment; existing accounts are returned as-is."""
        account, created = await self.store.create_if_missing(
            user_id,
            starting_credits=free_starting_credits(),
            email=email,
            display_name=display_name,
        )
        if created:
            logger.info("Registered user %s with %s credits", user_id, account.credit_balance)
        return account

    async def can_afford(self, user_id: str) -> bool:
        return can_afford(await self.get_account(user_id))

    async def ensure_can_afford(self, user_id: str) -> UserAccount:
        account = await self.get_account(user_id)
        if not can_afford(account):
            raise InsufficientCredit(account)
        return account

    async def consume_credit(self, user_id: str) -> UserAccount:
        """Charge one credit after a costed operation succeeded.

        PRO accounts are never charged. The decrement itself happens in the
        store as a guarded atomic update, so a balance already at zero is
        rejected even if an earlier affordability check passed.
        """
        account = await self.get_account(user_id)
        if account.plan_tier is PlanTier.PRO:
            return account

        if await self.store.decrement_credit(user_id):
            return await self.get_account(user_id)

        account = await self.get_account(user_id)
        if account.plan_tier is PlanTier.PRO:
            return account
        logger.info("Credit consumption rejected for user %s: balance exhausted", user_id)
        raise InsufficientCredit(account)

    async def resolve_event_subject(self, event: BillingEvent) -> UserAccount:
        by_user = (self.store.get, event.subject_user_id)
        by_customer = (self.store.find_by_billing_customer_ref, event.billing_customer_ref)
        if event.type is BillingEventType.CHECKOUT_COMPLETED:
            lookups = [by_user, by_customer]
        else:
            lookups = [by_customer, by_user]

        for lookup, key in lookups:
            if not key:
                continue
            account = await lookup(key)
            if account is not None:
                return account
        raise UnresolvedUser(event)

    async def apply_billing_event(self, event: BillingEvent) -> UserAccount:
        """Apply a normalized billing event to the matching account.

        Effects are plain field assignments, so replaying an event leaves
        state unchanged. Events are applied last-write-wins in arrival order.
        Only a completed checkout records the billing customer reference;
        subscription events never rebind it.
        """
        account = await self.resolve_event_subject(event)

        customer_ref = None
        if event.type is BillingEventType.CHECKOUT_COMPLETED:
            target = PlanTier.PRO
            customer_ref = event.billing_customer_ref
        elif event.type is BillingEventType.SUBSCRIPTION_UPDATED:
            target = PlanTier.PRO if event.status is SubscriptionStatus.ACTIVE else PlanTier.FREE
        else:
            target = PlanTier.FREE

        await self.store.assign_plan_tier(
            account.id,
            target,
            refill_credits=free_starting_credits(),
            billing_customer_ref=customer_ref,
            subscription_status=event.provider_status,
            subscription_period_end=event.period_end,
        )
        updated = await self.get_account(account.id)
        logger.info(
            "Applied %s to user %s: %s -> %s",
            event.type.value,
            account.id,
            account.plan_tier.value,
            updated.plan_tier.value,
        )
        return updated

    async def start_checkout(
        self,
        user_id: str,
        *,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Open a Pro subscription checkout, creating the billing customer on first use."""
        account = await self.get_account(user_id)
        if account.plan_tier is PlanTier.PRO and account.subscription_status != "canceled":
            raise AlreadySubscribed(f"User {user_id} is already on the Pro plan.")

        customer_ref = account.billing_customer_ref
        if not customer_ref:
            customer_ref = await self.billing.create_customer(user_id=user_id, email=account.email)
            await self.store.set_billing_customer_ref(user_id, customer_ref)
            logger.info("Created billing customer %s for user %s", customer_ref, user_id)

        return await self.billing.create_checkout_session(
            customer_ref=customer_ref,
            user_id=user_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )

    async def open_billing_portal(self, user_id: str, *, return_url: str) -> str:
        account = await self.get_account(user_id)
        if not account.billing_customer_ref:
            raise NoBillingCustomer(f"User {user_id} has no billing account yet.")
        return await self.billing.create_portal_session(
            customer_ref=account.billing_customer_ref,
            return_url=return_url,
        )
