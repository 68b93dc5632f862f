"""SQL-backed storage for user entitlement state.

Every mutation is a single point-update of named columns so concurrent
requests never lose each other's writes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.entitlement_types import PlanTier, UserAccount


_ACCOUNT_COLUMNS = (
    User.id,
    User.plan_tier,
    User.credit_balance,
    User.billing_customer_ref,
    User.subscription_status,
    User.subscription_period_end,
    User.email,
    User.display_name,
)


def _to_account(row: Any) -> UserAccount:
    return UserAccount(
        id=row.id,
        plan_tier=PlanTier(row.plan_tier or PlanTier.FREE.value),
        credit_balance=int(row.credit_balance or 0),
        billing_customer_ref=row.billing_customer_ref,
        subscription_status=row.subscription_status,
        subscription_period_end=row.subscription_period_end,
        email=row.email,
        display_name=row.display_name,
    )


class SqlAccountStore:
    """Account persistence on top of an async SQLAlchemy session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> Optional[UserAccount]:
        result = await self.db.execute(select(*_ACCOUNT_COLUMNS).where(User.id == user_id))
        row = result.first()
        return _to_account(row) if row else None

    async def find_by_billing_customer_ref(self, billing_customer_ref: str) -> Optional[UserAccount]:
        result = await self.db.execute(
            select(*_ACCOUNT_COLUMNS)
            .where(User.billing_customer_ref == billing_customer_ref)
            .order_by(User.created_at.asc())
            .limit(1)
        )
        row = result.first()
        return _to_account(row) if row else None

    async def create_if_missing(
        self,
        user_id: str,
        *,
        starting_credits: int,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Tuple[UserAccount, bool]:
        existing = await self.get(user_id)
        if existing:
            return existing, False

        self.db.add(
            User(
                id=user_id,
                email=email,
                display_name=display_name,
                plan_tier=PlanTier.FREE.value,
                credit_balance=max(int(starting_credits), 0),
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # Concurrent registration of the same id already created the row.
            await self.db.rollback()
            return await self.get(user_id), False
        return await self.get(user_id), True

    async def decrement_credit(self, user_id: str) -> bool:
        """Take one credit from a FREE account with a positive balance."""
        result = await self.db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.plan_tier == PlanTier.FREE.value,
                User.credit_balance > 0,
            )
            .values(credit_balance=User.credit_balance - 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def assign_plan_tier(
        self,
        user_id: str,
        plan_tier: PlanTier,
        *,
        refill_credits: Optional[int] = None,
        billing_customer_ref: Optional[str] = None,
        subscription_status: Optional[str] = None,
        subscription_period_end: Optional[datetime] = None,
    ) -> bool:
        """Set the plan tier; a PRO -> FREE move also restores ``refill_credits``."""
        values: Dict[str, Any] = {"plan_tier": plan_tier.value}
        if plan_tier is PlanTier.FREE and refill_credits is not None:
            values["credit_balance"] = case(
                (User.plan_tier == PlanTier.PRO.value, max(int(refill_credits), 0)),
                else_=User.credit_balance,
            )
        if billing_customer_ref:
            values["billing_customer_ref"] = billing_customer_ref
        if subscription_status:
            values["subscription_status"] = subscription_status
        if subscription_period_end is not None:
            values["subscription_period_end"] = subscription_period_end

        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def set_billing_customer_ref(self, user_id: str, billing_customer_ref: str) -> bool:
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(billing_customer_ref=billing_customer_ref)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1
