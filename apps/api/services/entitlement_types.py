"""Entitlement ledger contracts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class GenerationKind(str, Enum):
    PERSONA_IMAGE = "persona-image"
    PERSONA_LORE = "persona-lore"
    STORY_CHAPTER = "story-chapter"
    CHAPTER_IMAGE_REGENERATION = "chapter-image-regeneration"
    LORE_REGENERATION = "lore-regeneration"


@dataclass(frozen=True)
class UserAccount:
    """Point-in-time snapshot of a user's entitlement state."""

    id: str
    plan_tier: PlanTier
    credit_balance: int
    billing_customer_ref: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_period_end: Optional[datetime] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class BillingEvent:
    """Provider-neutral billing notification."""

    type: BillingEventType
    subject_user_id: Optional[str] = None
    billing_customer_ref: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    provider_status: Optional[str] = None
    period_end: Optional[datetime] = None
    event_id: Optional[str] = None

    def describe(self) -> dict:
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "subject_user_id": self.subject_user_id,
            "billing_customer_ref": self.billing_customer_ref,
            "status": self.status.value if self.status else None,
            "provider_status": self.provider_status,
            "period_end": self.period_end.isoformat() if self.period_end else None,
        }


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]
