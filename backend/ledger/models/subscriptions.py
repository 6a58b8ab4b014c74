"""Ledger Subscription Models

A user has at most one non-terminal subscription at a time. Older records are
kept with a terminal status as history.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Iterable
from datetime import datetime, timezone
from enum import Enum
import uuid


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    LIFETIME = "lifetime"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


NON_TERMINAL_STATUSES = (
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.LIFETIME,
)
TERMINAL_STATUSES = (SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID)

NON_TERMINAL_VALUES = [s.value for s in NON_TERMINAL_STATUSES]


def usage_field(quota: str) -> str:
    return f"{quota}_used"


class SubscriptionUsage(BaseModel):
    """Rolling counters: `{quota}_used` keys plus the last reset boundary."""
    last_reset: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "allow"}

    def used(self, quota: str) -> int:
        return int((self.model_extra or {}).get(usage_field(quota), 0) or 0)

    def counter_fields(self) -> Iterable[str]:
        return [k for k in (self.model_extra or {}) if k.endswith("_used")]

    @classmethod
    def zeroed(cls, quotas: Iterable[str], last_reset: Optional[datetime] = None) -> "SubscriptionUsage":
        counters = {usage_field(q): 0 for q in quotas}
        return cls(last_reset=last_reset or datetime.now(timezone.utc), **counters)


class Subscription(BaseModel):
    """Subscription record"""
    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    plan_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    # Stripe references
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None  # None for one-time payments
    stripe_payment_intent_id: Optional[str] = None

    # Billing cycle
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    usage: SubscriptionUsage = Field(default_factory=SubscriptionUsage)

    # Provider `created` of the newest applied event; guards out-of-order delivery
    last_event_at: Optional[datetime] = None
    version: int = 0

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump()
        doc["status"] = self.status.value
        return doc


class SubscriptionView(BaseModel):
    """Current subscription as returned to the owner"""
    subscription_id: str
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    billing_period: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    usage: Dict[str, Any] = Field(default_factory=dict)
