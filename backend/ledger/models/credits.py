"""Ledger Credit Models

Quota names double as MongoDB field paths (`credits.{quota}`,
`usage.{quota}_used`), so they are restricted to lower-case identifiers.
"""

from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime, timezone
from enum import Enum
import re


QUOTA_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

DEFAULT_QUOTAS = ("seo_audits", "geo_audits", "gbp_audits", "ai_generations")

QUOTA_LABELS = {
    "seo_audits": "SEO Audit",
    "geo_audits": "Local SEO Audit",
    "gbp_audits": "GBP Audit",
    "ai_generations": "AI Generation",
}


def validate_quota_name(quota: str) -> str:
    """Return `quota` unchanged or raise ValueError."""
    if not isinstance(quota, str) or not QUOTA_NAME_PATTERN.match(quota):
        raise ValueError(f"Invalid quota name: {quota!r}")
    return quota


def validate_quota_map(values: Dict[str, int]) -> Dict[str, int]:
    for quota, amount in values.items():
        validate_quota_name(quota)
        if amount < 0:
            raise ValueError(f"Quota {quota} cannot be negative")
    return values


def quota_label(quota: str) -> str:
    return QUOTA_LABELS.get(quota, quota.replace("_", " ").title())


class CreditSource(str, Enum):
    """Where a consumed unit came from"""
    SUBSCRIPTION = "subscription"
    ADDON = "addon"
    NONE = "none"


class ConsumptionResult(BaseModel):
    granted: bool
    source: CreditSource
    quota: str

    @classmethod
    def denied(cls, quota: str) -> "ConsumptionResult":
        return cls(granted=False, source=CreditSource.NONE, quota=quota)


class UserCredits(BaseModel):
    """Addon balances for one user (never expire)"""
    user_id: str
    credits: Dict[str, int] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}

    def balance(self, quota: str) -> int:
        return max(0, int(self.credits.get(quota, 0)))


class QuotaSummary(BaseModel):
    available: int
    used: int
    remaining: int
    percentageUsed: int
    limit: int = 0
    addon: int = 0


class CreditSummary(BaseModel):
    """Entitlement view served to the dashboard"""
    user_id: str
    hasActiveSubscription: bool
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    billing_period: Optional[str] = None
    subscription_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    lastReset: Optional[datetime] = None
    credits: Dict[str, QuotaSummary] = Field(default_factory=dict)
