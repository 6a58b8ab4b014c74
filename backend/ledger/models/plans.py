"""Ledger Plan Models

Plans are administrable catalog rows. Subscription plans carry monthly
`limits`; addon plans carry a one-time `credits` grant.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime, timezone
from enum import Enum
import uuid

from ledger.models.credits import validate_quota_map


class PlanType(str, Enum):
    SUBSCRIPTION = "subscription"
    ADDON = "addon"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class Plan(BaseModel):
    """Catalog entry"""
    plan_id: str = Field(default_factory=lambda: f"PLN-{uuid.uuid4().hex[:12].upper()}")
    name: str
    description: Optional[str] = None

    # Pricing (minor units)
    price: int = 0
    currency: str = "EUR"
    plan_type: PlanType = PlanType.SUBSCRIPTION
    billing_period: BillingPeriod = BillingPeriod.MONTHLY

    # Stripe references
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None

    # Entitlements
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, int] = Field(default_factory=dict)
    credits: Dict[str, int] = Field(default_factory=dict)

    # Display
    is_active: bool = True
    sort_order: int = 0
    is_popular: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}

    def is_addon(self) -> bool:
        return self.plan_type == PlanType.ADDON

    def limit_for(self, quota: str) -> int:
        return int(self.limits.get(quota, 0))

    def checkout_mode(self) -> str:
        return "payment" if self.billing_period == BillingPeriod.ONE_TIME else "subscription"


class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    price: int = Field(..., ge=0)
    currency: str = "EUR"
    plan_type: PlanType = PlanType.SUBSCRIPTION
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, int] = Field(default_factory=dict)
    credits: Dict[str, int] = Field(default_factory=dict)
    is_active: bool = True
    sort_order: int = 0
    is_popular: bool = False

    @field_validator("limits", "credits")
    @classmethod
    def _check_quotas(cls, v):
        return validate_quota_map(v)


class PlanUpdate(BaseModel):
    """Editable plan fields. Stripe ids are fixed once created."""
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    features: Optional[List[str]] = None
    limits: Optional[Dict[str, int]] = None
    credits: Optional[Dict[str, int]] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
    is_popular: Optional[bool] = None

    model_config = {"extra": "ignore"}

    @field_validator("limits", "credits")
    @classmethod
    def _check_quotas(cls, v):
        if v is not None:
            validate_quota_map(v)
        return v


def plan_document(plan: Plan) -> Dict:
    doc = plan.model_dump()
    doc["plan_type"] = plan.plan_type.value
    doc["billing_period"] = plan.billing_period.value
    return doc
