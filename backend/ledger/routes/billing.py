"""Ledger Billing Routes

Endpoints:
- POST /api/billing/checkout - Stripe Checkout session for a plan
- POST /api/billing/portal - Stripe Billing Portal session
- GET /api/billing/subscription - Current subscription
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional
import logging

from ledger.exceptions import PlanNotFoundError
from ledger.models.subscriptions import SubscriptionView
from ledger.routes.auth import CurrentUser, get_current_user
from ledger.services.billing_service import billing_service
from ledger.services.plan_catalog import plan_catalog
from ledger.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["Billing"])


class CheckoutRequest(BaseModel):
    plan_id: str


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    portal_url: str


class CurrentSubscriptionResponse(BaseModel):
    has_subscription: bool
    subscription: Optional[SubscriptionView] = None


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(data: CheckoutRequest, user: CurrentUser = Depends(get_current_user)):
    """Start a Stripe Checkout for a subscription or addon plan."""
    return await billing_service.create_checkout_session(user.user_id, data.plan_id)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(user: CurrentUser = Depends(get_current_user)):
    return await billing_service.create_portal_session(user.user_id)


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(user: CurrentUser = Depends(get_current_user)):
    subscription = await subscription_service.get_current(user.user_id)
    if not subscription:
        return CurrentSubscriptionResponse(has_subscription=False)

    plan = None
    if subscription.plan_id:
        try:
            plan = await plan_catalog.get_plan(subscription.plan_id, include_inactive=True)
        except PlanNotFoundError:
            logger.warning(f"Subscription {subscription.subscription_id} references missing plan {subscription.plan_id}")

    view = SubscriptionView(
        subscription_id=subscription.subscription_id,
        plan_id=subscription.plan_id,
        plan_name=plan.name if plan else None,
        billing_period=plan.billing_period.value if plan else None,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        trial_end=subscription.trial_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        usage=subscription.usage.model_dump(),
    )
    return CurrentSubscriptionResponse(has_subscription=True, subscription=view)
