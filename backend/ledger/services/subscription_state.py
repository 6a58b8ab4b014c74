"""Subscription state transitions.

Pure functions over (current record, normalized provider event). Each returns
the `$set` change set to persist, or None when the event must not touch the
record. Persistence lives in subscription_service.
"""

import calendar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ledger.models.events import CheckoutCompleted, InvoiceEvent, SubscriptionChanged
from ledger.models.plans import BillingPeriod, Plan
from ledger.models.subscriptions import (
    Subscription,
    SubscriptionStatus,
    SubscriptionUsage,
    TERMINAL_STATUSES,
)


PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIAL,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
}

# Stripe has not finished the first payment yet; nothing to reconcile
UNCHANGED_PROVIDER_STATUSES = {"incomplete"}

PERIOD_MONTHS = {
    BillingPeriod.MONTHLY: 1,
    BillingPeriod.YEARLY: 12,
    BillingPeriod.ONE_TIME: 1,
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Map a Stripe subscription status. None means "leave status unchanged"."""
    if not provider_status or provider_status in UNCHANGED_PROVIDER_STATUSES:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status, SubscriptionStatus.CANCELED)


def initial_status(checkout: CheckoutCompleted) -> SubscriptionStatus:
    if checkout.trial_end is not None:
        return SubscriptionStatus.TRIAL
    if checkout.stripe_subscription_id:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.LIFETIME


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def usage_reset_boundary(last_reset: datetime, billing_period: BillingPeriod, now: datetime) -> Optional[datetime]:
    """Latest period boundary <= now, or None while the current period runs."""
    step = PERIOD_MONTHS.get(billing_period, 1)
    last_reset = as_utc(last_reset)
    now = as_utc(now)
    periods = 1
    if add_months(last_reset, step) > now:
        return None
    while add_months(last_reset, step * (periods + 1)) <= now:
        periods += 1
    return add_months(last_reset, step * periods)


def is_stale(current: Subscription, created: datetime) -> bool:
    return current.last_event_at is not None and as_utc(created) < as_utc(current.last_event_at)


def allowance_usable(subscription: Subscription, now: datetime) -> bool:
    """Whether the subscription's own monthly allowance may be drawn from."""
    now = as_utc(now)
    if subscription.status == SubscriptionStatus.TRIAL:
        trial_end = as_utc(subscription.trial_end)
        if trial_end is None or trial_end <= now:
            return False
    elif subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.LIFETIME):
        return False
    period_end = as_utc(subscription.current_period_end)
    if subscription.cancel_at_period_end and period_end is not None and period_end <= now:
        return False
    return True


def new_subscription(checkout: CheckoutCompleted, plan: Plan, status: Optional[SubscriptionStatus] = None) -> Subscription:
    status = status or initial_status(checkout)
    record = Subscription(
        user_id=checkout.user_id,
        plan_id=plan.plan_id,
        status=status,
        stripe_customer_id=checkout.customer_id,
        stripe_subscription_id=checkout.stripe_subscription_id,
        stripe_payment_intent_id=checkout.payment_intent_id,
        current_period_start=checkout.current_period_start,
        current_period_end=checkout.current_period_end,
        trial_end=checkout.trial_end,
        cancel_at_period_end=checkout.cancel_at_period_end,
        usage=SubscriptionUsage.zeroed(plan.limits.keys()),
        last_event_at=checkout.created,
    )
    if status in TERMINAL_STATUSES:
        record.canceled_at = datetime.now(timezone.utc)
    return record


def on_checkout_for_existing(current: Subscription, checkout: CheckoutCompleted, plan: Plan) -> Optional[Dict[str, Any]]:
    """Checkout arriving for a record that an earlier-delivered event already created."""
    if current.is_terminal():
        return None
    changes: Dict[str, Any] = {
        "user_id": checkout.user_id,
        "plan_id": plan.plan_id,
        "stripe_customer_id": checkout.customer_id or current.stripe_customer_id,
        "stripe_payment_intent_id": checkout.payment_intent_id or current.stripe_payment_intent_id,
    }
    if not is_stale(current, checkout.created):
        changes.update({
            "status": initial_status(checkout).value,
            "current_period_start": checkout.current_period_start,
            "current_period_end": checkout.current_period_end,
            "trial_end": checkout.trial_end,
            "cancel_at_period_end": checkout.cancel_at_period_end,
            "last_event_at": checkout.created,
        })
    for quota in plan.limits:
        field = f"{quota}_used"
        if field not in (current.usage.model_extra or {}):
            changes[f"usage.{field}"] = 0
    return changes


def on_subscription_updated(current: Subscription, event: SubscriptionChanged) -> Optional[Dict[str, Any]]:
    if current.is_terminal() or is_stale(current, event.created):
        return None
    changes: Dict[str, Any] = {"last_event_at": event.created}
    if event.cancel_at_period_end != current.cancel_at_period_end:
        changes["cancel_at_period_end"] = event.cancel_at_period_end
    if event.current_period_start is not None:
        changes["current_period_start"] = event.current_period_start
    if event.current_period_end is not None:
        changes["current_period_end"] = event.current_period_end
    if event.trial_end is not None or current.trial_end is not None:
        changes["trial_end"] = event.trial_end
    if event.customer_id:
        changes["stripe_customer_id"] = event.customer_id
    status = map_provider_status(event.provider_status)
    if status is not None and status != current.status:
        changes["status"] = status.value
        if status in TERMINAL_STATUSES:
            changes["canceled_at"] = event.canceled_at or event.created
    return changes


def on_subscription_deleted(current: Subscription, event: SubscriptionChanged) -> Optional[Dict[str, Any]]:
    # A deletion is final even when it is older than the last applied update
    if current.is_terminal():
        return None
    changes: Dict[str, Any] = {
        "status": SubscriptionStatus.CANCELED.value,
        "canceled_at": event.canceled_at or event.created,
    }
    if not is_stale(current, event.created):
        changes["last_event_at"] = event.created
    return changes


def on_payment_succeeded(current: Subscription, event: InvoiceEvent) -> Optional[Dict[str, Any]]:
    if current.is_terminal() or is_stale(current, event.created):
        return None
    changes: Dict[str, Any] = {"last_event_at": event.created}
    if current.status == SubscriptionStatus.PAST_DUE:
        changes["status"] = SubscriptionStatus.ACTIVE.value
    return changes


def on_payment_failed(current: Subscription, event: InvoiceEvent) -> Optional[Dict[str, Any]]:
    if current.is_terminal() or is_stale(current, event.created):
        return None
    changes: Dict[str, Any] = {"last_event_at": event.created}
    if current.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        changes["status"] = SubscriptionStatus.PAST_DUE.value
    return changes


def on_period_lapsed(current: Subscription, now: datetime) -> Optional[Dict[str, Any]]:
    """Soft-canceled record whose period ended without a superseding renewal."""
    if current.is_terminal() or current.status == SubscriptionStatus.LIFETIME:
        return None
    period_end = as_utc(current.current_period_end)
    if not current.cancel_at_period_end or period_end is None or period_end > as_utc(now):
        return None
    return {
        "status": SubscriptionStatus.CANCELED.value,
        "canceled_at": period_end,
    }


def minimal_subscription(event: SubscriptionChanged, user_id: str, plan: Optional[Plan], status: SubscriptionStatus) -> Subscription:
    """Record built from an update/delete that arrived before its checkout."""
    quotas = plan.limits.keys() if plan else []
    record = Subscription(
        user_id=user_id,
        plan_id=plan.plan_id if plan else None,
        status=status,
        stripe_customer_id=event.customer_id,
        stripe_subscription_id=event.stripe_subscription_id,
        current_period_start=event.current_period_start,
        current_period_end=event.current_period_end,
        trial_end=event.trial_end,
        cancel_at_period_end=event.cancel_at_period_end,
        usage=SubscriptionUsage.zeroed(quotas),
        last_event_at=event.created,
    )
    if status in TERMINAL_STATUSES:
        record.canceled_at = event.canceled_at or event.created
    return record
