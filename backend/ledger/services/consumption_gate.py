"""Ledger Consumption Gate

Decides, before a metered action runs, whether one unit may be consumed and
takes it atomically: subscription allowance first, then addon balance.
Exhaustion is an ordinary denied result, not an exception. A granted unit is
never refunded if the downstream action fails.
"""

from datetime import datetime, timezone
from typing import Optional, Iterable
import logging

from ledger.exceptions import PlanNotFoundError
from ledger.models.credits import (
    ConsumptionResult,
    CreditSource,
    CreditSummary,
    DEFAULT_QUOTAS,
    QuotaSummary,
    quota_label,
    validate_quota_name,
)
from ledger.models.plans import Plan
from ledger.models.subscriptions import Subscription
from ledger.services import subscription_state as state
from ledger.services.credit_ledger import credit_ledger
from ledger.services.plan_catalog import plan_catalog
from ledger.services.subscription_service import subscription_service

logger = logging.getLogger(__name__)

# Reset races are resolved by re-reading; more than this means the record keeps moving
MAX_ALLOWANCE_ATTEMPTS = 3


class ConsumptionGate:
    async def try_consume(self, user_id: str, quota: str, now: Optional[datetime] = None) -> ConsumptionResult:
        validate_quota_name(quota)
        now = now or datetime.now(timezone.utc)

        if await self._consume_allowance(user_id, quota, now):
            logger.info(f"CONSUME_GRANTED user_id={user_id} quota={quota} source=subscription")
            return ConsumptionResult(granted=True, source=CreditSource.SUBSCRIPTION, quota=quota)

        if await credit_ledger.consume_addon(user_id, quota):
            logger.info(f"CONSUME_GRANTED user_id={user_id} quota={quota} source=addon")
            return ConsumptionResult(granted=True, source=CreditSource.ADDON, quota=quota)

        logger.info(f"CONSUME_DENIED user_id={user_id} quota={quota}")
        return ConsumptionResult.denied(quota)

    async def _consume_allowance(self, user_id: str, quota: str, now: datetime) -> bool:
        for _ in range(MAX_ALLOWANCE_ATTEMPTS):
            subscription = await subscription_service.get_current(user_id)
            if subscription is None or not state.allowance_usable(subscription, now):
                return False
            if not subscription.plan_id:
                # Minimal record from an early update; its plan is not known yet
                return False

            plan = await plan_catalog.get_plan(subscription.plan_id, include_inactive=True)
            subscription = await subscription_service.ensure_usage_current(subscription, plan, now)

            limit = plan.limit_for(quota)
            if subscription.usage.used(quota) >= limit:
                return False
            if await subscription_service.increment_usage(subscription, quota, limit):
                return True

            # Guard failed: either the allowance ran out concurrently or a reset moved last_reset
            fresh = await subscription_service.get(subscription.subscription_id)
            if fresh is None or fresh.usage.last_reset == subscription.usage.last_reset:
                return False
        return False

    async def get_credit_summary(
        self,
        user_id: str,
        quotas: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> CreditSummary:
        """Entitlement view. A due reset is projected without being written."""
        now = now or datetime.now(timezone.utc)
        subscription = await subscription_service.get_current(user_id)
        plan: Optional[Plan] = None
        if subscription and subscription.plan_id:
            try:
                plan = await plan_catalog.get_plan(subscription.plan_id, include_inactive=True)
            except PlanNotFoundError:
                logger.warning(f"Subscription {subscription.subscription_id} references missing plan {subscription.plan_id}")

        wallet = await credit_ledger.get_credits(user_id)
        names = list(quotas) if quotas else list(DEFAULT_QUOTAS)
        for extra in list((plan.limits if plan else {}).keys()) + list(wallet.credits.keys()):
            if extra not in names:
                names.append(extra)

        usable = bool(subscription and plan and state.allowance_usable(subscription, now))
        last_reset = None
        reset_due = False
        if subscription and plan:
            last_reset = subscription.usage.last_reset
            boundary = state.usage_reset_boundary(last_reset, plan.billing_period, now)
            if boundary is not None:
                reset_due = True
                last_reset = boundary

        summary = CreditSummary(
            user_id=user_id,
            hasActiveSubscription=usable,
            plan_id=plan.plan_id if plan else None,
            plan_name=plan.name if plan else None,
            billing_period=plan.billing_period.value if plan else None,
            subscription_status=subscription.status.value if subscription else None,
            current_period_end=subscription.current_period_end if subscription else None,
            cancel_at_period_end=subscription.cancel_at_period_end if subscription else False,
            lastReset=last_reset,
        )
        for quota in names:
            limit = plan.limit_for(quota) if usable else 0
            used = 0 if (reset_due or not usable) else subscription.usage.used(quota)
            addon = wallet.balance(quota)
            summary.credits[quota] = _quota_summary(limit, used, addon)
        return summary


def _quota_summary(limit: int, used: int, addon: int) -> QuotaSummary:
    available = limit + addon
    remaining = max(0, available - used)
    percentage = round(used / available * 100) if available > 0 else 0
    return QuotaSummary(
        available=available,
        used=used,
        remaining=remaining,
        percentageUsed=percentage,
        limit=limit,
        addon=addon,
    )


def exhausted_payload(quota: str, summary: QuotaSummary) -> dict:
    """403 body for a denied consumption."""
    return {
        "error": "INSUFFICIENT_CREDITS",
        "message": f"Insufficient {quota_label(quota)} credits. Please upgrade your plan or purchase addon credits.",
        "credit_type": quota,
        "available": summary.available,
        "used": summary.used,
        "limit": summary.limit,
        "addon_credits": summary.addon,
    }


# Global instance
consumption_gate = ConsumptionGate()
