"""Ledger Admin Routes

Endpoints (admin and super_admin only):
- POST /api/admin/plans - Create plan
- PUT /api/admin/plans/{plan_id} - Update plan (Stripe ids are fixed)
- DELETE /api/admin/plans/{plan_id} - Deactivate plan (refused while subscribed)
- GET /api/admin/subscriptions - List subscriptions
- GET /api/admin/subscriptions/{subscription_id}/audit - Audit trail
"""

from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
import logging

from ledger.exceptions import SubscriptionNotFoundError
from ledger.models.plans import Plan, PlanCreate, PlanUpdate, plan_document
from ledger.models.subscriptions import SubscriptionStatus
from ledger.routes.auth import CurrentUser, require_admin
from ledger.services.plan_catalog import plan_catalog
from ledger.services.subscription_service import subscription_service
from models import AuditAction
from utils.audit import create_audit_log, get_audit_logs_for_resource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin Billing"])


@router.post("/plans", response_model=Plan, status_code=201)
async def create_plan(data: PlanCreate, admin: CurrentUser = Depends(require_admin)):
    try:
        plan = await plan_catalog.create_plan(data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await create_audit_log(
        action=AuditAction.PLAN_CREATED,
        actor_id=admin.user_id,
        resource_type="plan",
        resource_id=plan.plan_id,
        after_state=plan_document(plan),
    )
    return plan


@router.put("/plans/{plan_id}", response_model=Plan)
async def update_plan(plan_id: str, data: PlanUpdate, admin: CurrentUser = Depends(require_admin)):
    before = await plan_catalog.get_plan(plan_id, include_inactive=True)
    try:
        plan = await plan_catalog.update_plan(plan_id, data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await create_audit_log(
        action=AuditAction.PLAN_UPDATED,
        actor_id=admin.user_id,
        resource_type="plan",
        resource_id=plan_id,
        before_state=plan_document(before),
        after_state=plan_document(plan),
    )
    return plan


@router.delete("/plans/{plan_id}", response_model=Plan)
async def delete_plan(plan_id: str, admin: CurrentUser = Depends(require_admin)):
    plan = await plan_catalog.delete_plan(plan_id)
    await create_audit_log(
        action=AuditAction.PLAN_DEACTIVATED,
        actor_id=admin.user_id,
        resource_type="plan",
        resource_id=plan_id,
    )
    return plan


@router.get("/subscriptions")
async def list_subscriptions(
    status: Optional[SubscriptionStatus] = Query(None),
    plan_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: CurrentUser = Depends(require_admin),
):
    return await subscription_service.list_subscriptions(
        status=status.value if status else None,
        plan_id=plan_id,
        user_id=user_id,
        page=page,
        limit=limit,
    )


@router.get("/subscriptions/{subscription_id}/audit")
async def get_subscription_audit(subscription_id: str, admin: CurrentUser = Depends(require_admin)):
    if not await subscription_service.get(subscription_id):
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    logs = await get_audit_logs_for_resource("subscription", subscription_id)
    return {"subscription_id": subscription_id, "audit_logs": logs}
