"""Ledger Plan Routes

Endpoints:
- GET /api/plans - List plans (public)
- GET /api/plans/{plan_id} - Plan details (public)
"""

from fastapi import APIRouter, Query
from typing import List, Optional

from ledger.models.plans import Plan, PlanType
from ledger.services.plan_catalog import plan_catalog

router = APIRouter(prefix="/api/plans", tags=["Plans"])


@router.get("", response_model=List[Plan])
async def list_plans(
    active: bool = Query(True, description="Only active plans"),
    plan_type: Optional[PlanType] = Query(None),
):
    return await plan_catalog.list_plans(active_only=active, plan_type=plan_type)


@router.get("/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str):
    return await plan_catalog.get_plan(plan_id)
