"""Ledger Credit Routes

Endpoints:
- GET /api/credits - Entitlement summary per quota
- POST /api/credits/consume - Consume one unit of a quota

Feature routes guard metered actions with `Depends(require_credit("seo_audits"))`.
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import logging

from ledger.models.credits import ConsumptionResult, CreditSummary, QuotaSummary, validate_quota_name
from ledger.routes.auth import CurrentUser, get_current_user
from ledger.services.consumption_gate import consumption_gate, exhausted_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["Credits"])


class ConsumeRequest(BaseModel):
    quota: str


async def _denied_payload(user_id: str, quota: str) -> dict:
    summary = await consumption_gate.get_credit_summary(user_id, quotas=[quota])
    quota_summary = summary.credits.get(quota) or QuotaSummary(available=0, used=0, remaining=0, percentageUsed=0)
    return exhausted_payload(quota, quota_summary)


def require_credit(quota: str):
    """Dependency factory: consume one unit of `quota` or answer 403."""
    validate_quota_name(quota)

    async def _dependency(user: CurrentUser = Depends(get_current_user)) -> ConsumptionResult:
        result = await consumption_gate.try_consume(user.user_id, quota)
        if not result.granted:
            raise HTTPException(status_code=403, detail=await _denied_payload(user.user_id, quota))
        return result

    return _dependency


@router.get("", response_model=CreditSummary)
async def get_credits(user: CurrentUser = Depends(get_current_user)):
    """Available, used and remaining units per quota.

    available = plan limit + addon balance, remaining = max(0, available - used).
    """
    return await consumption_gate.get_credit_summary(user.user_id)


@router.post("/consume", response_model=ConsumptionResult)
async def consume_credit(data: ConsumeRequest, user: CurrentUser = Depends(get_current_user)):
    try:
        validate_quota_name(data.quota)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await consumption_gate.try_consume(user.user_id, data.quota)
    if not result.granted:
        return JSONResponse(status_code=403, content=await _denied_payload(user.user_id, data.quota))
    return result
