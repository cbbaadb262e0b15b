"""
Usage API
Current month usage, tier limits and pre-flight quota checks
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from campaign_engine.api.v1.dependencies import (
    get_usage_ledger,
    require_tenant,
    to_http_exception,
)
from campaign_engine.domain.exceptions import CampaignEngineError
from campaign_engine.domain.models.usage import UsageEstimate
from campaign_engine.domain.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


class UsageCheckRequest(BaseModel):
    """Request body for a quota pre-flight check"""
    estimated_tokens: int = Field(0, ge=0)
    estimated_duration_seconds: int = Field(0, ge=0)


@router.get("/current")
async def get_current_usage(
    tenant_id: str = Depends(require_tenant),
    ledger: UsageLedger = Depends(get_usage_ledger)
):
    """Sum of this month's usage buckets"""
    try:
        usage = await ledger.get_current_month_usage(tenant_id)
        return {"usage": usage.model_dump()}
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get usage for tenant {tenant_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/limits")
async def get_limits(
    tenant_id: str = Depends(require_tenant),
    ledger: UsageLedger = Depends(get_usage_ledger)
):
    """Tier limits with warnings at the configured usage threshold"""
    try:
        return await ledger.get_limits_with_warnings(tenant_id)
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get limits for tenant {tenant_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/check")
async def check_usage(
    body: UsageCheckRequest,
    tenant_id: str = Depends(require_tenant),
    ledger: UsageLedger = Depends(get_usage_ledger)
):
    """Would an operation of this size be allowed right now?"""
    try:
        result = await ledger.check_call_limit(
            tenant_id,
            UsageEstimate(tokens=body.estimated_tokens, duration_seconds=body.estimated_duration_seconds),
        )
        return result.model_dump(exclude={"limits"})
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Usage check failed for tenant {tenant_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
