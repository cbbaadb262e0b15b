"""
Campaigns API
Campaign creation with contact loading, and the campaign state machine

    POST /campaigns/                      create + load contacts
    GET  /campaigns/{id}                  campaign with statistics
    GET  /campaigns/{id}/contacts         contacts (optional status filter)
    POST /campaigns/{id}/start|pause|resume|stop
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator

from campaign_engine.api.v1.dependencies import (
    get_campaign_service,
    require_tenant,
    to_http_exception,
)
from campaign_engine.domain.exceptions import CampaignEngineError
from campaign_engine.domain.models.campaign import CampaignState
from campaign_engine.domain.models.contact import ContactInput, ContactStatus
from campaign_engine.domain.services.campaign_service import CampaignService
from campaign_engine.domain.services.contact_store import (
    parse_contact_rows,
    parse_contacts_csv,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignCreateRequest(BaseModel):
    """
    Request body for creating a campaign.

    Contacts come either as CSV text (csv_text) or as rows (contacts).
    """
    name: str = Field(..., min_length=1, max_length=200)
    agent_id: str
    source_description: Optional[str] = Field(None, max_length=500)
    csv_text: Optional[str] = None
    contacts: Optional[List[ContactInput]] = None

    @model_validator(mode="after")
    def check_contact_source(self) -> "CampaignCreateRequest":
        if not self.csv_text and not self.contacts:
            raise ValueError("Provide contacts either as csv_text or as contacts rows")
        return self


@router.post("/", status_code=201)
async def create_campaign(
    body: CampaignCreateRequest,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Create a campaign in `created` state and load its contacts.

    Invalid rows are skipped and reported; a list without a single valid
    contact is rejected.
    """
    try:
        if body.csv_text:
            parsed = parse_contacts_csv(body.csv_text)
            source_type = "csv"
        else:
            parsed = parse_contact_rows(body.contacts)
            source_type = "manual"
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        campaign, loaded = await service.create_campaign(
            tenant_id=tenant_id,
            name=body.name,
            agent_id=body.agent_id,
            contacts=parsed.contacts,
            source_type=source_type,
            source_description=body.source_description,
        )

        return {
            "message": f"Campaign created with {loaded} contacts",
            "campaign": campaign.model_dump(mode="json"),
            "contacts_loaded": loaded,
            "total_rows": parsed.total_rows,
            "duplicates_skipped": parsed.duplicates_skipped,
            "errors": parsed.errors[:50],
        }

    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to create campaign: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """Get campaign details with contact and run statistics"""
    try:
        campaign = await service.get_campaign(tenant_id, campaign_id)
        stats = await service.get_statistics(campaign_id)
        return {"campaign": campaign.model_dump(mode="json"), "statistics": stats}
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{campaign_id}/contacts")
async def list_campaign_contacts(
    campaign_id: str,
    status: Optional[ContactStatus] = Query(None, description="Filter by contact status"),
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """List contacts for a campaign"""
    try:
        campaign = await service.get_campaign(tenant_id, campaign_id)
        store = service.contact_store
        contacts = await store.list_contacts(campaign.id, status.value if status else None)
        return {
            "contacts": [contact.model_dump(mode="json") for contact in contacts],
            "total": len(contacts),
        }
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to list contacts for campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{campaign_id}/start")
async def start_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """
    Start a campaign - enqueue one dial job per pending contact.

    A paused campaign can be started again; contacts that still have an
    unfinished job are not enqueued twice.
    """
    try:
        jobs_enqueued = await service.start(tenant_id, campaign_id)
        return {
            "message": f"Campaign {campaign_id} started with {jobs_enqueued} jobs enqueued",
            "jobs_enqueued": jobs_enqueued,
            "campaign": {"id": campaign_id, "state": CampaignState.RUNNING.value},
        }
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to start campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """Pause a running campaign. Calls already in progress continue."""
    try:
        campaign = await service.pause(tenant_id, campaign_id)
        return {
            "message": f"Campaign {campaign_id} paused",
            "campaign": {"id": campaign.id, "state": CampaignState.PAUSED.value},
        }
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to pause campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    try:
        campaign = await service.resume(tenant_id, campaign_id)
        return {
            "message": f"Campaign {campaign_id} resumed",
            "campaign": {"id": campaign.id, "state": CampaignState.RUNNING.value},
        }
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to resume campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{campaign_id}/stop")
async def stop_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service)
):
    """Stop a campaign and purge its waiting jobs"""
    try:
        result = await service.stop(tenant_id, campaign_id)
        return {
            "message": f"Campaign {campaign_id} stopped",
            "jobs_purged": result["jobs_purged"],
            "campaign": {"id": campaign_id, "state": result["state"]},
        }
    except CampaignEngineError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to stop campaign {campaign_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
