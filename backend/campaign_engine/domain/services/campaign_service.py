"""
Campaign Service
Campaign lifecycle state machine

    created -> running <-> paused -> stopped | completed

stopped and completed are terminal. Each transition is scoped to the
campaign's own queue partition.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from supabase import Client

from campaign_engine.core.config import ConfigManager
from campaign_engine.domain.exceptions import (
    NotFoundError,
    PreconditionFailedError,
    ConfigMissingError,
    QuotaExceededError,
)
from campaign_engine.domain.models.campaign import Campaign, CampaignState
from campaign_engine.domain.models.contact import ContactInput, ContactStatus
from campaign_engine.domain.services.contact_store import ContactStore
from campaign_engine.domain.services.credential_service import CredentialService
from campaign_engine.domain.services.queue_service import CampaignQueueService
from campaign_engine.domain.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class CampaignService:
    """
    Campaign state transitions.

    Tables: campaigns (state machine), agents (ownership check),
    campaign_contacts via ContactStore, agent_runs (statistics).
    """

    TABLE = "campaigns"

    def __init__(
        self,
        supabase: Client,
        queue_service: CampaignQueueService,
        contact_store: Optional[ContactStore] = None,
        credential_service: Optional[CredentialService] = None,
        usage_ledger: Optional[UsageLedger] = None,
        config: Optional[ConfigManager] = None
    ):
        self._supabase = supabase
        self._queue = queue_service
        self._contacts = contact_store or ContactStore(supabase)
        self._credentials = credential_service or CredentialService.default(supabase)
        self._ledger = usage_ledger or UsageLedger(supabase, config)
        self._config = config or ConfigManager()

    @property
    def contact_store(self) -> ContactStore:
        return self._contacts

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_campaign(self, tenant_id: Optional[str], campaign_id: str) -> Campaign:
        """
        Load a campaign owned by tenant_id (any owner when tenant_id is None).

        Raises:
            NotFoundError: Missing, or owned by another tenant
        """
        query = self._supabase.table(self.TABLE).select("*").eq("id", campaign_id)
        if tenant_id is not None:
            query = query.eq("tenant_id", tenant_id)

        response = query.execute()
        if not response.data:
            raise NotFoundError("Campaign not found")
        return Campaign(**response.data[0])

    async def get_statistics(self, campaign_id: str) -> Dict[str, Any]:
        """Contact status counts, run dispositions and queue backlog."""
        contact_counts = await self._contacts.count_by_status(campaign_id)

        runs = self._supabase.table("agent_runs").select("status, disposition").eq(
            "campaign_id", campaign_id
        ).execute()

        run_status_counts: Dict[str, int] = {}
        disposition_counts: Dict[str, int] = {}
        for run in runs.data or []:
            status = run.get("status") or "unknown"
            run_status_counts[status] = run_status_counts.get(status, 0) + 1
            if run.get("disposition"):
                disposition = run["disposition"]
                disposition_counts[disposition] = disposition_counts.get(disposition, 0) + 1

        return {
            "total_contacts": sum(contact_counts.values()),
            "contact_status_counts": contact_counts,
            "run_status_counts": run_status_counts,
            "disposition_counts": disposition_counts,
            "outstanding_jobs": await self._queue.outstanding(campaign_id),
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_campaign(
        self,
        tenant_id: str,
        name: str,
        agent_id: str,
        contacts: List[ContactInput],
        source_type: str = "csv",
        source_description: Optional[str] = None
    ) -> Tuple[Campaign, int]:
        """
        Create a campaign in `created` and load its contacts once.

        Raises:
            NotFoundError: Agent missing or owned by another tenant
            QuotaExceededError: Contact list exceeds the tenant's bulk limits
        """
        agents = self._supabase.table("agents").select("id").eq("id", agent_id).eq(
            "tenant_id", tenant_id
        ).execute()
        if not agents.data:
            raise NotFoundError(
                "Agent not found or access denied. You can only use your own agents for campaigns."
            )

        estimated_tokens = int(self._config.get("usage.estimated_tokens_per_call", 100))
        bulk = await self._ledger.validate_bulk_operation(tenant_id, len(contacts), estimated_tokens)
        if not bulk.allowed:
            raise QuotaExceededError(bulk.reason, bulk.details, bulk.upgrade_suggestion)

        record = {
            "id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "agent_id": agent_id,
            "name": name.strip(),
            "source_type": source_type,
            "source_description": source_description,
            "state": CampaignState.CREATED.value,
            "created_at": datetime.utcnow().isoformat(),
        }
        response = self._supabase.table(self.TABLE).insert(record).execute()
        campaign = Campaign(**(response.data[0] if response.data else record))

        loaded = await self._contacts.load_contacts(campaign.id, contacts)
        logger.info(f"Campaign {campaign.id} created for tenant {tenant_id} with {loaded} contacts")
        return campaign, loaded

    async def start(self, tenant_id: str, campaign_id: str) -> int:
        """
        Start (or restart a paused) campaign and enqueue its pending contacts.

        Returns:
            Number of jobs enqueued. Contacts that already have an unfinished
            job are not enqueued again.

        Raises:
            NotFoundError, PreconditionFailedError, ConfigMissingError,
            QueueUnavailableError
        """
        campaign = await self.get_campaign(tenant_id, campaign_id)

        if campaign.state == CampaignState.RUNNING:
            raise PreconditionFailedError("Campaign is already running")
        if campaign.is_terminal:
            raise PreconditionFailedError(f"Cannot start a {campaign.state} campaign")

        if not await self._credentials.has_tenant_credentials(tenant_id):
            raise ConfigMissingError(
                "Twilio not configured. Please add your Twilio credentials in API Key Settings.",
                details={"setup_required": True},
            )

        # State is written only after every pending contact is enqueued
        await self._queue.resume(campaign_id)

        enqueued = 0
        for contact in await self._contacts.list_pending(campaign_id):
            job = await self._queue.enqueue(contact.id, campaign_id, tenant_id)
            if job is not None:
                enqueued += 1

        update = {"state": CampaignState.RUNNING.value}
        if campaign.started_at is None:
            update["started_at"] = datetime.utcnow().isoformat()
        self._set_state(campaign_id, update)

        logger.info(f"Campaign {campaign_id} started: {enqueued} jobs enqueued")

        # Jobs may have finished before the state write, or there was nothing to dial
        await self.complete_if_exhausted(campaign_id)
        return enqueued

    async def pause(self, tenant_id: str, campaign_id: str) -> Campaign:
        """Pause a running campaign; only its own queue partition stops."""
        campaign = await self.get_campaign(tenant_id, campaign_id)
        if campaign.state != CampaignState.RUNNING:
            raise PreconditionFailedError(f"Cannot pause a {campaign.state} campaign")

        await self._queue.pause(campaign_id)
        self._set_state(campaign_id, {"state": CampaignState.PAUSED.value})

        logger.info(f"Campaign {campaign_id} paused")
        campaign.state = CampaignState.PAUSED
        return campaign

    async def resume(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = await self.get_campaign(tenant_id, campaign_id)
        if campaign.state != CampaignState.PAUSED:
            raise PreconditionFailedError(f"Cannot resume a {campaign.state} campaign")

        await self._queue.resume(campaign_id)
        self._set_state(campaign_id, {"state": CampaignState.RUNNING.value})

        logger.info(f"Campaign {campaign_id} resumed")
        campaign.state = CampaignState.RUNNING
        return campaign

    async def stop(self, tenant_id: str, campaign_id: str) -> Dict[str, Any]:
        """
        Stop a campaign. Waiting jobs are purged best-effort; calls already
        in flight are not interrupted.
        """
        campaign = await self.get_campaign(tenant_id, campaign_id)
        if campaign.is_terminal:
            raise PreconditionFailedError(f"Campaign is already {campaign.state}")

        self._set_state(campaign_id, {
            "state": CampaignState.STOPPED.value,
            "completed_at": datetime.utcnow().isoformat()
        })

        jobs_purged = 0
        try:
            jobs_purged = await self._queue.purge_waiting(campaign_id)
            await self._queue.resume(campaign_id)
        except Exception as e:
            logger.error(f"Failed to purge queue for stopped campaign {campaign_id}: {e}")

        logger.info(f"Campaign {campaign_id} stopped ({jobs_purged} waiting jobs purged)")
        return {"campaign_id": campaign_id, "state": CampaignState.STOPPED.value, "jobs_purged": jobs_purged}

    async def complete_if_exhausted(self, campaign_id: str) -> bool:
        """
        Move a running campaign to `completed` once no job is outstanding and
        no contact is pending. Returns True if the transition happened.
        """
        campaign = await self.get_campaign(None, campaign_id)
        if campaign.state != CampaignState.RUNNING:
            return False

        if await self._queue.outstanding(campaign_id) > 0:
            return False

        counts = await self._contacts.count_by_status(campaign_id)
        if counts.get(ContactStatus.PENDING.value, 0) > 0:
            return False

        self._set_state(campaign_id, {
            "state": CampaignState.COMPLETED.value,
            "completed_at": datetime.utcnow().isoformat()
        })
        logger.info(f"Campaign {campaign_id} completed")
        return True

    def _set_state(self, campaign_id: str, update: Dict[str, Any]) -> None:
        self._supabase.table(self.TABLE).update(update).eq("id", campaign_id).execute()
