"""
Campaign Worker
Background worker that dials campaign contacts from the job queue

Run as separate process:
    python -m campaign_engine.workers.campaign_worker
"""
import asyncio
import logging
import signal
import uuid
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client, Client

from campaign_engine.core.config import ConfigManager, Settings, get_settings
from campaign_engine.domain.exceptions import (
    ConfigMissingError,
    NotFoundError,
    PERMANENT_ERRORS,
    ProviderFailureError,
    TransientQueueError,
)
from campaign_engine.domain.interfaces.telephony_provider import TelephonyProvider
from campaign_engine.domain.models.call_run import (
    CallRunStatus,
    CallRunType,
    Disposition,
    generate_run_number,
)
from campaign_engine.domain.models.campaign_job import CampaignJob
from campaign_engine.domain.models.contact import Contact, ContactStatus
from campaign_engine.domain.models.usage import UsageEstimate, UsageProvider, UsageRecord
from campaign_engine.domain.services.campaign_service import CampaignService
from campaign_engine.domain.services.contact_store import ContactStore
from campaign_engine.domain.services.credential_service import CredentialService
from campaign_engine.domain.services.queue_service import CampaignQueueService
from campaign_engine.domain.services.usage_ledger import UsageLedger
from campaign_engine.domain.services.usage_recorder import UsageRecorder
from campaign_engine.infrastructure.telephony.twilio_caller import TwilioCaller

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def webhook_base_url(settings: Settings, run_id: str) -> str:
    """Base URL the provider calls back into for one run."""
    return f"{settings.server_url.rstrip('/')}{settings.api_prefix}/calls/twilio/webhook/{run_id}"


class CampaignWorker:
    """
    Background worker for campaign call jobs.

    Responsibilities:
    - Dequeue jobs from non-paused campaign partitions
    - Gate each call on the tenant's quota and telephony credentials
    - Create the call run and place the call
    - Ack, retry or permanently fail the job
    - Complete campaigns whose contacts are exhausted

    Architecture:
    - Runs as separate process from FastAPI
    - Connects to same Redis and Supabase instances
    - Several workers may consume the same queue
    """

    # Worker configuration
    POLL_INTERVAL = 1.0  # Seconds between queue checks when empty
    MAINTENANCE_INTERVAL = 5  # Seconds between delayed/stalled job sweeps
    MAX_CONSECUTIVE_ERRORS = 10

    def __init__(
        self,
        queue_service: Optional[CampaignQueueService] = None,
        supabase: Optional[Client] = None,
        telephony: Optional[TelephonyProvider] = None,
        credential_service: Optional[CredentialService] = None,
        usage_ledger: Optional[UsageLedger] = None,
        usage_recorder: Optional[UsageRecorder] = None,
        config: Optional[ConfigManager] = None,
        settings: Optional[Settings] = None
    ):
        self._config = config or ConfigManager()
        self._settings = settings or get_settings()
        self.queue_service = queue_service or CampaignQueueService(config=self._config)

        self._supabase = supabase
        self._telephony = telephony
        self._credentials = credential_service
        self._ledger = usage_ledger
        self._recorder = usage_recorder
        self._contacts: Optional[ContactStore] = None
        self._campaigns: Optional[CampaignService] = None

        self.poll_interval = float(self._config.get("queue.poll_interval", self.POLL_INTERVAL))
        self.maintenance_interval = float(
            self._config.get("queue.maintenance_interval", self.MAINTENANCE_INTERVAL)
        )
        self.tokens_per_call = int(self._config.get("usage.estimated_tokens_per_call", 100))

        self.running = False
        self._initialized = False

        # Stats
        self._jobs_processed = 0
        self._jobs_failed = 0
        self._jobs_retried = 0
        self._last_maintenance = datetime.utcnow()

    async def initialize(self) -> None:
        """Initialize connections to Redis and Supabase and wire services."""
        if self._initialized:
            return

        logger.info("Initializing Campaign Worker...")

        await self.queue_service.initialize()

        if self._supabase is None:
            if not self._settings.supabase_url or not self._settings.supabase_service_key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
            self._supabase = create_client(self._settings.supabase_url, self._settings.supabase_service_key)

        twilio_config = self._config.get("providers.telephony.twilio", {}) or {}
        self._telephony = self._telephony or TwilioCaller(record=bool(twilio_config.get("record", True)))
        self._credentials = self._credentials or CredentialService.default(self._supabase)
        self._ledger = self._ledger or UsageLedger(self._supabase, self._config)
        self._recorder = self._recorder or UsageRecorder(
            self._ledger, maxsize=int(self._config.get("usage.recorder_queue_size", 1000))
        )
        self._contacts = ContactStore(self._supabase)
        self._campaigns = CampaignService(
            self._supabase,
            self.queue_service,
            contact_store=self._contacts,
            credential_service=self._credentials,
            usage_ledger=self._ledger,
            config=self._config,
        )

        self._initialized = True
        logger.info("Campaign Worker initialized successfully")

    async def run(self) -> None:
        """
        Main worker loop.

        Continuously:
        1. Promote due retries and recover stalled jobs (periodically)
        2. Dequeue and process jobs
        3. Back off on consecutive errors
        """
        await self.initialize()

        self.running = True
        consecutive_errors = 0

        logger.info("Campaign Worker started - listening for jobs")

        while self.running:
            try:
                if (datetime.utcnow() - self._last_maintenance).total_seconds() >= self.maintenance_interval:
                    await self.run_maintenance()

                job = await self.queue_service.dequeue()

                if job:
                    await self.process_job(job)
                    consecutive_errors = 0
                else:
                    # No jobs available, wait before checking again
                    await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    async def run_maintenance(self) -> None:
        """Move due retries back to their partitions and re-deliver expired leases."""
        promoted = await self.queue_service.promote_delayed()
        if promoted > 0:
            logger.info(f"Promoted {promoted} delayed jobs")

        recovered = await self.queue_service.recover_stalled()
        if recovered > 0:
            logger.warning(f"Recovered {recovered} stalled jobs")

        self._last_maintenance = datetime.utcnow()

    async def process_job(self, job: CampaignJob) -> None:
        """
        Process a single campaign job and settle it with the queue.

        Permanent errors fail the job without retry; anything else is retried
        with backoff until attempts run out.
        """
        await self.initialize()
        logger.info(
            f"Processing job {job.job_id} for contact {job.contact_id} "
            f"(attempt {job.attempts_made + 1}/{job.max_attempts})"
        )

        try:
            result = await self._execute(job)
            await self.queue_service.complete(job, result)
            self._jobs_processed += 1

        except PERMANENT_ERRORS as e:
            self._jobs_failed += 1
            logger.warning(f"Job {job.job_id} failed permanently: {e}")
            await self.queue_service.fail(job, str(e), retry=False)

        except Exception as e:
            if isinstance(e, ProviderFailureError):
                logger.warning(f"Failed to process job {job.job_id}: {e}")
                error = e
            else:
                logger.error(f"Failed to process job {job.job_id}: {e}", exc_info=True)
                error = TransientQueueError(f"Job execution failed: {e}")
            will_retry = await self.queue_service.fail(job, str(error), retry=True)
            if will_retry:
                self._jobs_retried += 1
                return
            self._jobs_failed += 1
            await self._mark_contact_failed(job.contact_id)

        try:
            await self._campaigns.complete_if_exhausted(job.campaign_id)
        except NotFoundError:
            logger.warning(f"Campaign {job.campaign_id} not found while checking completion")

    async def _execute(self, job: CampaignJob) -> dict:
        """
        Dial one contact.

        Returns:
            Job return value

        Raises:
            NotFoundError, QuotaExceededError, ConfigMissingError: permanent
            ProviderFailureError: the call could not be placed (retried)
        """
        # 1. Contact
        contact = await self._contacts.get_contact(job.contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {job.contact_id} not found")

        if contact.status == ContactStatus.CALLED:
            logger.info(f"Contact {contact.id} already called, skipping redelivered job {job.job_id}")
            return {"skipped": True, "reason": "already_called", "agent_run_id": contact.agent_run_id}

        # 2. Campaign
        campaign = await self._campaigns.get_campaign(None, job.campaign_id)
        if campaign.is_terminal:
            logger.info(f"Campaign {campaign.id} is {campaign.state}, skipping job {job.job_id}")
            return {"skipped": True, "reason": f"campaign_{campaign.state}"}

        # 3. Quota
        try:
            await self._ledger.ensure_call_allowed(job.tenant_id, UsageEstimate(tokens=self.tokens_per_call))
        except PERMANENT_ERRORS:
            await self._contacts.mark_failed(contact.id)
            raise

        # 4. Credentials, resolved at execution time
        try:
            credentials = await self._credentials.resolve(job.tenant_id)
        except ConfigMissingError:
            await self._contacts.mark_failed(contact.id)
            raise

        # 5. Call run
        run_id = await self._create_run(job, campaign.agent_id, contact)

        # 6. Dial
        result = await self._telephony.place_call(
            to_number=contact.phone_number,
            from_number=credentials.from_phone_number,
            credentials=credentials,
            webhook_base_url=webhook_base_url(self._settings, run_id),
        )

        if not result.success:
            await self._contacts.mark_failed(contact.id, run_id)
            self._supabase.table("agent_runs").update({
                "status": CallRunStatus.FAILED.value,
                "disposition": Disposition.DIAL_FAILED.value,
                "completed_at": datetime.utcnow().isoformat(),
            }).eq("id", run_id).execute()
            raise ProviderFailureError(
                f"Call to {contact.phone_number} failed: {result.error}",
                details={"run_id": run_id, "provider": self._telephony.name},
            )

        # The call is live: nothing after this point may make the job retry
        await self._contacts.mark_called(contact.id, run_id)
        try:
            self._supabase.table("agent_runs").update({
                "provider_call_id": result.provider_call_id
            }).eq("id", run_id).execute()
        except Exception as e:
            logger.error(f"Failed to store provider call id for run {run_id}: {e}")

        self._recorder.submit(job.tenant_id, UsageRecord(provider=UsageProvider.TWILIO, calls=1))

        logger.info(f"Call initiated: {result.provider_call_id} for job {job.job_id} (run {run_id})")
        return {"agent_run_id": run_id, "provider_call_id": result.provider_call_id}

    async def _create_run(self, job: CampaignJob, agent_id: str, contact: Contact) -> str:
        """Create the agent_runs row for this call attempt."""
        run_id = str(uuid.uuid4())
        self._supabase.table("agent_runs").insert({
            "id": run_id,
            "run_number": generate_run_number(),
            "agent_id": agent_id,
            "tenant_id": job.tenant_id,
            "campaign_id": job.campaign_id,
            "contact_id": contact.id,
            "type": CallRunType.PHONE_CALL.value,
            "status": CallRunStatus.IN_PROGRESS.value,
            "phone_number": contact.phone_number,
            "tokens_used": 0,
            "created_at": datetime.utcnow().isoformat(),
        }).execute()
        logger.debug(f"Created call run {run_id} for contact {contact.id}")
        return run_id

    async def _mark_contact_failed(self, contact_id: str) -> None:
        try:
            contact = await self._contacts.get_contact(contact_id)
            if contact and contact.status == ContactStatus.PENDING:
                await self._contacts.mark_failed(contact_id)
        except Exception as e:
            logger.error(f"Failed to mark contact {contact_id} failed: {e}")

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down Campaign Worker...")
        self.running = False

        if self._recorder:
            await self._recorder.stop()
        await self.queue_service.close()

        # Log final stats
        logger.info(
            f"Campaign Worker shutdown complete. "
            f"Processed: {self._jobs_processed}, Failed: {self._jobs_failed}, Retried: {self._jobs_retried}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
            "jobs_retried": self._jobs_retried,
            "usage_recorder": self._recorder.get_stats() if self._recorder else None,
        }


async def main():
    """Entry point for running the campaign worker as separate process."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    worker = CampaignWorker()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    asyncio.run(main())
