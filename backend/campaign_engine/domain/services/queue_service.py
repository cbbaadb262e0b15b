"""
Campaign Queue Service
Durable Redis job queue with per-campaign partitions, retries and leases
"""
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError

from campaign_engine.core.config import ConfigManager, get_settings
from campaign_engine.domain.exceptions import QueueUnavailableError
from campaign_engine.domain.models.campaign_job import (
    CampaignJob,
    JobStatus,
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF_DELAY_MS,
)

logger = logging.getLogger(__name__)


class CampaignQueueService:
    """
    Redis-backed at-least-once queue for campaign call jobs.

    Each campaign has its own wait list, so pausing one campaign only hides
    that campaign's jobs from the worker. Job bodies live in a hash and the
    lists carry job ids.

    Queue Keys:
    - campaign-calls:jobs                    job_id -> job JSON
    - campaign-calls:wait:{campaign_id}      FIFO of waiting job ids
    - campaign-calls:campaigns               campaigns with a wait list
    - campaign-calls:paused                  paused campaign ids
    - campaign-calls:active                  job ids handed to a worker
    - campaign-calls:leases                  job_id -> lease expiry (redelivery)
    - campaign-calls:delayed                 job_id -> retry due time
    - campaign-calls:completed / :failed     retained finished job ids
    - campaign-calls:outstanding             campaign_id -> unfinished jobs
    - campaign-calls:enqueued:{campaign_id}  contacts with an unfinished job
    """

    JOBS_HASH = "campaign-calls:jobs"
    WAIT_LIST = "campaign-calls:wait:{campaign_id}"
    CAMPAIGNS_SET = "campaign-calls:campaigns"
    PAUSED_SET = "campaign-calls:paused"
    ACTIVE_LIST = "campaign-calls:active"
    LEASES_ZSET = "campaign-calls:leases"
    DELAYED_ZSET = "campaign-calls:delayed"
    COMPLETED_LIST = "campaign-calls:completed"
    FAILED_LIST = "campaign-calls:failed"
    OUTSTANDING_HASH = "campaign-calls:outstanding"
    ENQUEUED_SET = "campaign-calls:enqueued:{campaign_id}"
    STATS_KEY = "campaign-calls:stats"

    DEFAULT_LEASE_SECONDS = 300

    def __init__(self, redis_client=None, config: Optional[ConfigManager] = None):
        """
        Initialize queue service.

        Args:
            redis_client: Optional pre-configured Redis client
            config: Optional ConfigManager (queue.* options)
        """
        self._redis = redis_client
        self._config = config or ConfigManager()
        self._initialized = False
        self._orphan_candidates: Set[str] = set()

        self.attempts = int(self._config.get("queue.attempts", DEFAULT_ATTEMPTS))
        self.backoff_delay_ms = int(self._config.get("queue.backoff_delay_ms", DEFAULT_BACKOFF_DELAY_MS))
        self.lease_seconds = int(self._config.get("queue.lease_seconds", self.DEFAULT_LEASE_SECONDS))

    async def initialize(self) -> None:
        """Initialize Redis connection if not provided."""
        if self._redis is not None:
            self._initialized = True
            return

        redis_url = get_settings().redis_url
        try:
            self._redis = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._initialized = True
            logger.info(f"CampaignQueueService connected to Redis: {redis_url}")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise QueueUnavailableError(f"Queue broker unavailable: {e}")

    async def _ensure(self) -> None:
        if not self._initialized:
            await self.initialize()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, contact_id: str, campaign_id: str, tenant_id: str) -> Optional[CampaignJob]:
        """
        Enqueue a dial job for a contact.

        Returns:
            The new job, or None when the contact already has an unfinished job

        Raises:
            QueueUnavailableError: Broker unreachable; the job was not stored
        """
        await self._ensure()

        try:
            added = await self._redis.sadd(self.ENQUEUED_SET.format(campaign_id=campaign_id), contact_id)
            if not added:
                logger.debug(f"Contact {contact_id} already has an outstanding job")
                return None

            job = CampaignJob(
                job_id=str(uuid.uuid4()),
                contact_id=contact_id,
                campaign_id=campaign_id,
                tenant_id=tenant_id,
                max_attempts=self.attempts,
                backoff_delay_ms=self.backoff_delay_ms,
            )

            await self._save(job)
            await self._redis.hincrby(self.OUTSTANDING_HASH, campaign_id, 1)
            await self._redis.sadd(self.CAMPAIGNS_SET, campaign_id)
            await self._redis.rpush(self.WAIT_LIST.format(campaign_id=campaign_id), job.job_id)
            await self._redis.hincrby(self.STATS_KEY, "total_enqueued", 1)

            logger.debug(f"Enqueued job {job.job_id} for contact {contact_id}")
            return job

        except RedisError as e:
            logger.error(f"Failed to enqueue contact {contact_id}: {e}")
            raise QueueUnavailableError(f"Failed to enqueue job: {e}")

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(self) -> Optional[CampaignJob]:
        """
        Hand the next waiting job of a non-paused campaign to the caller.

        The job id moves atomically (LMOVE) to the active list and gets a
        lease; if the lease expires before complete()/fail(), the job is
        redelivered by recover_stalled().
        """
        await self._ensure()

        try:
            paused = await self._redis.smembers(self.PAUSED_SET)
            campaign_ids = await self._redis.smembers(self.CAMPAIGNS_SET)

            for campaign_id in sorted(campaign_ids):
                if campaign_id in paused:
                    continue

                job_id = await self._redis.lmove(
                    self.WAIT_LIST.format(campaign_id=campaign_id),
                    self.ACTIVE_LIST,
                    "LEFT",
                    "RIGHT"
                )
                if not job_id:
                    continue

                # An active id without a lease is picked up by recover_stalled()
                await self._redis.zadd(self.LEASES_ZSET, {job_id: time.time() + self.lease_seconds})

                job = await self.get_job(job_id)
                if job is None:
                    await self._release(job_id)
                    logger.warning(f"Dropped dangling job id {job_id}")
                    continue

                job.status = JobStatus.ACTIVE
                job.processed_at = datetime.utcnow()
                await self._save(job)
                await self._redis.hincrby(self.STATS_KEY, "total_dequeued", 1)

                logger.debug(f"Dequeued job {job_id} from campaign {campaign_id}")
                return job

            return None

        except RedisError as e:
            logger.error(f"Failed to dequeue job: {e}")
            raise QueueUnavailableError(f"Failed to dequeue job: {e}")

    async def complete(self, job: CampaignJob, return_value: Any = None) -> None:
        """Record a successful attempt and retain the job."""
        job.attempts_made += 1
        job.status = JobStatus.COMPLETED
        job.finished_at = datetime.utcnow()
        job.return_value = return_value

        await self._finalize(job, self.COMPLETED_LIST, "total_completed")
        logger.debug(f"Job {job.job_id} completed after {job.attempts_made} attempt(s)")

    async def fail(self, job: CampaignJob, error: str, retry: bool = True) -> bool:
        """
        Record a failed attempt.

        Args:
            job: The active job
            error: Failure reason
            retry: False for non-retryable errors

        Returns:
            True if a retry was scheduled, False if the job failed permanently
        """
        job.attempts_made += 1
        job.failed_reason = error

        if retry and job.has_attempts_left:
            delay_ms = job.get_retry_delay_ms()
            job.status = JobStatus.DELAYED
            await self._save(job)
            await self._release(job.job_id)
            await self._redis.zadd(self.DELAYED_ZSET, {job.job_id: time.time() + delay_ms / 1000})
            await self._redis.hincrby(self.STATS_KEY, "total_retried", 1)

            logger.info(
                f"Scheduled retry for job {job.job_id} "
                f"(attempt {job.attempts_made + 1}/{job.max_attempts}) in {delay_ms}ms"
            )
            return True

        job.status = JobStatus.FAILED
        job.finished_at = datetime.utcnow()
        await self._finalize(job, self.FAILED_LIST, "total_failed")
        logger.info(f"Job {job.job_id} failed permanently after {job.attempts_made} attempt(s): {error}")
        return False

    async def promote_delayed(self) -> int:
        """
        Move retries whose backoff has elapsed back to their campaign's wait list.

        Should be called periodically by the worker.

        Returns:
            Number of jobs moved
        """
        await self._ensure()

        due = await self._redis.zrangebyscore(self.DELAYED_ZSET, 0, time.time())
        count = 0
        for job_id in due:
            # Only the caller that wins the ZREM moves the job
            if not await self._redis.zrem(self.DELAYED_ZSET, job_id):
                continue

            job = await self.get_job(job_id)
            if job is None or job.status == JobStatus.REMOVED:
                continue

            job.status = JobStatus.WAITING
            await self._save(job)
            await self._redis.sadd(self.CAMPAIGNS_SET, job.campaign_id)
            await self._redis.rpush(self.WAIT_LIST.format(campaign_id=job.campaign_id), job_id)
            count += 1

        if count > 0:
            logger.info(f"Moved {count} delayed jobs back to their queues")
        return count

    async def recover_stalled(self) -> int:
        """
        Redeliver active jobs whose lease expired (worker crashed mid-job).

        Active ids that have no lease at all (a dequeue that died between
        the move and the lease write) are redelivered once they are still
        lease-less on the next sweep.

        Returns:
            Number of jobs redelivered
        """
        await self._ensure()

        try:
            count = 0
            expired = await self._redis.zrangebyscore(self.LEASES_ZSET, 0, time.time())
            for job_id in expired:
                if not await self._redis.zrem(self.LEASES_ZSET, job_id):
                    continue
                if await self._redeliver(job_id):
                    count += 1

            leased = set(await self._redis.zrangebyscore(self.LEASES_ZSET, "-inf", "+inf"))
            orphans = {
                job_id for job_id in await self._redis.lrange(self.ACTIVE_LIST, 0, -1)
                if job_id not in leased
            }
            for job_id in orphans & self._orphan_candidates:
                if await self._redeliver(job_id):
                    count += 1
            self._orphan_candidates = orphans - self._orphan_candidates

        except RedisError as e:
            logger.error(f"Failed to recover stalled jobs: {e}")
            raise QueueUnavailableError(f"Failed to recover stalled jobs: {e}")

        if count > 0:
            logger.warning(f"Redelivered {count} stalled jobs")
        return count

    async def _redeliver(self, job_id: str) -> bool:
        if not await self._redis.lrem(self.ACTIVE_LIST, 0, job_id):
            return False

        job = await self.get_job(job_id)
        if job is None:
            return False

        job.status = JobStatus.WAITING
        await self._save(job)
        # Front of the line: it was already dequeued once
        await self._redis.lpush(self.WAIT_LIST.format(campaign_id=job.campaign_id), job_id)
        await self._redis.sadd(self.CAMPAIGNS_SET, job.campaign_id)
        await self._redis.hincrby(self.STATS_KEY, "total_stalled", 1)
        return True

    # ------------------------------------------------------------------
    # Campaign-scoped controls
    # ------------------------------------------------------------------

    async def pause(self, campaign_id: str) -> None:
        await self._ensure()
        try:
            await self._redis.sadd(self.PAUSED_SET, campaign_id)
        except RedisError as e:
            raise QueueUnavailableError(f"Failed to pause campaign queue: {e}")
        logger.info(f"Paused queue partition for campaign {campaign_id}")

    async def resume(self, campaign_id: str) -> None:
        await self._ensure()
        try:
            await self._redis.srem(self.PAUSED_SET, campaign_id)
        except RedisError as e:
            raise QueueUnavailableError(f"Failed to resume campaign queue: {e}")
        logger.info(f"Resumed queue partition for campaign {campaign_id}")

    async def is_paused(self, campaign_id: str) -> bool:
        await self._ensure()
        return bool(await self._redis.sismember(self.PAUSED_SET, campaign_id))

    async def purge_waiting(self, campaign_id: str) -> int:
        """
        Remove a campaign's waiting and delayed jobs. Active jobs are left alone.

        Returns:
            Number of jobs removed
        """
        await self._ensure()

        wait_key = self.WAIT_LIST.format(campaign_id=campaign_id)
        job_ids: List[str] = list(await self._redis.lrange(wait_key, 0, -1))
        await self._redis.delete(wait_key)
        await self._redis.srem(self.CAMPAIGNS_SET, campaign_id)

        for job_id in await self._redis.zrangebyscore(self.DELAYED_ZSET, "-inf", "+inf"):
            job = await self.get_job(job_id)
            if job is not None and job.campaign_id == campaign_id:
                await self._redis.zrem(self.DELAYED_ZSET, job_id)
                job_ids.append(job_id)

        removed = 0
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.status = JobStatus.REMOVED
            job.finished_at = datetime.utcnow()
            await self._save(job)
            await self._redis.srem(self.ENQUEUED_SET.format(campaign_id=campaign_id), job.contact_id)
            await self._redis.hincrby(self.OUTSTANDING_HASH, campaign_id, -1)
            removed += 1

        if removed:
            await self._redis.hincrby(self.STATS_KEY, "total_removed", removed)
        logger.info(f"Purged {removed} jobs for campaign {campaign_id}")
        return removed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[CampaignJob]:
        await self._ensure()
        raw = await self._redis.hget(self.JOBS_HASH, job_id)
        if raw is None:
            return None
        return CampaignJob.from_redis_dict(json.loads(raw))

    async def outstanding(self, campaign_id: str) -> int:
        """Jobs of the campaign that have not reached a final state."""
        await self._ensure()
        value = await self._redis.hget(self.OUTSTANDING_HASH, campaign_id)
        return max(int(value or 0), 0)

    async def get_counts(self) -> Dict[str, int]:
        """Queue statistics."""
        await self._ensure()

        waiting = 0
        for campaign_id in await self._redis.smembers(self.CAMPAIGNS_SET):
            waiting += await self._redis.llen(self.WAIT_LIST.format(campaign_id=campaign_id))

        stats = await self._redis.hgetall(self.STATS_KEY) or {}

        return {
            "waiting": waiting,
            "active": await self._redis.llen(self.ACTIVE_LIST),
            "delayed": await self._redis.zcard(self.DELAYED_ZSET),
            "completed": await self._redis.llen(self.COMPLETED_LIST),
            "failed": await self._redis.llen(self.FAILED_LIST),
            "paused_campaigns": await self._redis.scard(self.PAUSED_SET),
            "total_enqueued": int(stats.get("total_enqueued", 0)),
            "total_dequeued": int(stats.get("total_dequeued", 0)),
            "total_completed": int(stats.get("total_completed", 0)),
            "total_failed": int(stats.get("total_failed", 0)),
            "total_retried": int(stats.get("total_retried", 0)),
        }

    async def ping(self) -> bool:
        """True when the broker answers."""
        try:
            await self._ensure()
            return bool(await self._redis.ping())
        except (RedisError, QueueUnavailableError) as e:
            logger.error(f"Queue broker ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._initialized = False

    # ------------------------------------------------------------------

    async def _save(self, job: CampaignJob) -> None:
        await self._redis.hset(self.JOBS_HASH, job.job_id, json.dumps(job.to_redis_dict()))

    async def _release(self, job_id: str) -> None:
        """Take a job off the active list and drop its lease."""
        await self._redis.lrem(self.ACTIVE_LIST, 0, job_id)
        await self._redis.zrem(self.LEASES_ZSET, job_id)

    async def _finalize(self, job: CampaignJob, retained_list: str, stat: str) -> None:
        await self._ensure()
        await self._save(job)
        await self._release(job.job_id)
        await self._redis.rpush(retained_list, job.job_id)
        await self._redis.srem(self.ENQUEUED_SET.format(campaign_id=job.campaign_id), job.contact_id)
        await self._redis.hincrby(self.OUTSTANDING_HASH, job.campaign_id, -1)
        await self._redis.hincrby(self.STATS_KEY, stat, 1)
