"""
Campaign Job Model
Represents a single contact dial job in the campaign-calls queue
"""
from pydantic import BaseModel, Field
from typing import Optional, Any
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Status of a queued job"""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"        # Waiting out a retry backoff
    COMPLETED = "completed"
    FAILED = "failed"          # Permanently failed, attempts exhausted or non-retryable
    REMOVED = "removed"        # Purged when its campaign was stopped


# Queue defaults; overridable via the queue section of the YAML config
DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY_MS = 2000


class CampaignJob(BaseModel):
    """
    One outbound call job.

    Carries only identifiers: telephony credentials are re-resolved from the
    tenant id when the job executes, so a rotated key is picked up by retries.
    """

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    contact_id: str = Field(..., description="Contact to dial")
    campaign_id: str = Field(..., description="Campaign this job belongs to")
    tenant_id: str = Field(..., description="Tenant used for credential and quota lookups")

    status: JobStatus = Field(default=JobStatus.WAITING)
    attempts_made: int = Field(default=0, ge=0, description="Finished attempts so far")
    max_attempts: int = Field(default=DEFAULT_ATTEMPTS, ge=1)
    backoff_delay_ms: int = Field(default=DEFAULT_BACKOFF_DELAY_MS, ge=0)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    failed_reason: Optional[str] = None
    return_value: Optional[Any] = None

    model_config = {"use_enum_values": True}

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.max_attempts

    def get_retry_delay_ms(self) -> int:
        """Exponential backoff: base * 2^(attempts_made - 1)."""
        return self.backoff_delay_ms * (2 ** max(self.attempts_made - 1, 0))

    def to_redis_dict(self) -> dict:
        """Serialize for Redis storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_redis_dict(cls, data: dict) -> "CampaignJob":
        """Deserialize from Redis storage."""
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"CampaignJob(id={self.job_id[:8]}..., "
            f"contact={self.contact_id}, "
            f"status={self.status}, "
            f"attempts={self.attempts_made}/{self.max_attempts})"
        )
