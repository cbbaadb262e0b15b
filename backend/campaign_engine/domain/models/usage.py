"""
Usage & Quota Models
Tier table, provider cost rates and limit-check results
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from enum import Enum


class UsageProvider(str, Enum):
    """Billed providers"""
    GROQ = "groq"
    DEEPGRAM = "deepgram"
    TWILIO = "twilio"


# Per-unit rates. groq is billed per token, deepgram per second, twilio per minute.
COST_RATES: Dict[str, Dict[str, Any]] = {
    "groq": {"per_token": 0.0000001, "name": "Groq AI"},
    "deepgram": {"per_second": 0.0025, "name": "Deepgram STT/TTS"},
    "twilio": {"per_minute": 0.0140, "name": "Twilio Voice"},
}

# Ordered lowest to highest; upgrade suggestions walk this order.
SUBSCRIPTION_TIERS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "max_agents": 2,
        "monthly_token_quota": 1000,
        "price": 0,
        "features": ["Basic AI agents", "Web calls only", "Community support"],
    },
    "pro": {
        "name": "Pro",
        "max_agents": 10,
        "monthly_token_quota": 50000,
        "price": 29,
        "features": ["Advanced AI agents", "Phone calls", "Priority support", "Usage analytics"],
    },
    "enterprise": {
        "name": "Enterprise",
        "max_agents": 100,
        "monthly_token_quota": 1000000,
        "price": 299,
        "features": ["Unlimited features", "Custom integrations", "Dedicated support", "SLA guarantee"],
    },
}

# Largest contact list a single campaign may dial, per tier
MAX_BULK_CALLS_PER_TIER: Dict[str, int] = {
    "free": 10,
    "pro": 100,
    "enterprise": 1000,
}


class UsageEstimate(BaseModel):
    """Expected consumption of an operation, checked before it runs"""
    tokens: int = Field(default=0, ge=0)
    duration_seconds: int = Field(default=0, ge=0)


class UsageRecord(BaseModel):
    """Actual consumption of a finished operation"""
    provider: UsageProvider
    tokens: int = Field(default=0, ge=0)
    duration_seconds: int = Field(default=0, ge=0)
    calls: int = Field(default=1, ge=0)

    model_config = {"use_enum_values": True}


class MonthlyUsage(BaseModel):
    """Sum of a tenant's daily usage buckets for the current month"""
    total_tokens: int = 0
    total_calls: int = 0
    total_duration_seconds: int = 0
    total_cost: float = 0.0
    days: List[Dict[str, Any]] = Field(default_factory=list)


class TenantLimits(BaseModel):
    """Tenant quota, usage and what is left of it"""
    tenant_id: str
    role: str = "user"
    subscription_tier: str = "free"
    monthly_token_quota: int = 0
    max_agents: int = 0
    current_agents: int = 0
    tokens_this_month: int = 0
    remaining_tokens: int = 0
    remaining_agents: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def token_usage_percentage(self) -> float:
        if self.monthly_token_quota <= 0:
            return 0.0
        return self.tokens_this_month / self.monthly_token_quota * 100

    @property
    def agent_usage_percentage(self) -> float:
        if self.max_agents <= 0:
            return 0.0
        return self.current_agents / self.max_agents * 100


class LimitCheckResult(BaseModel):
    """Allow/deny decision of the quota gate"""
    allowed: bool
    reason: str
    details: Dict[str, Any] = Field(default_factory=dict)
    upgrade_suggestion: Optional[Dict[str, Any]] = None
    limits: Optional[TenantLimits] = None
