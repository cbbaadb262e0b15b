"""Domain models"""

# Campaign lifecycle
from .campaign import (
    CampaignState,
    TERMINAL_STATES,
    Campaign,
)

# Contacts
from .contact import (
    ContactStatus,
    Contact,
    ContactInput,
)

# Call runs
from .call_run import (
    CallRunType,
    CallRunStatus,
    Disposition,
    TERMINAL_CALL_STATUSES,
    CallRun,
    generate_run_number,
)

# Queue
from .campaign_job import (
    JobStatus,
    CampaignJob,
)

# Usage and quota
from .usage import (
    UsageProvider,
    COST_RATES,
    SUBSCRIPTION_TIERS,
    MAX_BULK_CALLS_PER_TIER,
    UsageEstimate,
    UsageRecord,
    MonthlyUsage,
    TenantLimits,
    LimitCheckResult,
)

__all__ = [
    "CampaignState",
    "TERMINAL_STATES",
    "Campaign",
    "ContactStatus",
    "Contact",
    "ContactInput",
    "CallRunType",
    "CallRunStatus",
    "Disposition",
    "TERMINAL_CALL_STATUSES",
    "CallRun",
    "generate_run_number",
    "JobStatus",
    "CampaignJob",
    "UsageProvider",
    "COST_RATES",
    "SUBSCRIPTION_TIERS",
    "MAX_BULK_CALLS_PER_TIER",
    "UsageEstimate",
    "UsageRecord",
    "MonthlyUsage",
    "TenantLimits",
    "LimitCheckResult",
]
