"""
Usage Ledger / Quota Gate
Per-tenant usage accounting and the token quota check in front of every
billed operation.

Usage is kept in daily buckets (usage_buckets, one row per tenant per day).
Increments go through the increment_usage_bucket database function, an
upsert-with-add, so concurrent recordings never lose an update.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from supabase import Client

from campaign_engine.core.config import ConfigManager
from campaign_engine.core.keyed_lock import KeyedLock
from campaign_engine.domain.exceptions import NotFoundError, QuotaExceededError
from campaign_engine.domain.models.usage import (
    COST_RATES,
    SUBSCRIPTION_TIERS,
    MAX_BULK_CALLS_PER_TIER,
    UsageEstimate,
    UsageRecord,
    MonthlyUsage,
    TenantLimits,
    LimitCheckResult,
)

logger = logging.getLogger(__name__)


def get_upgrade_suggestion(current_tier: str, limit_type: str = "tokens") -> Dict[str, Any]:
    """
    Suggest the next tier up.

    Args:
        current_tier: Tenant's subscription tier
        limit_type: "tokens" or "agents"
    """
    tiers = list(SUBSCRIPTION_TIERS.keys())
    if current_tier not in tiers or tiers.index(current_tier) >= len(tiers) - 1:
        return {
            "suggested_tier": None,
            "message": "You are already on the highest tier",
        }

    next_tier = tiers[tiers.index(current_tier) + 1]
    config = SUBSCRIPTION_TIERS[next_tier]
    limit_field = "max_agents" if limit_type == "agents" else "monthly_token_quota"
    limit_name = "agents" if limit_type == "agents" else "tokens"

    return {
        "suggested_tier": next_tier,
        "tier_name": config["name"],
        "price": config["price"],
        "new_limit": config[limit_field],
        "message": f"Upgrade to {config['name']} for {config[limit_field]} {limit_name} per month",
        "features": config["features"],
    }


class UsageLedger:
    """
    Tenant usage accounting and quota gate.

    Tables:
    - tenants: role, subscription_tier, monthly_token_quota, max_agents
    - usage_buckets: (tenant_id, date) -> total_tokens, total_calls,
      total_duration_seconds, api_costs
    - agents: counted against max_agents
    """

    TENANTS_TABLE = "tenants"
    BUCKETS_TABLE = "usage_buckets"
    AGENTS_TABLE = "agents"
    INCREMENT_RPC = "increment_usage_bucket"

    def __init__(self, supabase: Client, config: Optional[ConfigManager] = None):
        self._supabase = supabase
        self._config = config or ConfigManager()
        self._cost_rates: Dict[str, Dict[str, Any]] = self._config.get("usage.cost_rates") or COST_RATES
        self._warning_threshold = float(self._config.get("usage.warning_threshold", 0.8))
        self._bucket_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Cost and usage
    # ------------------------------------------------------------------

    def calculate_cost(self, provider: str, tokens: int = 0, duration_seconds: int = 0) -> float:
        """Cost in dollars of one usage record."""
        rates = self._cost_rates.get(provider)
        if rates is None:
            raise ValueError(f"Invalid or unsupported provider: {provider}")

        if "per_token" in rates:
            return tokens * rates["per_token"]
        if "per_second" in rates:
            return duration_seconds * rates["per_second"]
        if "per_minute" in rates:
            return (duration_seconds / 60) * rates["per_minute"]
        return 0.0

    async def get_current_month_usage(self, tenant_id: str) -> MonthlyUsage:
        """Sum of this month's daily buckets."""
        first_of_month = datetime.utcnow().date().replace(day=1).isoformat()

        response = self._supabase.table(self.BUCKETS_TABLE).select("*").eq(
            "tenant_id", tenant_id
        ).gte("date", first_of_month).order("date").execute()

        usage = MonthlyUsage()
        for row in response.data or []:
            usage.total_tokens += int(row.get("total_tokens") or 0)
            usage.total_calls += int(row.get("total_calls") or 0)
            usage.total_duration_seconds += int(row.get("total_duration_seconds") or 0)
            usage.total_cost += float(row.get("api_costs") or 0)
            usage.days.append(row)

        usage.total_cost = round(usage.total_cost, 6)
        return usage

    async def get_tenant_limits(self, tenant_id: str) -> TenantLimits:
        """Tenant quota, this month's usage and what is left."""
        response = self._supabase.table(self.TENANTS_TABLE).select("*").eq("id", tenant_id).execute()
        if not response.data:
            raise NotFoundError(f"Tenant {tenant_id} not found")

        tenant = response.data[0]
        tier = tenant.get("subscription_tier") or "free"
        tier_defaults = SUBSCRIPTION_TIERS.get(tier, SUBSCRIPTION_TIERS["free"])

        quota = tenant.get("monthly_token_quota")
        if quota is None:
            quota = tier_defaults["monthly_token_quota"]
        max_agents = tenant.get("max_agents")
        if max_agents is None:
            max_agents = tier_defaults["max_agents"]

        usage = await self.get_current_month_usage(tenant_id)
        agents = self._supabase.table(self.AGENTS_TABLE).select("id").eq("tenant_id", tenant_id).execute()
        current_agents = len(agents.data or [])

        return TenantLimits(
            tenant_id=tenant_id,
            role=tenant.get("role") or "user",
            subscription_tier=tier,
            monthly_token_quota=int(quota),
            max_agents=int(max_agents),
            current_agents=current_agents,
            tokens_this_month=usage.total_tokens,
            remaining_tokens=max(0, int(quota) - usage.total_tokens),
            remaining_agents=max(0, int(max_agents) - current_agents),
        )

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    async def check_call_limit(self, tenant_id: str, estimated: UsageEstimate) -> LimitCheckResult:
        """
        Allow or deny an operation expected to consume ``estimated``.

        Admins are exempt. Everyone else is denied when the estimate exceeds
        the tokens left in this month's quota.
        """
        limits = await self.get_tenant_limits(tenant_id)

        if limits.is_admin:
            return LimitCheckResult(
                allowed=True,
                reason="Admin users have unlimited access",
                limits=limits,
            )

        if estimated.tokens > limits.remaining_tokens:
            suggestion = get_upgrade_suggestion(limits.subscription_tier, "tokens")
            return LimitCheckResult(
                allowed=False,
                reason="Monthly token quota exceeded",
                details={
                    "requested_tokens": estimated.tokens,
                    "remaining_tokens": limits.remaining_tokens,
                    "monthly_quota": limits.monthly_token_quota,
                    "used_this_month": limits.tokens_this_month,
                    "upgrade_suggestion": suggestion,
                },
                upgrade_suggestion=suggestion,
                limits=limits,
            )

        return LimitCheckResult(allowed=True, reason="Within usage limits", limits=limits)

    async def ensure_call_allowed(self, tenant_id: str, estimated: UsageEstimate) -> LimitCheckResult:
        """
        check_call_limit that raises on denial.

        Raises:
            QuotaExceededError: carrying the denial details and upgrade suggestion
        """
        result = await self.check_call_limit(tenant_id, estimated)
        if not result.allowed:
            logger.info(f"Quota gate denied tenant {tenant_id}: {result.reason}")
            raise QuotaExceededError(result.reason, result.details, result.upgrade_suggestion)
        return result

    async def validate_bulk_operation(
        self,
        tenant_id: str,
        estimated_calls: int,
        estimated_tokens_per_call: int = 100
    ) -> LimitCheckResult:
        """Check a whole campaign against the token quota and the tier's call cap."""
        total_tokens = estimated_calls * estimated_tokens_per_call
        limits = await self.get_tenant_limits(tenant_id)

        if limits.is_admin:
            return LimitCheckResult(
                allowed=True,
                reason="Admin users have unlimited access",
                details={"estimated_calls": estimated_calls, "estimated_tokens": total_tokens},
                limits=limits,
            )

        suggestion = get_upgrade_suggestion(limits.subscription_tier, "tokens")

        if total_tokens > limits.remaining_tokens:
            return LimitCheckResult(
                allowed=False,
                reason="Bulk operation would exceed monthly token quota",
                details={
                    "estimated_calls": estimated_calls,
                    "estimated_tokens_per_call": estimated_tokens_per_call,
                    "total_estimated_tokens": total_tokens,
                    "remaining_tokens": limits.remaining_tokens,
                    "upgrade_suggestion": suggestion,
                },
                upgrade_suggestion=suggestion,
                limits=limits,
            )

        max_calls = MAX_BULK_CALLS_PER_TIER.get(limits.subscription_tier, MAX_BULK_CALLS_PER_TIER["free"])
        if estimated_calls > max_calls:
            return LimitCheckResult(
                allowed=False,
                reason=f"Bulk operation exceeds recommended limit for {limits.subscription_tier} tier",
                details={
                    "estimated_calls": estimated_calls,
                    "max_recommended_calls": max_calls,
                    "upgrade_suggestion": suggestion,
                },
                upgrade_suggestion=suggestion,
                limits=limits,
            )

        return LimitCheckResult(
            allowed=True,
            reason="Bulk operation within limits",
            details={
                "estimated_calls": estimated_calls,
                "estimated_tokens": total_tokens,
                "remaining_tokens_after": limits.remaining_tokens - total_tokens,
            },
            limits=limits,
        )

    async def get_limits_with_warnings(self, tenant_id: str) -> Dict[str, Any]:
        """Limits plus warnings once usage crosses the warning threshold."""
        limits = await self.get_tenant_limits(tenant_id)
        threshold = self._warning_threshold * 100
        warnings = []

        if limits.agent_usage_percentage >= threshold:
            warnings.append({
                "type": "agent_limit_warning",
                "message": f"You're using {limits.agent_usage_percentage:.1f}% of your agent limit",
                "current": limits.current_agents,
                "limit": limits.max_agents,
                "suggestion": get_upgrade_suggestion(limits.subscription_tier, "agents")
                if limits.remaining_agents <= 1 else None,
            })

        if limits.token_usage_percentage >= threshold:
            warnings.append({
                "type": "token_limit_warning",
                "message": f"You're using {limits.token_usage_percentage:.1f}% of your monthly token quota",
                "current": limits.tokens_this_month,
                "limit": limits.monthly_token_quota,
                "suggestion": get_upgrade_suggestion(limits.subscription_tier, "tokens")
                if limits.remaining_tokens <= limits.monthly_token_quota * 0.1 else None,
            })

        if limits.remaining_agents <= 0:
            warnings.append({
                "type": "agent_limit_exceeded",
                "message": "Agent limit reached. Upgrade to create more agents.",
                "current": limits.current_agents,
                "limit": limits.max_agents,
                "suggestion": get_upgrade_suggestion(limits.subscription_tier, "agents"),
            })

        if limits.remaining_tokens <= 0:
            warnings.append({
                "type": "token_limit_exceeded",
                "message": "Monthly token quota exceeded. Upgrade for more tokens.",
                "current": limits.tokens_this_month,
                "limit": limits.monthly_token_quota,
                "suggestion": get_upgrade_suggestion(limits.subscription_tier, "tokens"),
            })

        return {
            "limits": limits.model_dump(),
            "warnings": warnings,
            "has_warnings": len(warnings) > 0,
        }

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_usage(self, tenant_id: str, record: UsageRecord) -> Dict[str, Any]:
        """
        Add a usage record to today's bucket.

        The increment is a single atomic database call; the per-(tenant, day)
        lock additionally serializes recordings issued by this process.
        """
        if not tenant_id:
            raise ValueError("Invalid tenant ID")

        cost = self.calculate_cost(record.provider, record.tokens, record.duration_seconds)
        today = datetime.utcnow().date().isoformat()

        async with self._bucket_locks((tenant_id, today)):
            self._supabase.rpc(self.INCREMENT_RPC, {
                "p_tenant_id": tenant_id,
                "p_date": today,
                "p_tokens": record.tokens,
                "p_calls": record.calls,
                "p_duration_seconds": record.duration_seconds,
                "p_cost": cost,
            }).execute()

        logger.info(
            f"Usage tracked for tenant {tenant_id}: {record.provider} - "
            f"tokens: {record.tokens}, duration: {record.duration_seconds}s, cost: ${cost:.6f}"
        )

        return {
            "provider": record.provider,
            "tokens": record.tokens,
            "duration_seconds": record.duration_seconds,
            "calls": record.calls,
            "cost": round(cost, 6),
            "date": today,
        }
