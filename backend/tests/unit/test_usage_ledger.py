"""
Unit Tests for Usage Ledger and Usage Recorder
"""
import asyncio
from datetime import datetime

import pytest

from campaign_engine.domain.exceptions import NotFoundError, QuotaExceededError
from campaign_engine.domain.models.usage import UsageEstimate, UsageProvider, UsageRecord
from campaign_engine.domain.services.usage_ledger import UsageLedger, get_upgrade_suggestion
from campaign_engine.domain.services.usage_recorder import UsageRecorder

from conftest import TENANT_ID


def seed_usage(db, tokens, date=None, tenant_id=TENANT_ID):
    db.seed("usage_buckets", {
        "tenant_id": tenant_id,
        "date": date or datetime.utcnow().date().isoformat(),
        "total_tokens": tokens,
        "total_calls": 0,
        "total_duration_seconds": 0,
        "api_costs": 0.0,
    })


@pytest.fixture
def ledger(supabase, config):
    return UsageLedger(supabase, config)


class TestCostAndUsage:
    """Tests for cost rates and monthly aggregation"""

    def test_calculate_cost_per_provider(self, ledger):
        assert ledger.calculate_cost("groq", tokens=1000) == pytest.approx(0.0001)
        assert ledger.calculate_cost("deepgram", duration_seconds=10) == pytest.approx(0.025)
        assert ledger.calculate_cost("twilio", duration_seconds=120) == pytest.approx(0.028)

    def test_unknown_provider_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.calculate_cost("carrier-pigeon", tokens=10)

    @pytest.mark.asyncio
    async def test_previous_months_not_counted(self, ledger, supabase):
        seed_usage(supabase, 500)
        seed_usage(supabase, 9999, date="2000-01-15")

        usage = await ledger.get_current_month_usage(TENANT_ID)

        assert usage.total_tokens == 500

    @pytest.mark.asyncio
    async def test_limits_for_unknown_tenant(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.get_tenant_limits("ghost")

    @pytest.mark.asyncio
    async def test_tier_defaults_fill_missing_quota(self, ledger, supabase):
        supabase.seed("tenants", {"id": "tenant-3", "subscription_tier": "enterprise"})

        limits = await ledger.get_tenant_limits("tenant-3")

        assert limits.monthly_token_quota == 1000000
        assert limits.max_agents == 100


class TestQuotaGate:
    """Tests for check_call_limit() / ensure_call_allowed()"""

    @pytest.mark.asyncio
    async def test_estimate_equal_to_remaining_is_allowed(self, ledger, supabase):
        seed_usage(supabase, 49900)

        result = await ledger.check_call_limit(TENANT_ID, UsageEstimate(tokens=100))

        assert result.allowed is True
        assert result.limits.remaining_tokens == 100

    @pytest.mark.asyncio
    async def test_estimate_above_remaining_is_denied(self, ledger, supabase):
        seed_usage(supabase, 49900)

        result = await ledger.check_call_limit(TENANT_ID, UsageEstimate(tokens=101))

        assert result.allowed is False
        assert result.details["remaining_tokens"] == 100
        assert result.details["requested_tokens"] == 101
        assert result.upgrade_suggestion["suggested_tier"] == "enterprise"

    @pytest.mark.asyncio
    async def test_admin_is_exempt(self, ledger, supabase):
        supabase.row("tenants", TENANT_ID)["role"] = "admin"
        seed_usage(supabase, 10**9)

        result = await ledger.check_call_limit(TENANT_ID, UsageEstimate(tokens=10**6))

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_ensure_call_allowed_raises_on_denial(self, ledger, supabase):
        supabase.row("tenants", TENANT_ID)["monthly_token_quota"] = 10

        with pytest.raises(QuotaExceededError) as exc_info:
            await ledger.ensure_call_allowed(TENANT_ID, UsageEstimate(tokens=100))

        assert exc_info.value.details["monthly_quota"] == 10
        assert exc_info.value.upgrade_suggestion is not None


class TestBulkValidation:
    """Tests for validate_bulk_operation()"""

    @pytest.mark.asyncio
    async def test_within_limits(self, ledger):
        result = await ledger.validate_bulk_operation(TENANT_ID, 50, 100)

        assert result.allowed is True
        assert result.details["remaining_tokens_after"] == 45000

    @pytest.mark.asyncio
    async def test_token_quota_checked_first(self, ledger):
        result = await ledger.validate_bulk_operation(TENANT_ID, 100, 1000)

        assert result.allowed is False
        assert result.details["total_estimated_tokens"] == 100000

    @pytest.mark.asyncio
    async def test_tier_call_cap(self, ledger):
        result = await ledger.validate_bulk_operation(TENANT_ID, 101, 10)

        assert result.allowed is False
        assert result.details["max_recommended_calls"] == 100


class TestWarnings:
    """Tests for get_limits_with_warnings()"""

    @pytest.mark.asyncio
    async def test_no_warnings_below_threshold(self, ledger, supabase):
        seed_usage(supabase, 1000)

        result = await ledger.get_limits_with_warnings(TENANT_ID)

        assert result["has_warnings"] is False

    @pytest.mark.asyncio
    async def test_token_warning_near_quota(self, ledger, supabase):
        seed_usage(supabase, 45000)

        result = await ledger.get_limits_with_warnings(TENANT_ID)

        assert [w["type"] for w in result["warnings"]] == ["token_limit_warning"]
        assert result["warnings"][0]["suggestion"]["suggested_tier"] == "enterprise"

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, ledger, supabase):
        seed_usage(supabase, 60000)

        result = await ledger.get_limits_with_warnings(TENANT_ID)

        types = [w["type"] for w in result["warnings"]]
        assert "token_limit_exceeded" in types
        assert result["limits"]["remaining_tokens"] == 0

    def test_highest_tier_has_no_upgrade(self):
        assert get_upgrade_suggestion("enterprise")["suggested_tier"] is None


class TestRecordUsage:
    """Tests for record_usage()"""

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, ledger, supabase):
        await asyncio.gather(
            ledger.record_usage(TENANT_ID, UsageRecord(provider=UsageProvider.GROQ, tokens=100)),
            ledger.record_usage(TENANT_ID, UsageRecord(provider=UsageProvider.GROQ, tokens=50)),
        )

        buckets = supabase.rows("usage_buckets")
        assert len(buckets) == 1
        assert buckets[0]["total_tokens"] == 150
        assert buckets[0]["total_calls"] == 2

        usage = await ledger.get_current_month_usage(TENANT_ID)
        assert usage.total_tokens == 150

    @pytest.mark.asyncio
    async def test_record_returns_cost(self, ledger):
        result = await ledger.record_usage(
            TENANT_ID, UsageRecord(provider=UsageProvider.TWILIO, duration_seconds=60, calls=0)
        )

        assert result["cost"] == pytest.approx(0.014)
        assert result["calls"] == 0

    @pytest.mark.asyncio
    async def test_blank_tenant_rejected(self, ledger):
        with pytest.raises(ValueError, match="Invalid tenant ID"):
            await ledger.record_usage("", UsageRecord(provider=UsageProvider.GROQ, tokens=1))


class TestUsageRecorder:
    """Tests for the background recorder"""

    @pytest.mark.asyncio
    async def test_submit_then_flush_writes(self, ledger, supabase):
        recorder = UsageRecorder(ledger)

        assert recorder.submit(TENANT_ID, UsageRecord(provider=UsageProvider.GROQ, tokens=40)) is True
        await recorder.flush()

        assert supabase.rows("usage_buckets")[0]["total_tokens"] == 40
        assert recorder.get_stats()["recorded"] == 1
        await recorder.stop()

    @pytest.mark.asyncio
    async def test_full_queue_drops_record(self, ledger, supabase):
        recorder = UsageRecorder(ledger, maxsize=1)

        first = recorder.submit(TENANT_ID, UsageRecord(provider=UsageProvider.GROQ, tokens=1))
        second = recorder.submit(TENANT_ID, UsageRecord(provider=UsageProvider.GROQ, tokens=2))
        await recorder.stop()

        assert (first, second) == (True, False)
        stats = recorder.get_stats()
        assert stats["dropped"] == 1
        assert stats["recorded"] == 1
        assert supabase.rows("usage_buckets")[0]["total_tokens"] == 1

    @pytest.mark.asyncio
    async def test_failed_write_is_counted(self, ledger):
        recorder = UsageRecorder(ledger)

        recorder.submit("", UsageRecord(provider=UsageProvider.GROQ, tokens=1))
        await recorder.stop()

        assert recorder.get_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_flush_without_submissions(self, ledger):
        recorder = UsageRecorder(ledger)

        await recorder.flush()

        assert recorder.get_stats()["pending"] == 0
