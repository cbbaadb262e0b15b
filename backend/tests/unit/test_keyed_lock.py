"""
Unit Tests for KeyedLock
Per-key serialisation and cleanup of released locks
"""
import asyncio

import pytest

from campaign_engine.core.keyed_lock import KeyedLock
from campaign_engine.domain.models.usage import UsageProvider, UsageRecord
from campaign_engine.domain.services.usage_ledger import UsageLedger


class TestKeyedLock:
    """Tests for the per-key lock table"""

    @pytest.mark.asyncio
    async def test_released_keys_are_dropped(self):
        locks = KeyedLock()

        async with locks("run-1"):
            assert "run-1" in locks

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_same_key_is_serialised(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks("run-1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_survives_while_waiters_remain(self):
        """A late arrival must queue behind the current waiter, not get a fresh lock"""
        locks = KeyedLock()
        release_first = asyncio.Event()
        events = []

        async def first():
            async with locks("run-1"):
                events.append("first")
                await release_first.wait()

        async def second():
            async with locks("run-1"):
                events.append("second-in")
                await asyncio.sleep(0.01)
                events.append("second-out")

        async def late():
            async with locks("run-1"):
                events.append("late")

        first_task = asyncio.create_task(first())
        await asyncio.sleep(0)
        second_task = asyncio.create_task(second())
        await asyncio.sleep(0)

        release_first.set()
        await first_task
        # second now owns the lock; the key must still be present
        assert "run-1" in locks
        await late()
        await second_task

        assert events == ["first", "second-in", "second-out", "late"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_do_not_block(self):
        locks = KeyedLock()

        async with locks("run-1"):
            async with locks("run-2"):
                assert len(locks) == 2

        assert len(locks) == 0


class TestLedgerLocks:
    """Usage recording must not accumulate one lock per tenant and day"""

    @pytest.mark.asyncio
    async def test_bucket_locks_do_not_grow(self, supabase, config):
        ledger = UsageLedger(supabase, config)

        await asyncio.gather(*[
            ledger.record_usage(f"tenant-{i}", UsageRecord(provider=UsageProvider.GROQ, tokens=10))
            for i in range(50)
        ])

        assert len(supabase.rows("usage_buckets")) == 50
        assert len(ledger._bucket_locks) == 0
