"""
Shared fixtures for unit tests

In-memory stand-ins for the Supabase client and the async Redis client,
covering the calls the engine makes.
"""
import copy
from datetime import datetime
from typing import Any, Dict, List

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from campaign_engine.core.config import ConfigManager
from campaign_engine.domain.interfaces.llm_provider import GenerationResult, LLMProvider
from campaign_engine.domain.interfaces.telephony_provider import PlaceCallResult, TelephonyProvider
from campaign_engine.domain.services.queue_service import CampaignQueueService


TENANT_ID = "tenant-1"
OTHER_TENANT_ID = "tenant-2"
AGENT_ID = "agent-1"


# =============================================================================
# Supabase
# =============================================================================

class FakeResponse:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data


class FakeQuery:
    """Chainable table query: select/insert/update + filters + execute()."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters = []
        self._order = None
        self._limit = None

    def select(self, *columns, **kwargs):
        self._op = "select"
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def update(self, values: Dict[str, Any]):
        self._op = "update"
        self._payload = values
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def gte(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def in_(self, column, values):
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self) -> FakeResponse:
        if self._db.fail_tables and self._table in self._db.fail_tables:
            raise RuntimeError(f"table {self._table} unavailable")
        if self._op == "update" and self._table in self._db.fail_updates:
            raise RuntimeError(f"table {self._table} rejected update")

        rows = self._db.tables.setdefault(self._table, [])

        if self._op == "insert":
            records = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = [copy.deepcopy(record) for record in records]
            rows.extend(inserted)
            return FakeResponse([copy.deepcopy(record) for record in inserted])

        matched = [row for row in rows if all(f(row) for f in self._filters)]

        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
            return FakeResponse([copy.deepcopy(row) for row in matched])

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[:self._limit]
        return FakeResponse([copy.deepcopy(row) for row in matched])


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self._db = db
        self._name = name
        self._params = params

    def execute(self) -> FakeResponse:
        self._db.rpc_calls.append((self._name, dict(self._params)))
        if self._name != "increment_usage_bucket":
            raise RuntimeError(f"unknown function {self._name}")

        p = self._params
        buckets = self._db.tables.setdefault("usage_buckets", [])
        for bucket in buckets:
            if bucket["tenant_id"] == p["p_tenant_id"] and bucket["date"] == p["p_date"]:
                break
        else:
            bucket = {
                "tenant_id": p["p_tenant_id"],
                "date": p["p_date"],
                "total_tokens": 0,
                "total_calls": 0,
                "total_duration_seconds": 0,
                "api_costs": 0.0,
            }
            buckets.append(bucket)

        bucket["total_tokens"] += p["p_tokens"]
        bucket["total_calls"] += p["p_calls"]
        bucket["total_duration_seconds"] += p["p_duration_seconds"]
        bucket["api_costs"] += p["p_cost"]
        return FakeResponse([dict(bucket)])


class FakeSupabase:
    """Dict-of-lists database with the client's table()/rpc() surface."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.rpc_calls = []
        self.fail_tables = set()
        self.fail_updates = set()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, name, params)

    def seed(self, table: str, *rows: Dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(copy.deepcopy(list(rows)))

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])

    def row(self, table: str, row_id: str) -> Dict[str, Any]:
        return next(row for row in self.rows(table) if row.get("id") == row_id)


# =============================================================================
# Redis
# =============================================================================

class FakeRedis:
    """
    Async Redis subset used by CampaignQueueService (decode_responses=True).

    Set ``broken = True`` to make every command raise a connection error.
    """

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.broken = False
        self.closed = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("Connection refused")

    # --- sets ---
    async def sadd(self, key, *members):
        self._check()
        s = self.data.setdefault(key, set())
        added = len([m for m in members if m not in s])
        s.update(members)
        return added

    async def srem(self, key, *members):
        self._check()
        s = self.data.get(key, set())
        removed = len([m for m in members if m in s])
        s.difference_update(members)
        return removed

    async def smembers(self, key):
        self._check()
        return set(self.data.get(key, set()))

    async def sismember(self, key, member):
        self._check()
        return member in self.data.get(key, set())

    async def scard(self, key):
        self._check()
        return len(self.data.get(key, set()))

    # --- hashes ---
    async def hset(self, key, field, value):
        self._check()
        h = self.data.setdefault(key, {})
        is_new = field not in h
        h[field] = str(value)
        return int(is_new)

    async def hget(self, key, field):
        self._check()
        return self.data.get(key, {}).get(field)

    async def hgetall(self, key):
        self._check()
        return dict(self.data.get(key, {}))

    async def hincrby(self, key, field, amount=1):
        self._check()
        h = self.data.setdefault(key, {})
        value = int(h.get(field, 0)) + amount
        h[field] = str(value)
        return value

    # --- lists ---
    async def rpush(self, key, *values):
        self._check()
        lst = self.data.setdefault(key, [])
        lst.extend(values)
        return len(lst)

    async def lpush(self, key, *values):
        self._check()
        lst = self.data.setdefault(key, [])
        for value in values:
            lst.insert(0, value)
        return len(lst)

    async def lmove(self, source, destination, wherefrom="LEFT", whereto="RIGHT"):
        self._check()
        src = self.data.get(source, [])
        if not src:
            return None
        value = src.pop(0) if wherefrom == "LEFT" else src.pop()
        dst = self.data.setdefault(destination, [])
        if whereto == "RIGHT":
            dst.append(value)
        else:
            dst.insert(0, value)
        return value

    async def lrem(self, key, count, value):
        self._check()
        lst = self.data.get(key, [])
        before = len(lst)
        self.data[key] = [item for item in lst if item != value]
        return before - len(self.data[key])

    async def lrange(self, key, start, end):
        self._check()
        lst = self.data.get(key, [])
        end = len(lst) if end == -1 else end + 1
        return list(lst[start:end])

    async def llen(self, key):
        self._check()
        return len(self.data.get(key, []))

    # --- sorted sets ---
    async def zadd(self, key, mapping):
        self._check()
        z = self.data.setdefault(key, {})
        added = len([m for m in mapping if m not in z])
        z.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrangebyscore(self, key, min_score, max_score):
        self._check()
        low, high = float(min_score), float(max_score)
        z = self.data.get(key, {})
        return [m for m, s in sorted(z.items(), key=lambda item: item[1]) if low <= s <= high]

    async def zrem(self, key, *members):
        self._check()
        z = self.data.get(key, {})
        removed = 0
        for member in members:
            if member in z:
                del z[member]
                removed += 1
        return removed

    async def zcard(self, key):
        self._check()
        return len(self.data.get(key, {}))

    # --- keys / connection ---
    async def delete(self, *keys):
        self._check()
        return len([self.data.pop(key) for key in keys if key in self.data])

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True


# =============================================================================
# Providers
# =============================================================================

class FakeTelephony(TelephonyProvider):
    """Scripted place_call outcomes: True -> success, str -> error message, exception -> raised."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []

    async def place_call(self, to_number, from_number, credentials, webhook_base_url):
        self.calls.append({
            "to": to_number,
            "from": from_number,
            "credentials": credentials,
            "webhook_base_url": webhook_base_url,
        })
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return PlaceCallResult(success=True, provider_call_id=f"CA{len(self.calls):04d}", status="queued")
        return PlaceCallResult(success=False, error=outcome)

    @property
    def name(self) -> str:
        return "fake"


class FakeLLM(LLMProvider):
    """Returns scripted replies; a None entry simulates a failed generation."""

    def __init__(self, replies=None, token_usage=20):
        self.replies = list(replies or [])
        self.token_usage = token_usage
        self.requests = []

    async def initialize(self, config: dict) -> None:
        pass

    async def generate(self, agent_prompt, history, new_user_message=None, model=None):
        self.requests.append({
            "agent_prompt": agent_prompt,
            "history": list(history),
            "new_user_message": new_user_message,
            "model": model,
        })
        reply = self.replies.pop(0) if self.replies else "Sure, happy to help."
        if reply is None:
            return GenerationResult(success=False, error="model unavailable")
        return GenerationResult(success=True, text=reply, token_usage=self.token_usage, model=model)

    async def cleanup(self) -> None:
        pass

    @property
    def name(self) -> str:
        return "fake"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config():
    return ConfigManager(env="test")


@pytest.fixture
def supabase():
    """Database with a pro tenant, a second tenant and one agent."""
    db = FakeSupabase()
    db.seed(
        "tenants",
        {"id": TENANT_ID, "role": "user", "subscription_tier": "pro", "monthly_token_quota": 50000},
        {"id": OTHER_TENANT_ID, "role": "user", "subscription_tier": "free", "monthly_token_quota": 1000},
    )
    db.seed("agents", {
        "id": AGENT_ID,
        "tenant_id": TENANT_ID,
        "name": "Ava",
        "type": "sales",
        "use_case": "Acme Solar",
        "description": "You are Ava, a friendly sales agent for Acme Solar.",
    })
    db.seed("telephony_configs", {
        "tenant_id": TENANT_ID,
        "account_sid": "AC123",
        "auth_token": "secret",
        "from_phone_number": "+15550001111",
    })
    return db


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def queue_service(fake_redis, config):
    """Queue on the fake broker with zero backoff so retries are due at once."""
    service = CampaignQueueService(redis_client=fake_redis, config=config)
    service.backoff_delay_ms = 0
    return service


def seed_campaign(db: FakeSupabase, campaign_id="campaign-1", state="created", phones=(), tenant_id=TENANT_ID):
    """Insert a campaign and pending contacts; returns the contact ids."""
    db.seed("campaigns", {
        "id": campaign_id,
        "tenant_id": tenant_id,
        "agent_id": AGENT_ID,
        "name": "Spring promo",
        "source_type": "csv",
        "state": state,
        "created_at": datetime.utcnow().isoformat(),
    })
    contact_ids = []
    for index, phone in enumerate(phones):
        contact_id = f"{campaign_id}-contact-{index}"
        db.seed("campaign_contacts", {
            "id": contact_id,
            "campaign_id": campaign_id,
            "phone_number": phone,
            "first_name": f"Contact{index}",
            "last_name": "Test",
            "status": "pending",
            "created_at": f"2025-01-01T00:00:0{index}",
        })
        contact_ids.append(contact_id)
    return contact_ids
