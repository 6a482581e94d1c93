"""
Shared fixtures: an engine over the in-memory store with a fixed clock,
deterministic codes and recording collaborators. No Redis or Postgres needed;
the Postgres tests go through `postgres_store` and skip without TEST_DATABASE_URL.
"""
import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import asyncpg
import pytest

from flux.db import PostgresStore, init_schema
from flux.engine import OrderEngine
from flux.models import DeliveryDraft, OrderDraft, Profile, Session
from flux.order_state import Role
from flux.realtime import InMemoryBroker
from flux.store import MemoryStore

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
CITY = "Rio Verde"

# Throwaway database: its tables are emptied before and after each test using it
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingDispatcher:
    def __init__(self, fail_for: set[str] | None = None):
        self.jobs = []
        self.fail_for = fail_for or set()

    async def dispatch(self, job) -> None:
        if job.delivery_id in self.fail_for:
            raise RuntimeError("provider down")
        self.jobs.append(job)


class FakeGateway:
    def __init__(self, fail: bool = False):
        self.codes = []
        self.support = []
        self.fail = fail

    async def send_delivery_code(self, job) -> None:
        if self.fail:
            raise RuntimeError("gateway down")
        self.codes.append(job)

    async def notify_support(self, text: str, phone: str | None = None) -> None:
        self.support.append((text, phone))


class SequentialCodes:
    """Hands out 100001, 100002, ... so tests know every plaintext code."""

    def __init__(self):
        self.n = 100000
        self.issued = []

    def __call__(self) -> str:
        self.n += 1
        code = str(self.n)
        self.issued.append(code)
        return code


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def code_factory():
    return SequentialCodes()


@pytest.fixture
def engine(store, dispatcher, broker, gateway, clock, code_factory):
    return OrderEngine(
        store,
        dispatcher,
        broker,
        gateway,
        clock=clock,
        max_validation_attempts=5,
        code_factory=code_factory,
    )


async def add_user(store, user_id: str, role: Role, *, city: str | None = CITY, paid: bool = True,
                   phone: str | None = None, name: str = "") -> Session:
    profile = Profile(
        user_id=user_id,
        role=role,
        name=name or user_id,
        phone=phone,
        city=city,
        state="GO",
        credits_valid_until=START + timedelta(days=30) if paid else None,
    )
    await store.upsert_profile(profile)
    return Session.from_profile(profile)


@pytest.fixture
async def company(store):
    return await add_user(store, "company-1", Role.COMPANY, phone="64 99999-0000", name="Padaria Central")


@pytest.fixture
async def driver_a(store):
    return await add_user(store, "driver-a", Role.DRIVER, name="Ana")


@pytest.fixture
async def driver_b(store):
    return await add_user(store, "driver-b", Role.DRIVER, name="Bruno")


@pytest.fixture
async def admin(store):
    return await add_user(store, "admin-1", Role.ADMIN, city=None)


def delivery_draft(price: str = "6.00", **overrides) -> DeliveryDraft:
    data = {
        "pickup_address": "Rua das Flores, 100",
        "dropoff_address": "Avenida Brasil, 2500",
        "suggested_price": Decimal(price),
        "customer_name": "Maria Souza",
        "customer_phone": "(64) 98877-6655",
    }
    data.update(overrides)
    return DeliveryDraft(**data)


def order_draft(*prices: str) -> OrderDraft:
    return OrderDraft(deliveries=[delivery_draft(p) for p in (prices or ("6.00",))])


async def _empty_tables(pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("TRUNCATE ratings, order_deliveries, orders, profiles;")


@asynccontextmanager
async def postgres_store():
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")
    try:
        pool = await asyncpg.create_pool(TEST_DATABASE_URL, min_size=2, max_size=10, timeout=5)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        pytest.skip(f"Postgres not reachable: {e}")
    try:
        await init_schema(pool)
        await _empty_tables(pool)
        yield PostgresStore(pool)
        await _empty_tables(pool)
    finally:
        await pool.close()
