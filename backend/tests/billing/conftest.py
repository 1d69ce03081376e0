"""Shared fixtures for billing tests.

Each test gets its own SQLite database file (aiosqlite) with tables created
from the ORM metadata, and an in-process cache implementing the Cache
interface.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CACHE_ENABLED", "false")

import fnmatch
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.cache import get_cache
from app.core.database import Base, get_session
from app.core.security import create_access_token
from app.core.time import utcnow
from app.modules.billing import models  # noqa: F401
from app.modules.billing.models import (
    BillingCycle,
    Plan,
    PromoCode,
    Subscription,
    SubscriptionStatus,
)


class FakeCache:
    """Dict-backed cache. TTLs are recorded but never enforced."""

    def __init__(self):
        self.store: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.deleted: list[str] = []

    async def get(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.store.pop(key, None)

    async def delete_pattern(self, pattern: str) -> None:
        self.deleted.append(pattern)
        for key in [k for k in self.store if fnmatch.fnmatchcase(k, pattern)]:
            del self.store[key]


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite defers BEGIN; emit it ourselves so SAVEPOINT behaves
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
    )
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


# ==================== Factories ====================

async def _create_plan(session: AsyncSession, **overrides) -> Plan:
    values = dict(
        plan_code=f"PLAN_{uuid.uuid4().hex[:8].upper()}",
        plan_name="Starter",
        monthly_price=Decimal("999.00"),
        yearly_price=Decimal("9999.00"),
        lifetime_price=Decimal("49999.00"),
        max_contacts=1000,
        max_templates=10,
        max_campaigns_per_month=5,
        max_messages_per_month=100,
        max_team_members=2,
        max_whatsapp_numbers=1,
        has_automation=True,
        is_active=True,
        is_visible=True,
        display_order=1,
    )
    values.update(overrides)
    plan = Plan(**values)
    session.add(plan)
    await session.commit()
    return plan


async def _create_promo(session: AsyncSession, **overrides) -> PromoCode:
    now = utcnow()
    values = dict(
        code=f"SAVE{uuid.uuid4().hex[:6].upper()}",
        discount_type="PERCENTAGE",
        discount_value=Decimal("10.00"),
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=30),
        max_uses=None,
        max_uses_per_user=1,
        current_uses=0,
        is_active=True,
    )
    values.update(overrides)
    promo = PromoCode(**values)
    session.add(promo)
    await session.commit()
    return promo


async def _create_subscription(
    session: AsyncSession, user_id: uuid.UUID, plan: Plan, **overrides
) -> Subscription:
    now = utcnow()
    values = dict(
        user_id=user_id,
        plan_id=plan.id,
        billing_cycle=BillingCycle.MONTHLY.value,
        amount_paid=plan.monthly_price,
        currency="INR",
        status=SubscriptionStatus.ACTIVE.value,
        start_date=now - timedelta(days=1),
        end_date=now + timedelta(days=29),
        next_billing_date=now + timedelta(days=29),
        auto_renew=True,
    )
    values.update(overrides)
    subscription = Subscription(**values)
    session.add(subscription)
    await session.commit()
    return subscription


@pytest.fixture
def make_plan(session):
    async def factory(**overrides) -> Plan:
        return await _create_plan(session, **overrides)
    return factory


@pytest.fixture
def make_promo(session):
    async def factory(**overrides) -> PromoCode:
        return await _create_promo(session, **overrides)
    return factory


@pytest.fixture
def make_subscription(session):
    async def factory(user_id: uuid.UUID, plan: Plan, **overrides) -> Subscription:
        return await _create_subscription(session, user_id, plan, **overrides)
    return factory


# ==================== HTTP ====================

@pytest.fixture
def auth_headers():
    def build(user_id: uuid.UUID, role: str = "user") -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}
    return build


@pytest_asyncio.fixture
async def client(session_maker, cache):
    from app.main import app

    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_cache] = lambda: cache
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
