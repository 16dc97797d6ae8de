"""Shared test fixtures for all test groups.

Settings are read once (lru_cache), so the environment is prepared here
before any test module imports the package.
"""

import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_key_secret")
os.environ.setdefault("RAZORPAY_PLAN_PRO_MONTHLY", "plan_pro_monthly_test")
os.environ.setdefault("RAZORPAY_PLAN_PRO_YEARLY", "plan_pro_yearly_test")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal-test-token")

from datetime import UTC, datetime

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from subscription_engine.db.base import Base


@pytest.fixture
def now() -> datetime:
    """Fixed clock: mid-month, mid-day UTC."""
    return datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'subscription_engine_test.db'}"


@pytest.fixture
async def engine(sqlite_url) -> AsyncEngine:
    """File-backed SQLite engine with all tables created.

    Also installs the global session factory so code paths that call
    get_session_factory() share this database.
    """
    import subscription_engine.db.base as db_mod
    import subscription_engine.db.models  # noqa: F401

    engine = create_async_engine(sqlite_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    """Plain session for arranging rows and asserting on results."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def fake_redis():
    """In-process Redis replacement."""
    redis = FakeAsyncRedis(decode_responses=True)
    yield redis
    await redis.flushall()
    await redis.aclose()
