"""API-specific test fixtures."""

import asyncio
from contextlib import asynccontextmanager

import pytest
from fakeredis import FakeAsyncRedis
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tests.payloads import signed


@pytest.fixture
def api_client(sqlite_url):
    """FastAPI test client backed by a file SQLite database and fake Redis.

    Initializes the globals inside the TestClient's own event loop so route
    handlers can use get_session_factory() and get_redis().
    """
    from fastapi import HTTPException

    from subscription_engine.api.routes import api_router
    from subscription_engine.core.config import get_settings
    from subscription_engine.core.exceptions import QuotaExceeded, RateLimitExceeded
    from subscription_engine.db import close_db, close_redis, init_db, init_redis
    from subscription_engine.main import (
        generic_exception_handler,
        http_exception_handler,
        quota_exceeded_handler,
        rate_limit_exceeded_handler,
    )
    from subscription_engine.middleware.correlation import setup_correlation_middleware

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB and Redis in TestClient's event loop."""
        import subscription_engine.db.base as db_mod
        import subscription_engine.db.redis as redis_mod

        app.state.shutting_down = False
        db_mod._engine = None
        db_mod._session_factory = None
        redis_mod._redis = None
        await init_db(sqlite_url)
        await init_redis(client=FakeAsyncRedis(decode_responses=True))
        yield
        await close_redis()
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription Engine - Test Client",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    setup_correlation_middleware(app)

    # Exception handlers (needed for debug_id and 429 body testing)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(QuotaExceeded)(quota_exceeded_handler)
    app.exception_handler(RateLimitExceeded)(rate_limit_exceeded_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


@pytest.fixture
def seed(sqlite_url, api_client):
    """Run ``fn(session)`` in one transaction against the client's database.

    Uses its own engine and event loop; the client's loop lives in another thread.
    """

    def run(fn):
        async def go():
            engine = create_async_engine(sqlite_url)
            try:
                factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
                async with factory() as session:
                    async with session.begin():
                        return await fn(session)
            finally:
                await engine.dispose()

        return asyncio.run(go())

    return run


@pytest.fixture
def post_webhook(api_client):
    """Sign and deliver a webhook body through the HTTP route."""

    def post(body: dict, signature: str | None = None):
        raw, good_signature = signed(body)
        headers = {"Content-Type": "application/json", "X-Razorpay-Signature": signature or good_signature}
        return api_client.post("/api/webhooks/razorpay", content=raw, headers=headers)

    return post
