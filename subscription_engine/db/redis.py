"""Shared Redis client.

Only the daily message counters live here; they must be shared by every
instance, so there is no in-process fallback. Tests install a FakeAsyncRedis
through ``init_redis(client=...)``.
"""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from subscription_engine.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, client: redis.Redis | None = None) -> None:
    """Create the shared client (no-op when already initialized).

    A URL-built client is pinged so a wrong REDIS_URL fails at startup rather
    than on the first rate-limited request.
    """
    global _redis

    if _redis is not None:
        return

    if client is not None:
        _redis = client
        return

    _redis = redis.from_url(url or get_settings().redis_url, decode_responses=True)
    await _redis.ping()


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client; RuntimeError before init_redis()."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


async def ping_redis() -> bool:
    """Readiness check: True when the shared client answers PING."""
    try:
        return bool(await get_redis().ping())
    except (RedisError, RuntimeError, OSError) as exc:
        logger.error("redis_ping_failed", error=str(exc))
        return False
