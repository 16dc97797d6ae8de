"""Daily outreach-message limits backed by Redis.

Counters are keyed per user and UTC day and expire at the next midnight UTC,
so every instance sees the same count and nothing lingers in process memory.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog
from redis.asyncio import Redis

from subscription_engine.core.config import get_settings
from subscription_engine.core.exceptions import RateLimitExceeded
from subscription_engine.db.redis import get_redis

logger = structlog.get_logger(__name__)

DEFAULT_DAILY_LIMIT = 5


@dataclass(frozen=True)
class MessageUsage:
    used: int
    limit: int
    resets_at: str  # ISO 8601, next midnight UTC

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class DailyMessageLimiter:
    """Per-user daily counter with midnight UTC reset."""

    def __init__(self, redis: Redis, limits: dict[str, int] | None = None):
        self.redis = redis
        self.limits = limits if limits is not None else get_settings().daily_message_limits

    def limit_for(self, plan_type: str | None) -> int:
        return self.limits.get(plan_type or "free", self.limits.get("free", DEFAULT_DAILY_LIMIT))

    async def hit(self, user_id: str, plan_type: str | None, now: datetime | None = None) -> MessageUsage:
        """Count one message against today's limit.

        Args:
            user_id: User identifier
            plan_type: User's current plan (selects the daily limit)
            now: Current time (for deterministic testing)

        Returns:
            Usage after this message

        Raises:
            RateLimitExceeded: the limit was already reached; the counter is unchanged
        """
        now = now or datetime.now(UTC)
        key = self._key(user_id, now)
        limit = self.limit_for(plan_type)
        reset_time = self._get_next_reset(now)

        count = await self.redis.incr(key)

        # Set expiry to next midnight if not already set
        ttl = await self.redis.ttl(key)
        if ttl == -1:
            await self.redis.expireat(key, int(reset_time.timestamp()))

        if count > limit:
            await self.redis.decr(key)
            logger.info("daily_message_limit_reached", user_id=user_id, plan_type=plan_type, limit=limit)
            raise RateLimitExceeded(limit, reset_time.isoformat())

        return MessageUsage(used=count, limit=limit, resets_at=reset_time.isoformat())

    async def usage(self, user_id: str, plan_type: str | None, now: datetime | None = None) -> MessageUsage:
        """Today's count without consuming anything."""
        now = now or datetime.now(UTC)
        raw = await self.redis.get(self._key(user_id, now))
        return MessageUsage(
            used=int(raw) if raw else 0,
            limit=self.limit_for(plan_type),
            resets_at=self._get_next_reset(now).isoformat(),
        )

    @staticmethod
    def _key(user_id: str, now: datetime) -> str:
        return f"ratelimit:{user_id}:messages:{now.astimezone(UTC).date().isoformat()}"

    @staticmethod
    def _get_next_reset(now: datetime) -> datetime:
        tomorrow = now.astimezone(UTC).date() + timedelta(days=1)
        return datetime.combine(tomorrow, datetime.min.time(), tzinfo=UTC)


def get_message_limiter() -> DailyMessageLimiter:
    """FastAPI dependency: limiter bound to the shared Redis pool."""
    return DailyMessageLimiter(get_redis())
