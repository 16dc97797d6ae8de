"""Monthly quota counters per user.

Every write is a single conditional UPDATE, so concurrent requests from any
number of instances can never push a bounded counter past its limit or reset
a month twice.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.exceptions import PersistenceFailure
from subscription_engine.core.retry import call_with_retry
from subscription_engine.db.base import as_utc, get_session_factory, transaction, utcnow
from subscription_engine.db.models.usage_limits import UsageLimits
from subscription_engine.domain.plans import UNLIMITED, PlanType, QuotaType, quotas_for
from subscription_engine.services.accounts import get_or_create_user

logger = structlog.get_logger(__name__)

_USED_COLUMNS = {
    QuotaType.IDEAS: (UsageLimits.ideas_used, UsageLimits.ideas_limit),
    QuotaType.VALIDATIONS: (UsageLimits.validations_used, UsageLimits.validations_limit),
    QuotaType.CONTENT: (UsageLimits.content_used, UsageLimits.content_limit),
}


def first_of_next_month(moment: datetime) -> datetime:
    """Midnight UTC on the 1st of the calendar month after ``moment``."""
    moment = as_utc(moment)
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=UTC)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int | None:
        if self.unlimited:
            return None
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class UsageSnapshot:
    user_id: str
    plan_type: str
    reset_date: datetime
    quotas: dict[str, QuotaUsage]


class UsageLedger:
    """Quota consumption and lazy monthly resets for one user at a time."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Public operations (own transaction, retried on transient failures)
    # ------------------------------------------------------------------

    async def increment(
        self, user_id: str, quota_type: QuotaType | str, now: datetime | None = None
    ) -> bool:
        """Consume one unit of a quota.

        Returns:
            True if the counter was incremented, False if the quota is exhausted
            (counter unchanged). Unlimited quotas always return True.
        """
        quota_type = QuotaType(quota_type)
        now = as_utc(now) or utcnow()
        return await call_with_retry(self._increment_once, user_id, quota_type, now)

    async def reset_if_due(self, user_id: str, now: datetime | None = None) -> bool:
        """Zero the counters if the stored reset date has passed. True if a reset happened."""
        now = as_utc(now) or utcnow()
        return await call_with_retry(self._reset_once, user_id, now)

    async def snapshot(self, user_id: str, now: datetime | None = None) -> UsageSnapshot:
        """Current counters and limits, applying a due reset first."""
        now = as_utc(now) or utcnow()
        return await call_with_retry(self._snapshot_once, user_id, now)

    async def _increment_once(self, user_id: str, quota_type: QuotaType, now: datetime) -> bool:
        async with transaction(self.session_factory) as session:
            return await self.increment_in(session, user_id, quota_type, now)

    async def _reset_once(self, user_id: str, now: datetime) -> bool:
        async with transaction(self.session_factory) as session:
            row = await self.ensure_row(session, user_id, now)
            return await self._reset_row_if_due(session, row, now)

    async def _snapshot_once(self, user_id: str, now: datetime) -> UsageSnapshot:
        async with transaction(self.session_factory) as session:
            row = await self.ensure_row(session, user_id, now)
            await self._reset_row_if_due(session, row, now)
            row = await self._load(session, user_id, refresh=True)
            return UsageSnapshot(
                user_id=user_id,
                plan_type=row.plan_type,
                reset_date=as_utc(row.reset_date),
                quotas={
                    quota.value: QuotaUsage(used=getattr(row, used.key), limit=getattr(row, limit.key))
                    for quota, (used, limit) in _USED_COLUMNS.items()
                },
            )

    # ------------------------------------------------------------------
    # Session-level operations (caller owns the transaction)
    # ------------------------------------------------------------------

    async def increment_in(
        self, session: AsyncSession, user_id: str, quota_type: QuotaType, now: datetime
    ) -> bool:
        user = await get_or_create_user(session, user_id)
        row = await self.ensure_row(session, user_id, now, plan_type=user.plan_type)
        await self._reset_row_if_due(session, row, now)

        # Limits come from the user's plan at call time, not the cached row
        limits = quotas_for(user.plan_type)
        limit = limits.limit_for(quota_type)
        used_col, limit_col = _USED_COLUMNS[quota_type]

        stmt = (
            update(UsageLimits)
            .where(UsageLimits.user_id == user_id)
            .values({used_col: used_col + 1, limit_col: limit})
            .execution_options(synchronize_session=False)
        )
        if limit != UNLIMITED:
            stmt = stmt.where(used_col < limit)

        result = await session.execute(stmt)
        allowed = result.rowcount == 1
        if not allowed:
            logger.info(
                "quota_exhausted",
                user_id=user_id,
                quota_type=quota_type.value,
                limit=limit,
                plan_type=user.plan_type,
            )
        return allowed

    async def apply_plan(
        self, session: AsyncSession, user_id: str, plan_type: PlanType | str, now: datetime
    ) -> None:
        """Set a plan's limits and zero every counter (plan change or activation)."""
        plan_value = PlanType(plan_type).value
        limits = quotas_for(plan_value)
        await self.ensure_row(session, user_id, now, plan_type=plan_value)
        await session.execute(
            update(UsageLimits)
            .where(UsageLimits.user_id == user_id)
            .values(
                plan_type=plan_value,
                ideas_used=0,
                validations_used=0,
                content_used=0,
                ideas_limit=limits.ideas,
                validations_limit=limits.validations,
                content_limit=limits.content,
                reset_date=first_of_next_month(now),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("usage_limits_applied", user_id=user_id, plan_type=plan_value)

    async def ensure_row(
        self,
        session: AsyncSession,
        user_id: str,
        now: datetime,
        plan_type: str | None = None,
    ) -> UsageLimits:
        """Load the UsageLimits row, creating it with the plan's limits if missing."""
        row = await self._load(session, user_id)
        if row is not None:
            return row

        if plan_type is None:
            plan_type = (await get_or_create_user(session, user_id)).plan_type
        limits = quotas_for(plan_type)
        row = UsageLimits(
            user_id=user_id,
            plan_type=plan_type,
            ideas_used=0,
            validations_used=0,
            content_used=0,
            ideas_limit=limits.ideas,
            validations_limit=limits.validations,
            content_limit=limits.content,
            reset_date=first_of_next_month(now),
        )
        session.add(row)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise PersistenceFailure(f"Concurrent creation of usage limits for {user_id}") from exc
        return row

    async def _load(self, session: AsyncSession, user_id: str, refresh: bool = False) -> UsageLimits | None:
        stmt = select(UsageLimits).where(UsageLimits.user_id == user_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _reset_row_if_due(self, session: AsyncSession, row: UsageLimits, now: datetime) -> bool:
        stored = as_utc(row.reset_date)
        if now < stored:
            return False

        next_reset = stored
        while next_reset <= now:
            next_reset = first_of_next_month(next_reset)

        # CAS on the old reset_date: only one concurrent caller performs the reset
        result = await session.execute(
            update(UsageLimits)
            .where(UsageLimits.user_id == row.user_id, UsageLimits.reset_date == stored)
            .values(ideas_used=0, validations_used=0, content_used=0, reset_date=next_reset)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.debug("usage_reset_already_applied", user_id=row.user_id)
            return False

        logger.info(
            "usage_counters_reset",
            user_id=row.user_id,
            previous_reset_date=stored.isoformat(),
            next_reset_date=next_reset.isoformat(),
        )
        return True
