"""Tests for monthly quota counters (SQLite-backed)."""

from datetime import UTC, datetime

import pytest

from subscription_engine.db.base import as_utc, transaction
from subscription_engine.db.models import UsageLimits, User
from subscription_engine.domain.plans import UNLIMITED, PlanType, QuotaType
from subscription_engine.services.usage_ledger import UsageLedger, first_of_next_month

pytestmark = pytest.mark.integration


@pytest.fixture
def ledger(session_factory):
    return UsageLedger(session_factory)


async def _arrange(session_factory, user_id, plan_type="free", reset_date=None, **counters):
    """Insert a user and a usage row with explicit counters."""
    limits = {"free": (3, 1, 3), "pro_monthly": (UNLIMITED, 25, UNLIMITED)}[plan_type]
    async with transaction(session_factory) as session:
        session.add(User(id=user_id, plan_type=plan_type, subscription_status="inactive"))
        session.add(
            UsageLimits(
                user_id=user_id,
                plan_type=plan_type,
                ideas_used=counters.get("ideas_used", 0),
                validations_used=counters.get("validations_used", 0),
                content_used=counters.get("content_used", 0),
                ideas_limit=limits[0],
                validations_limit=limits[1],
                content_limit=limits[2],
                reset_date=reset_date or datetime(2026, 4, 1, tzinfo=UTC),
            )
        )


async def _row(session_factory, user_id) -> UsageLimits:
    async with session_factory() as session:
        return await session.get(UsageLimits, user_id)


def test_first_of_next_month():
    assert first_of_next_month(datetime(2026, 3, 15, 12, tzinfo=UTC)) == datetime(2026, 4, 1, tzinfo=UTC)
    assert first_of_next_month(datetime(2026, 12, 31, 23, 59, tzinfo=UTC)) == datetime(2027, 1, 1, tzinfo=UTC)
    assert first_of_next_month(datetime(2026, 4, 1, tzinfo=UTC)) == datetime(2026, 5, 1, tzinfo=UTC)


async def test_first_increment_bootstraps_free_user(ledger, session_factory, now):
    assert await ledger.increment("new-user", QuotaType.IDEAS, now) is True

    row = await _row(session_factory, "new-user")
    assert row.ideas_used == 1
    assert row.ideas_limit == 3
    assert as_utc(row.reset_date) == datetime(2026, 4, 1, tzinfo=UTC)

    async with session_factory() as session:
        user = await session.get(User, "new-user")
    assert user.plan_type == "free"


async def test_increment_at_limit_is_refused_and_counter_unchanged(ledger, session_factory, now):
    await _arrange(session_factory, "user-e", ideas_used=3)

    assert await ledger.increment("user-e", QuotaType.IDEAS, now) is False

    row = await _row(session_factory, "user-e")
    assert row.ideas_used == 3


async def test_bounded_quota_stops_exactly_at_limit(ledger, session_factory, now):
    results = [await ledger.increment("user-v", QuotaType.VALIDATIONS, now) for _ in range(3)]

    assert results == [True, False, False]
    assert (await _row(session_factory, "user-v")).validations_used == 1


async def test_unlimited_quota_always_increments(ledger, session_factory, now):
    await _arrange(session_factory, "user-pro", plan_type="pro_monthly")

    for _ in range(40):
        assert await ledger.increment("user-pro", QuotaType.IDEAS, now) is True

    assert (await _row(session_factory, "user-pro")).ideas_used == 40


async def test_limits_follow_current_plan_not_cached_row(ledger, session_factory, now):
    """User upgraded but the usage row still carries free limits."""
    await _arrange(session_factory, "user-up", ideas_used=3)
    async with transaction(session_factory) as session:
        (await session.get(User, "user-up")).plan_type = PlanType.PRO_MONTHLY.value

    assert await ledger.increment("user-up", QuotaType.IDEAS, now) is True

    row = await _row(session_factory, "user-up")
    assert row.ideas_used == 4
    assert row.ideas_limit == UNLIMITED


async def test_reset_if_due_zeroes_counters_once(ledger, session_factory, now):
    await _arrange(
        session_factory,
        "user-r",
        reset_date=datetime(2026, 3, 1, tzinfo=UTC),
        ideas_used=3,
        validations_used=1,
        content_used=2,
    )

    assert await ledger.reset_if_due("user-r", now) is True
    assert await ledger.reset_if_due("user-r", now) is False

    row = await _row(session_factory, "user-r")
    assert (row.ideas_used, row.validations_used, row.content_used) == (0, 0, 0)
    assert as_utc(row.reset_date) == datetime(2026, 4, 1, tzinfo=UTC)


async def test_reset_not_due_before_boundary(ledger, session_factory, now):
    await _arrange(session_factory, "user-nr", ideas_used=2)

    assert await ledger.reset_if_due("user-nr", now) is False
    assert (await _row(session_factory, "user-nr")).ideas_used == 2


async def test_idle_months_advance_to_next_future_boundary(ledger, session_factory, now):
    await _arrange(session_factory, "user-idle", reset_date=datetime(2025, 12, 1, tzinfo=UTC), ideas_used=3)

    assert await ledger.reset_if_due("user-idle", now) is True
    assert as_utc((await _row(session_factory, "user-idle")).reset_date) == datetime(2026, 4, 1, tzinfo=UTC)


async def test_increment_applies_due_reset_first(ledger, session_factory, now):
    await _arrange(session_factory, "user-b", reset_date=datetime(2026, 3, 1, tzinfo=UTC), ideas_used=3)

    assert await ledger.increment("user-b", QuotaType.IDEAS, now) is True
    assert (await _row(session_factory, "user-b")).ideas_used == 1


async def test_apply_plan_sets_limits_and_zeroes_counters(ledger, session_factory, now):
    await _arrange(session_factory, "user-p", ideas_used=3, validations_used=1)

    async with transaction(session_factory) as session:
        await ledger.apply_plan(session, "user-p", PlanType.PRO_YEARLY, now)

    row = await _row(session_factory, "user-p")
    assert row.plan_type == "pro_yearly"
    assert (row.ideas_used, row.validations_used) == (0, 0)
    assert (row.ideas_limit, row.validations_limit, row.content_limit) == (UNLIMITED, 25, UNLIMITED)


async def test_snapshot_reports_remaining(ledger, session_factory, now):
    await _arrange(session_factory, "user-s", ideas_used=2)

    snapshot = await ledger.snapshot("user-s", now)

    assert snapshot.plan_type == "free"
    assert snapshot.quotas["ideas"].used == 2
    assert snapshot.quotas["ideas"].remaining == 1
    assert snapshot.quotas["validations"].remaining == 1
