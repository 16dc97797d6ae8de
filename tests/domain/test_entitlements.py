"""Tests for entitlement resolution (pure, no DB)."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from subscription_engine.domain.entitlements import (
    AccessLevel,
    can_write,
    current_subscription,
    entitlement_for,
    resolve,
)
from subscription_engine.domain.plans import UNLIMITED

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@dataclass
class Row:
    status: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool = False
    id: int = 1


def test_active_within_period_is_full():
    assert resolve(Row("active", NOW + timedelta(days=30)), NOW).access_level == AccessLevel.FULL


def test_period_end_itself_is_still_full():
    assert resolve(Row("active", NOW), NOW).access_level == AccessLevel.FULL


def test_cancelling_within_period_keeps_full_access():
    """Grace policy: cancellation takes effect at period end."""
    row = Row("active", NOW + timedelta(days=5), cancel_at_period_end=True)
    assert resolve(row, NOW).access_level == AccessLevel.FULL


def test_cancelling_after_period_end_is_readonly():
    row = Row("active", NOW - timedelta(days=1), cancel_at_period_end=True)
    entitlement = resolve(row, NOW)

    assert entitlement.access_level == AccessLevel.READONLY
    assert entitlement.reason == "subscription_expired"


def test_cancelled_and_expired_is_readonly():
    row = Row("cancelled", NOW - timedelta(days=1), cancel_at_period_end=True)
    assert resolve(row, NOW).access_level == AccessLevel.READONLY


def test_no_subscription_is_none():
    entitlement = resolve(None, NOW)
    assert entitlement.access_level == AccessLevel.NONE
    assert entitlement.reason == "no_subscription"


def test_active_without_period_end_is_none():
    assert resolve(Row("active", None), NOW).access_level == AccessLevel.NONE


def test_active_past_period_without_cancellation_is_none():
    """Renewal has not landed yet: neither paid access nor read-only."""
    entitlement = resolve(Row("active", NOW - timedelta(hours=1)), NOW)
    assert entitlement.access_level == AccessLevel.NONE
    assert entitlement.reason == "period_elapsed"


@pytest.mark.parametrize("status", ["trial", "paused", None, "garbage"])
def test_other_statuses_are_none(status):
    assert resolve(Row(status, NOW + timedelta(days=3)), NOW).access_level == AccessLevel.NONE


def test_malformed_period_end_never_raises():
    row = Row("active", "2026-04-01")  # type: ignore[arg-type]
    assert resolve(row, NOW).access_level == AccessLevel.NONE


def test_resolve_is_deterministic():
    row = Row("active", NOW + timedelta(days=1), cancel_at_period_end=True)
    assert resolve(row, NOW) == resolve(row, NOW)


def test_only_readonly_blocks_writes():
    assert can_write(AccessLevel.FULL)
    assert can_write(AccessLevel.NONE)
    assert not can_write(AccessLevel.READONLY)


def test_current_subscription_prefers_active_rows():
    old_active = Row("active", NOW + timedelta(days=2), id=1)
    newer_cancelled = Row("cancelled", NOW + timedelta(days=40), id=2)
    assert current_subscription([newer_cancelled, old_active]) is old_active


def test_current_subscription_falls_back_to_latest_period():
    first = Row("cancelled", NOW - timedelta(days=60), id=1)
    second = Row("cancelled", NOW - timedelta(days=2), id=2)
    assert current_subscription([second, first]) is second
    assert current_subscription([]) is None


def test_entitlement_for_combines_access_and_plan_limits():
    summary = entitlement_for("pro_monthly", Row("active", NOW + timedelta(days=10)), NOW)

    assert summary.access_level == AccessLevel.FULL
    assert summary.can_write
    assert summary.limits.ideas == UNLIMITED
    assert summary.limits.validations == 25


def test_entitlement_for_unknown_plan_uses_free_limits():
    summary = entitlement_for(None, None, NOW)

    assert summary.plan_type == "free"
    assert summary.limits.ideas == 3
    assert summary.limits.validations == 1
