"""Entitlement resolution: subscription state -> access level and quotas.

Pure domain functions, no DB access. Called on every protected action with
the already-persisted subscription row; never cached beyond the request.

Access levels:
- full: active and within the paid period
- readonly: cancelled (or cancelling) and the paid period has elapsed;
  existing content stays visible, write paths are denied
- none: everything else, including the free tier and inconsistent rows
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from subscription_engine.db.base import as_utc
from subscription_engine.domain.plans import QuotaLimits, quotas_for


class AccessLevel(str, Enum):
    FULL = "full"
    READONLY = "readonly"
    NONE = "none"


class SubscriptionState(Protocol):
    status: str | None
    cancel_at_period_end: bool | None
    current_period_end: datetime | None


@dataclass(frozen=True)
class Entitlement:
    access_level: AccessLevel
    reason: str | None = None


@dataclass(frozen=True)
class EntitlementSummary:
    access_level: AccessLevel
    reason: str | None
    plan_type: str
    limits: QuotaLimits

    @property
    def can_write(self) -> bool:
        return can_write(self.access_level)


def resolve(subscription: SubscriptionState | None, now: datetime) -> Entitlement:
    """Map a subscription row to an access level.

    Deterministic in (status, cancel_at_period_end, current_period_end, now).
    Never raises: ambiguous or malformed input degrades to NONE.
    """
    if subscription is None:
        return Entitlement(AccessLevel.NONE, "no_subscription")

    status = getattr(subscription, "status", None)
    cancelling = getattr(subscription, "cancel_at_period_end", None) is True
    period_end = getattr(subscription, "current_period_end", None)

    if not isinstance(period_end, datetime) or not isinstance(now, datetime):
        return Entitlement(AccessLevel.NONE, "missing_period_end")

    period_end = as_utc(period_end)
    now = as_utc(now)

    if status == "active" and now <= period_end:
        return Entitlement(AccessLevel.FULL)

    if (status == "cancelled" or cancelling) and now > period_end:
        return Entitlement(AccessLevel.READONLY, "subscription_expired")

    if status == "active":
        # Past period end without a cancellation: renewal has not arrived yet
        return Entitlement(AccessLevel.NONE, "period_elapsed")

    return Entitlement(AccessLevel.NONE, f"status_{status or 'unknown'}")


def can_write(access_level: AccessLevel) -> bool:
    """Read-only users keep visibility but may not create new content.

    Free-tier users (NONE) may write within their free quotas.
    """
    return access_level != AccessLevel.READONLY


def current_subscription(subscriptions: Iterable) -> SubscriptionState | None:
    """Pick the subscription that governs a user's access.

    Active rows win (latest period end first); otherwise the most recent row by
    period end, so an expired cancellation still yields READONLY.
    """
    rows = [s for s in subscriptions if s is not None]
    if not rows:
        return None

    def sort_key(row):
        end = as_utc(getattr(row, "current_period_end", None))
        return (end is not None, end.timestamp() if end else 0.0, getattr(row, "id", 0) or 0)

    active = [r for r in rows if getattr(r, "status", None) == "active"]
    return max(active or rows, key=sort_key)


def entitlement_for(
    plan_type: str | None,
    subscription: SubscriptionState | None,
    now: datetime,
) -> EntitlementSummary:
    """Access level plus the quota limits of the user's current plan."""
    entitlement = resolve(subscription, now)
    return EntitlementSummary(
        access_level=entitlement.access_level,
        reason=entitlement.reason,
        plan_type=plan_type or "free",
        limits=quotas_for(plan_type),
    )
