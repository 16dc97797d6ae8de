"""User row bootstrap and per-user read models shared across services."""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.core.exceptions import PersistenceFailure
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.user import User
from subscription_engine.domain.entitlements import EntitlementSummary, current_subscription, entitlement_for

logger = structlog.get_logger(__name__)


async def get_or_create_user(session: AsyncSession, user_id: str, email: str | None = None) -> User:
    """Load (or bootstrap as free tier) the User row for an external user id.

    A concurrent insert of the same id surfaces as PersistenceFailure so the
    caller's whole transaction is replayed and takes the load path.
    """
    user = await session.get(User, user_id)
    if user is not None:
        if email and not user.email:
            user.email = email
        return user

    user = User(id=user_id, email=email, plan_type="free", subscription_status="inactive")
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise PersistenceFailure(f"Concurrent creation of user {user_id}") from exc

    logger.info("user_bootstrapped", user_id=user_id)
    return user


async def list_subscriptions(session: AsyncSession, user_id: str) -> list[Subscription]:
    """All subscription rows of a user, oldest first (history is never deleted)."""
    result = await session.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at, Subscription.id)
    )
    return list(result.scalars().all())


async def load_entitlement(
    session: AsyncSession, user_id: str, now: datetime
) -> tuple[EntitlementSummary, Subscription | None]:
    """Entitlement of a user plus the subscription row that governs it. Read-only."""
    user = await session.get(User, user_id)
    governing = current_subscription(await list_subscriptions(session, user_id))
    plan_type = user.plan_type if user is not None else None
    return entitlement_for(plan_type, governing, now), governing
