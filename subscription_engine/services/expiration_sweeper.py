"""Periodic closing of cancelled subscriptions whose paid period has ended.

Safe to run concurrently on any number of instances: every candidate is
claimed by a conditional UPDATE carrying the selection predicate, so a row is
closed by exactly one sweeper (or by a webhook that got there first).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import get_settings
from subscription_engine.core.exceptions import DataIntegrityViolation, PersistenceFailure
from subscription_engine.core.retry import call_with_retry
from subscription_engine.db.base import as_utc, get_session_factory, transaction, utcnow
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.db.models.webhook_event import WebhookEvent
from subscription_engine.services.subscription_state_machine import SubscriptionStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class ExpirationSweeper:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self._session_factory = session_factory
        self.state_machine = state_machine or SubscriptionStateMachine(session_factory)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def find_candidates(self, now: datetime) -> list[int]:
        """Ids of active subscriptions flagged to cancel whose period ended before ``now``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription.id)
                .where(
                    Subscription.status == "active",
                    Subscription.cancel_at_period_end.is_(True),
                    Subscription.current_period_end < now,
                )
                .order_by(Subscription.current_period_end, Subscription.id)
            )
            return list(result.scalars().all())

    async def expire_candidates(self, candidate_ids: list[int], now: datetime) -> SweepResult:
        """Claim and close each candidate; per-row failures are collected, not fatal."""
        summary = SweepResult()
        for subscription_id in candidate_ids:
            try:
                outcome = await call_with_retry(self.state_machine.expire, subscription_id, now)
            except (PersistenceFailure, DataIntegrityViolation, DBAPIError) as exc:
                summary.failed += 1
                summary.errors.append(f"subscription {subscription_id}: {exc}")
                logger.error("subscription_expiry_failed", subscription_id=subscription_id, error=str(exc))
                continue

            if outcome.applied:
                summary.processed += 1
            else:
                # Another sweeper, a renewal or a webhook advanced the row first
                summary.skipped += 1
        return summary

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = as_utc(now) or utcnow()
        candidate_ids = await call_with_retry(self.find_candidates, now)
        summary = await self.expire_candidates(candidate_ids, now)

        logger.info(
            "expiration_sweep_completed",
            candidates=len(candidate_ids),
            processed=summary.processed,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary

    async def prune_webhook_events(self, now: datetime | None = None, retention_days: int | None = None) -> int:
        """Delete processed, unflagged webhook events older than the retention window.

        Unprocessed and review-flagged rows are never deleted.
        """
        now = as_utc(now) or utcnow()
        if retention_days is None:
            retention_days = get_settings().webhook_retention_days
        cutoff = now - timedelta(days=retention_days)

        async with transaction(self.session_factory) as session:
            result = await session.execute(
                delete(WebhookEvent)
                .where(
                    WebhookEvent.processed.is_(True),
                    WebhookEvent.needs_review.is_(False),
                    WebhookEvent.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount or 0

        logger.info("webhook_events_pruned", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted
