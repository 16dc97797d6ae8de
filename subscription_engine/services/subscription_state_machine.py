"""Subscription lifecycle driven by processor events.

    none -> trial -> active <-> cancelled (pending) -> cancelled (expired)

Each event is applied inside one transaction; any exception rolls the whole
event back so a redelivery can replay it from scratch. Writes to existing rows
are conditional UPDATEs (status / version / period guards). An UPDATE that
matches nothing means another writer got there first and is a no-op.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import Settings, get_settings
from subscription_engine.core.exceptions import (
    DataIntegrityViolation,
    OutOfOrderEvent,
    PersistenceFailure,
    TransitionConflict,
)
from subscription_engine.db.base import as_utc, get_session_factory, transaction, utcnow
from subscription_engine.db.models.payment_transaction import PaymentTransaction
from subscription_engine.db.models.subscription import Subscription
from subscription_engine.domain.plans import PlanType, parse_plan_type, plan_for_processor_plan_id
from subscription_engine.schemas.webhook_events import (
    PaymentCaptured,
    PaymentEntity,
    PaymentFailed,
    ProcessorEvent,
    SubscriptionActivated,
    SubscriptionCancelled,
    SubscriptionCharged,
    SubscriptionCompleted,
    UnknownEvent,
)
from subscription_engine.services.accounts import get_or_create_user
from subscription_engine.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)

# Payment status may only move to a state listed here for its current status
PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "verified": frozenset({"captured", "failed"}),
    "captured": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}

MANUAL_PERIOD_DAYS = {
    PlanType.PRO_MONTHLY: 30,
    PlanType.PRO_YEARLY: 365,
}


@dataclass(frozen=True)
class TransitionOutcome:
    event_type: str
    applied: bool
    detail: str
    external_subscription_id: str | None = None
    user_id: str | None = None


class SubscriptionStateMachine:
    """Applies decoded processor events to subscriptions, users and usage limits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ledger: UsageLedger | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._ledger = ledger or UsageLedger(session_factory)
        self._settings = settings
        self._handlers = {
            SubscriptionActivated: self._on_activated,
            SubscriptionCharged: self._on_charged,
            SubscriptionCancelled: self._on_cancelled,
            SubscriptionCompleted: self._on_completed,
            PaymentCaptured: self._on_payment_captured,
            PaymentFailed: self._on_payment_failed,
        }

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def apply(self, event: ProcessorEvent, now: datetime | None = None) -> TransitionOutcome:
        """Apply one event atomically.

        Raises:
            OutOfOrderEvent: the event references a subscription not created yet
            PersistenceFailure: transient store failure, safe to replay
            DataIntegrityViolation: the payload can never be applied
        """
        now = as_utc(now) or utcnow()

        if isinstance(event, UnknownEvent):
            logger.info("webhook_event_type_ignored", event_id=event.event_id, event_type=event.raw_type)
            return TransitionOutcome(event_type=event.raw_type, applied=False, detail="ignored_unknown_event")

        handler = self._handlers[type(event)]
        return await self._run(event.event, lambda session: handler(session, event, now))

    async def expire(self, subscription_id: int, now: datetime | None = None) -> TransitionOutcome:
        """Close a cancelled subscription whose paid period has elapsed (sweeper path)."""
        now = as_utc(now) or utcnow()
        return await self._run(
            "subscription.expired",
            lambda session: self.complete_cancellation(session, subscription_id, now),
        )

    async def activate_manually(
        self,
        user_id: str,
        plan_type: PlanType | str,
        now: datetime | None = None,
        email: str | None = None,
    ) -> TransitionOutcome:
        """Operator activation for payments settled outside the webhook flow.

        Creates a fresh subscription record with its own external id; an explicit
        plan change is never an in-place update of an existing row.
        """
        now = as_utc(now) or utcnow()
        plan = PlanType(plan_type)
        if plan not in MANUAL_PERIOD_DAYS:
            raise DataIntegrityViolation(f"Plan '{plan.value}' cannot be activated manually")

        external_id = f"manual_{uuid.uuid4().hex[:16]}"
        period_end = now + timedelta(days=MANUAL_PERIOD_DAYS[plan])
        return await self._run(
            "subscription.manual_activation",
            lambda session: self.activate(
                session,
                user_id=user_id,
                external_subscription_id=external_id,
                plan=plan,
                period_start=now,
                period_end=period_end,
                now=now,
                email=email,
            ),
        )

    async def _run(self, event_type: str, step) -> TransitionOutcome:
        try:
            async with transaction(self.session_factory) as session:
                return await step(session)
        except TransitionConflict as conflict:
            logger.info(
                "transition_conflict_skipped",
                event_type=event_type,
                entity=conflict.entity,
                key=conflict.key,
                guard=conflict.guard,
            )
            return TransitionOutcome(
                event_type=event_type,
                applied=False,
                detail="conflict",
                external_subscription_id=conflict.key if conflict.entity == "subscription" else None,
            )
        except IntegrityError as exc:
            # Insert races are converted earlier; what is left is a constraint the payload breaks
            raise DataIntegrityViolation(f"Constraint violated applying {event_type}: {exc.orig}") from exc
        except DBAPIError as exc:
            raise PersistenceFailure(f"Store failure applying {event_type}: {exc.orig}") from exc

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_activated(
        self, session: AsyncSession, event: SubscriptionActivated, now: datetime
    ) -> TransitionOutcome:
        entity = event.subscription
        if not entity.user_id:
            raise DataIntegrityViolation(f"Subscription {entity.id} carries no user_id in notes")

        plan = plan_for_processor_plan_id(entity.plan_id, self.settings) or parse_plan_type(
            entity.plan_type_hint
        )
        if plan is None or plan == PlanType.FREE:
            raise DataIntegrityViolation(
                f"Subscription {entity.id} has unknown plan (plan_id={entity.plan_id!r})"
            )

        start, end = entity.period()
        return await self.activate(
            session,
            user_id=entity.user_id,
            external_subscription_id=entity.id,
            plan=plan,
            period_start=start,
            period_end=end,
            now=now,
            external_plan_id=entity.plan_id,
            email=entity.notes.get("user_email"),
        )

    async def _on_charged(
        self, session: AsyncSession, event: SubscriptionCharged, now: datetime
    ) -> TransitionOutcome:
        entity = event.subscription
        sub = await self._get_subscription(session, entity.id)
        if sub is None:
            raise OutOfOrderEvent(event.event, entity.id)

        if event.payment is not None:
            await self._record_payment(session, event.payment, "captured", sub.user_id, now)

        start, end = entity.period()
        # Monotonic guard: a stale renewal can never move the period end backwards
        result = await session.execute(
            update(Subscription)
            .where(
                Subscription.id == sub.id,
                Subscription.status == "active",
                Subscription.current_period_end < end,
            )
            .values(
                current_period_start=start,
                current_period_end=end,
                version=Subscription.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(
                "stale_renewal_ignored",
                external_subscription_id=entity.id,
                stored_period_end=as_utc(sub.current_period_end).isoformat(),
                payload_period_end=end.isoformat(),
                status=sub.status,
            )
            return TransitionOutcome(event.event, False, "stale_renewal_ignored", entity.id, sub.user_id)

        logger.info(
            "subscription_renewed",
            external_subscription_id=entity.id,
            user_id=sub.user_id,
            current_period_end=end.isoformat(),
        )
        return TransitionOutcome(event.event, True, "renewed", entity.id, sub.user_id)

    async def _on_cancelled(
        self, session: AsyncSession, event: SubscriptionCancelled, now: datetime
    ) -> TransitionOutcome:
        entity = event.subscription
        sub = await self._get_subscription(session, entity.id)
        if sub is None:
            raise OutOfOrderEvent(event.event, entity.id)

        # Grace policy: access continues until the paid period ends
        result = await session.execute(
            update(Subscription)
            .where(
                Subscription.id == sub.id,
                Subscription.status == "active",
                Subscription.cancel_at_period_end.is_(False),
            )
            .values(cancel_at_period_end=True, version=Subscription.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info("cancellation_already_recorded", external_subscription_id=entity.id, status=sub.status)
            return TransitionOutcome(event.event, False, "already_cancelled", entity.id, sub.user_id)

        logger.info(
            "subscription_cancel_scheduled",
            external_subscription_id=entity.id,
            user_id=sub.user_id,
            current_period_end=as_utc(sub.current_period_end).isoformat(),
        )
        return TransitionOutcome(event.event, True, "cancel_scheduled", entity.id, sub.user_id)

    async def _on_completed(
        self, session: AsyncSession, event: SubscriptionCompleted, now: datetime
    ) -> TransitionOutcome:
        entity = event.subscription
        sub = await self._get_subscription(session, entity.id)
        if sub is None:
            raise OutOfOrderEvent(event.event, entity.id)

        outcome = await self.complete_cancellation(session, sub.id, now, require_elapsed=False)
        return TransitionOutcome(event.event, outcome.applied, outcome.detail, entity.id, sub.user_id)

    async def _on_payment_captured(
        self, session: AsyncSession, event: PaymentCaptured, now: datetime
    ) -> TransitionOutcome:
        payment = event.payment
        sub, user_id = await self._attribute_payment(session, event.event, payment)

        await self._record_payment(session, payment, "captured", user_id, now)

        # First payment for a pending subscription activates it
        if sub is not None and sub.status == "trial" and now <= as_utc(sub.current_period_end):
            await self.activate(
                session,
                user_id=sub.user_id,
                external_subscription_id=sub.external_subscription_id,
                plan=PlanType(sub.plan_type),
                period_start=as_utc(sub.current_period_start),
                period_end=as_utc(sub.current_period_end),
                now=now,
            )
            return TransitionOutcome(event.event, True, "captured_and_activated", sub.external_subscription_id, user_id)

        return TransitionOutcome(event.event, True, "payment_captured", payment.subscription_id, user_id)

    async def _on_payment_failed(
        self, session: AsyncSession, event: PaymentFailed, now: datetime
    ) -> TransitionOutcome:
        payment = event.payment
        _, user_id = await self._attribute_payment(session, event.event, payment)

        # Access is not revoked here; the processor retries the charge
        await self._record_payment(session, payment, "failed", user_id, now)
        logger.warning(
            "payment_failed",
            external_payment_id=payment.id,
            external_subscription_id=payment.subscription_id,
            user_id=user_id,
            error_description=payment.error_description,
        )
        return TransitionOutcome(event.event, True, "payment_failed", payment.subscription_id, user_id)

    # ------------------------------------------------------------------
    # Shared transitions
    # ------------------------------------------------------------------

    async def activate(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        external_subscription_id: str,
        plan: PlanType,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
        external_plan_id: str | None = None,
        email: str | None = None,
    ) -> TransitionOutcome:
        """Insert or CAS-update a subscription into ``active`` and sync user + quotas."""
        user = await get_or_create_user(session, user_id, email)
        sub = await self._get_subscription(session, external_subscription_id)

        if sub is None:
            sub = Subscription(
                user_id=user_id,
                external_subscription_id=external_subscription_id,
                external_plan_id=external_plan_id,
                status="active",
                plan_type=plan.value,
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=False,
                version=1,
            )
            session.add(sub)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise PersistenceFailure(
                    f"Concurrent creation of subscription {external_subscription_id}"
                ) from exc
            entered_active, plan_changed = True, True
        else:
            if sub.user_id != user_id:
                raise DataIntegrityViolation(
                    f"Subscription {external_subscription_id} belongs to another user"
                )
            if sub.status == "cancelled":
                # Expired records stay closed; re-subscribing creates a new record
                logger.info("activation_of_closed_subscription_ignored", external_subscription_id=external_subscription_id)
                return TransitionOutcome("subscription.activated", False, "subscription_closed", external_subscription_id, user_id)

            stored_start = as_utc(sub.current_period_start)
            stored_end = as_utc(sub.current_period_end)
            if period_end >= stored_end:
                new_start, new_end = period_start, period_end
            else:
                new_start, new_end = stored_start, stored_end

            result = await session.execute(
                update(Subscription)
                .where(Subscription.id == sub.id, Subscription.version == sub.version)
                .values(
                    status="active",
                    plan_type=plan.value,
                    external_plan_id=external_plan_id or sub.external_plan_id,
                    cancel_at_period_end=False,
                    current_period_start=new_start,
                    current_period_end=new_end,
                    version=Subscription.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise TransitionConflict("subscription", external_subscription_id, f"version={sub.version}")
            entered_active = sub.status != "active"
            plan_changed = sub.plan_type != plan.value

        user.plan_type = plan.value
        user.subscription_status = "active"

        if entered_active or plan_changed:
            await self._ledger.apply_plan(session, user_id, plan, now)

        logger.info(
            "subscription_activated",
            external_subscription_id=external_subscription_id,
            user_id=user_id,
            plan_type=plan.value,
            newly_active=entered_active,
            plan_changed=plan_changed,
        )
        detail = "activated" if entered_active or plan_changed else "activation_replayed"
        return TransitionOutcome("subscription.activated", True, detail, external_subscription_id, user_id)

    async def complete_cancellation(
        self,
        session: AsyncSession,
        subscription_id: int,
        now: datetime,
        require_elapsed: bool = True,
    ) -> TransitionOutcome:
        """Close an active subscription and downgrade its user to the free tier.

        With ``require_elapsed`` the UPDATE carries the sweeper predicate
        (cancel_at_period_end and period ended before ``now``), so a renewal or
        a second sweeper racing this one makes it match zero rows.

        Raises:
            TransitionConflict: the guarded UPDATE matched no row
        """
        stmt = update(Subscription).where(Subscription.id == subscription_id, Subscription.status == "active")
        if require_elapsed:
            stmt = stmt.where(
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end < now,
            )
        result = await session.execute(
            stmt.values(status="cancelled", cancel_at_period_end=True, version=Subscription.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TransitionConflict("subscription", str(subscription_id), "active_and_elapsed")

        sub = (
            await session.execute(
                select(Subscription)
                .where(Subscription.id == subscription_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        other_active = await session.scalar(
            select(func.count())
            .select_from(Subscription)
            .where(
                Subscription.user_id == sub.user_id,
                Subscription.status == "active",
                Subscription.id != sub.id,
            )
        )
        if other_active:
            logger.info(
                "subscription_closed_user_retains_plan",
                external_subscription_id=sub.external_subscription_id,
                user_id=sub.user_id,
            )
            return TransitionOutcome(
                "subscription.expired", True, "closed_other_active", sub.external_subscription_id, sub.user_id
            )

        user = await get_or_create_user(session, sub.user_id)
        user.plan_type = PlanType.FREE.value
        user.subscription_status = "inactive"
        await self._ledger.apply_plan(session, sub.user_id, PlanType.FREE, now)

        logger.info(
            "subscription_expired",
            external_subscription_id=sub.external_subscription_id,
            user_id=sub.user_id,
            period_end=as_utc(sub.current_period_end).isoformat(),
        )
        return TransitionOutcome("subscription.expired", True, "expired", sub.external_subscription_id, sub.user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_subscription(self, session: AsyncSession, external_subscription_id: str) -> Subscription | None:
        result = await session.execute(
            select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
        )
        return result.scalar_one_or_none()

    async def _attribute_payment(
        self, session: AsyncSession, event_type: str, payment: PaymentEntity
    ) -> tuple[Subscription | None, str]:
        sub = None
        if payment.subscription_id:
            sub = await self._get_subscription(session, payment.subscription_id)

        user_id = payment.user_id or (sub.user_id if sub is not None else None)
        if user_id is None:
            if payment.subscription_id:
                raise OutOfOrderEvent(event_type, payment.subscription_id)
            raise DataIntegrityViolation(f"Payment {payment.id} cannot be attributed to a user")

        await get_or_create_user(session, user_id)
        return sub, user_id

    async def _record_payment(
        self,
        session: AsyncSession,
        payment: PaymentEntity,
        status: str,
        user_id: str,
        now: datetime,
    ) -> bool:
        """Insert or advance a PaymentTransaction; status only ever moves forward."""
        existing = (
            await session.execute(
                select(PaymentTransaction).where(PaymentTransaction.external_payment_id == payment.id)
            )
        ).scalar_one_or_none()

        fields = {
            "amount": payment.amount,
            "currency": payment.currency.upper(),
            "method": payment.method,
            "external_subscription_id": payment.subscription_id,
            "error_description": payment.error_description if status == "failed" else None,
        }
        if status == "captured":
            fields["captured_at"] = now

        if existing is None:
            session.add(PaymentTransaction(external_payment_id=payment.id, user_id=user_id, status=status, **fields))
            try:
                await session.flush()
            except IntegrityError as exc:
                raise PersistenceFailure(f"Concurrent creation of payment {payment.id}") from exc
            logger.info("payment_recorded", external_payment_id=payment.id, status=status, user_id=user_id)
            return True

        if existing.status == status:
            return False

        if status not in PAYMENT_TRANSITIONS.get(existing.status, frozenset()):
            logger.info(
                "payment_status_regression_ignored",
                external_payment_id=payment.id,
                stored_status=existing.status,
                payload_status=status,
            )
            return False

        if not fields["external_subscription_id"]:
            fields["external_subscription_id"] = existing.external_subscription_id
        result = await session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == existing.id, PaymentTransaction.status == existing.status)
            .values(status=status, **fields)
            .execution_options(synchronize_session=False)
        )
        advanced = result.rowcount == 1
        if advanced:
            logger.info(
                "payment_status_advanced",
                external_payment_id=payment.id,
                from_status=existing.status,
                to_status=status,
            )
        return advanced
