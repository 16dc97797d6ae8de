"""Inbound processor webhooks: verify, claim, dispatch, record outcome.

The processor delivers at least once and redelivers on any non-2xx response.
The webhook_events row is the idempotency ledger:

- new event_id          -> claimed (processed=false, leased), dispatched
- processed=true        -> acknowledged, nothing happens
- processed=false       -> an earlier attempt failed or its lease lapsed:
                           the lease is taken over and the row retried
- lease still held      -> another delivery is mid-dispatch: 409, no dispatch

Transient failures return 500 so the processor redelivers; payloads that can
never apply are acknowledged and flagged for review instead of looping.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import Settings, get_settings
from subscription_engine.core.exceptions import (
    DataIntegrityViolation,
    DuplicateEvent,
    EventInFlight,
    OutOfOrderEvent,
    PersistenceFailure,
    SignatureInvalid,
)
from subscription_engine.core.logging import get_security_logger
from subscription_engine.core.retry import call_with_retry
from subscription_engine.core.security import signature_matches
from subscription_engine.db.base import as_utc, get_session_factory, transaction, utcnow
from subscription_engine.db.models.webhook_event import WebhookEvent
from subscription_engine.schemas.webhook_events import Envelope, decode_event, parse_envelope
from subscription_engine.services.subscription_state_machine import SubscriptionStateMachine

logger = structlog.get_logger(__name__)
security_log = get_security_logger()

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class IngestResult:
    ack: bool
    http_status: int
    detail: str
    event_id: str | None = None


class WebhookIngestor:
    def __init__(
        self,
        state_machine: SubscriptionStateMachine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self.state_machine = state_machine or SubscriptionStateMachine(session_factory, settings=settings)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        """HMAC-SHA256 (hex) of the raw body with the webhook secret.

        Raises:
            SignatureInvalid: signature missing or mismatched
        """
        if not signature_header:
            raise SignatureInvalid("Missing webhook signature header")
        if not signature_matches(self.settings.razorpay_webhook_secret, raw_body, signature_header):
            raise SignatureInvalid("Webhook signature mismatch")

    async def ingest(
        self,
        raw_body: bytes,
        signature_header: str | None,
        event_id_header: str | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        """Process one webhook delivery and decide the HTTP response."""
        now = as_utc(now) or utcnow()

        if not self.settings.razorpay_webhook_secret:
            logger.error("webhook_secret_missing")
            return IngestResult(ack=False, http_status=503, detail="webhook_not_configured")

        try:
            self.verify_signature(raw_body, signature_header)
        except SignatureInvalid as exc:
            security_log.warning(
                "webhook_signature_invalid",
                reason=str(exc),
                event_id_header=event_id_header,
                body_bytes=len(raw_body),
            )
            return IngestResult(ack=False, http_status=400, detail="invalid_signature")

        try:
            envelope = parse_envelope(raw_body, event_id_header)
        except ValueError as exc:
            logger.warning("webhook_payload_unparseable", error=str(exc))
            return IngestResult(ack=False, http_status=400, detail="invalid_payload")

        log = logger.bind(event_id=envelope.event_id, event_type=envelope.event_type)
        log.info("webhook_received")

        try:
            retry_count = await call_with_retry(self._claim, envelope, now)
        except DuplicateEvent:
            log.info("webhook_duplicate_event_ignored")
            return IngestResult(ack=True, http_status=200, detail="duplicate", event_id=envelope.event_id)
        except EventInFlight:
            log.info("webhook_event_in_flight")
            return IngestResult(ack=False, http_status=409, detail="in_flight", event_id=envelope.event_id)
        except (PersistenceFailure, DBAPIError) as exc:
            log.error("webhook_claim_failed", error=str(exc))
            return IngestResult(ack=False, http_status=500, detail="claim_failed", event_id=envelope.event_id)

        if retry_count:
            log.info("webhook_redelivery_retrying", retry_count=retry_count)

        return await self._dispatch(envelope, now)

    async def _dispatch(self, envelope: Envelope, now: datetime) -> IngestResult:
        log = logger.bind(event_id=envelope.event_id, event_type=envelope.event_type)

        try:
            event = decode_event(envelope)
            outcome = await call_with_retry(self.state_machine.apply, event, now)
        except DataIntegrityViolation as exc:
            log.error("webhook_event_rejected", error=str(exc))
            await call_with_retry(self._finish, envelope.event_id, now, str(exc), True)
            return IngestResult(ack=True, http_status=200, detail="flagged_for_review", event_id=envelope.event_id)
        except (PersistenceFailure, DBAPIError) as exc:
            return await self._handle_failure(envelope, exc, now)
        except Exception as exc:
            log.error("webhook_dispatch_unexpected_error", error_type=type(exc).__name__, exc_info=True)
            return await self._handle_failure(envelope, exc, now)

        await call_with_retry(self._finish, envelope.event_id, now)
        log.info("webhook_event_processed", outcome=outcome.detail, applied=outcome.applied)
        return IngestResult(ack=True, http_status=200, detail=outcome.detail, event_id=envelope.event_id)

    async def _handle_failure(self, envelope: Envelope, exc: Exception, now: datetime) -> IngestResult:
        log = logger.bind(event_id=envelope.event_id, event_type=envelope.event_type)
        message = str(exc)[:MAX_ERROR_LENGTH]

        try:
            retry_count = await call_with_retry(self._record_failure, envelope.event_id, message)
        except (PersistenceFailure, DBAPIError) as record_exc:
            log.error("webhook_failure_not_recorded", error=message, record_error=str(record_exc))
            return IngestResult(ack=False, http_status=500, detail="retry_later", event_id=envelope.event_id)

        max_retries = self.settings.webhook_max_retries
        if retry_count >= max_retries:
            log.error("webhook_event_parked", error=message, retry_count=retry_count, max_retries=max_retries)
            await call_with_retry(self._finish, envelope.event_id, now, message, True)
            return IngestResult(ack=True, http_status=200, detail="parked_for_review", event_id=envelope.event_id)

        log.warning(
            "webhook_event_failed",
            error=message,
            retry_count=retry_count,
            out_of_order=isinstance(exc, OutOfOrderEvent),
        )
        return IngestResult(ack=False, http_status=500, detail="retry_later", event_id=envelope.event_id)

    async def _claim(self, envelope: Envelope, now: datetime) -> int:
        """Insert the ledger row, or take over an unprocessed one whose lease lapsed.

        The claim leases the row until ``now + webhook_claim_lease_seconds``;
        _finish and _record_failure release it.

        Returns:
            retry_count of the claimed row (0 for a first delivery)

        Raises:
            DuplicateEvent: the event was already processed
            EventInFlight: another delivery holds the lease
        """
        lease_until = now + timedelta(seconds=self.settings.webhook_claim_lease_seconds)
        async with transaction(self.session_factory) as session:
            existing = await session.get(WebhookEvent, envelope.event_id)
            if existing is not None:
                if existing.processed:
                    raise DuplicateEvent(envelope.event_id)
                result = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.event_id == envelope.event_id,
                        WebhookEvent.processed.is_(False),
                        or_(WebhookEvent.lease_until.is_(None), WebhookEvent.lease_until < now),
                    )
                    .values(lease_until=lease_until)
                )
                if result.rowcount == 0:
                    raise EventInFlight(envelope.event_id)
                return existing.retry_count

            session.add(
                WebhookEvent(
                    event_id=envelope.event_id,
                    event_type=envelope.event_type,
                    payload=envelope.data,
                    processed=False,
                    retry_count=0,
                    lease_until=lease_until,
                    created_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                # A concurrent first delivery inserted the row and holds its lease
                raise EventInFlight(envelope.event_id) from exc
            return 0

    async def _finish(
        self,
        event_id: str,
        now: datetime,
        error_message: str | None = None,
        needs_review: bool = False,
    ) -> None:
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(
                    processed=True,
                    processed_at=now,
                    error_message=error_message[:MAX_ERROR_LENGTH] if error_message else None,
                    needs_review=needs_review,
                    lease_until=None,
                )
            )

    async def _record_failure(self, event_id: str, error_message: str) -> int:
        async with transaction(self.session_factory) as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id, WebhookEvent.processed.is_(False))
                .values(
                    error_message=error_message,
                    retry_count=WebhookEvent.retry_count + 1,
                    lease_until=None,
                )
            )
            row = await session.get(WebhookEvent, event_id, populate_existing=True)
            return row.retry_count if row is not None else 0
