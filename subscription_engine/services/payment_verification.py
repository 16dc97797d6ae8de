"""Checkout confirmation: verify the signature the processor hands the browser.

After checkout the client receives (payment_id, subscription_id, signature);
the signature is HMAC-SHA256 of ``"{subscription_id}|{payment_id}"`` keyed
with the API key secret. A verified payment is recorded with status
``verified``; the webhook later advances it to ``captured`` with the amount.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_engine.core.config import Settings, get_settings
from subscription_engine.core.exceptions import PersistenceFailure, SignatureInvalid
from subscription_engine.core.logging import get_security_logger
from subscription_engine.core.retry import call_with_retry
from subscription_engine.core.security import signature_matches
from subscription_engine.db.base import as_utc, get_session_factory, transaction, utcnow
from subscription_engine.db.models.payment_transaction import PaymentTransaction
from subscription_engine.services.accounts import get_or_create_user

logger = structlog.get_logger(__name__)
security_log = get_security_logger()

BILLING_HISTORY_LIMIT = 20


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    recorded: bool
    status: str


class PaymentVerifier:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def check_signature(self, subscription_id: str, payment_id: str, signature: str) -> None:
        """Raises SignatureInvalid unless the checkout signature matches."""
        message = f"{subscription_id}|{payment_id}".encode("utf-8")
        if not signature_matches(self.settings.razorpay_key_secret, message, signature):
            raise SignatureInvalid("Checkout signature mismatch")

    async def verify(
        self,
        user_id: str,
        payment_id: str,
        subscription_id: str,
        signature: str,
        now: datetime | None = None,
    ) -> VerificationResult:
        """Verify a checkout signature and record the payment as ``verified``.

        A payment the webhook already recorded keeps its (later) status.

        Raises:
            SignatureInvalid: signature does not match
        """
        now = as_utc(now) or utcnow()
        try:
            self.check_signature(subscription_id, payment_id, signature)
        except SignatureInvalid:
            security_log.warning(
                "checkout_signature_invalid",
                user_id=user_id,
                external_payment_id=payment_id,
                external_subscription_id=subscription_id,
            )
            raise

        recorded, status = await call_with_retry(
            self._record, user_id, payment_id, subscription_id, now
        )
        logger.info(
            "payment_verified",
            user_id=user_id,
            external_payment_id=payment_id,
            external_subscription_id=subscription_id,
            recorded=recorded,
        )
        return VerificationResult(verified=True, recorded=recorded, status=status)

    async def _record(
        self, user_id: str, payment_id: str, subscription_id: str, now: datetime
    ) -> tuple[bool, str]:
        async with transaction(self.session_factory) as session:
            existing = (
                await session.execute(
                    select(PaymentTransaction).where(PaymentTransaction.external_payment_id == payment_id)
                )
            ).scalar_one_or_none()
            if existing is not None:
                if existing.verified_at is None:
                    existing.verified_at = now
                return False, existing.status

            await get_or_create_user(session, user_id)
            session.add(
                PaymentTransaction(
                    user_id=user_id,
                    external_payment_id=payment_id,
                    external_subscription_id=subscription_id,
                    amount=0,
                    currency=self.settings.currency,
                    status="verified",
                    verified_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                raise PersistenceFailure(f"Concurrent creation of payment {payment_id}") from exc
            return True, "verified"

    async def history(self, user_id: str, limit: int = BILLING_HISTORY_LIMIT) -> list[PaymentTransaction]:
        """Most recent payment records of a user, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.user_id == user_id)
                .order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
