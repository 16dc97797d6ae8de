"""Per-user billing endpoints called by the dashboard backend.

The caller authenticates the end user; here user_id is an opaque path value
and the caller proves itself with the internal service token.
"""

from fastapi import APIRouter, Depends, HTTPException

from subscription_engine.api.schemas.users import (
    EntitlementResponse,
    MessageUsageResponse,
    PaymentRecord,
    ProrationResponse,
    QuotaLimitsResponse,
    QuotaUsageResponse,
    SubscriptionSummary,
    UsageIncrementResponse,
    UsageResponse,
)
from subscription_engine.core.config import get_settings
from subscription_engine.core.exceptions import QuotaExceeded
from subscription_engine.core.security import require_internal_token
from subscription_engine.db.base import as_utc, get_session_factory, utcnow
from subscription_engine.domain import proration
from subscription_engine.domain.entitlements import AccessLevel, EntitlementSummary
from subscription_engine.domain.plans import PlanType, QuotaType, plan_prices
from subscription_engine.services.accounts import load_entitlement
from subscription_engine.services.payment_verification import PaymentVerifier
from subscription_engine.services.rate_limiter import DailyMessageLimiter, get_message_limiter
from subscription_engine.services.usage_ledger import UsageLedger, UsageSnapshot

router = APIRouter(dependencies=[Depends(require_internal_token)])

UPGRADE_PROMPT = "Your subscription has ended. Upgrade to keep creating."


def get_usage_ledger() -> UsageLedger:
    return UsageLedger()


def get_payment_verifier() -> PaymentVerifier:
    return PaymentVerifier()


async def _load(user_id: str):
    async with get_session_factory()() as session:
        return await load_entitlement(session, user_id, utcnow())


def require_access(level: str = "write"):
    """Dependency factory gating a route on the user's access level.

    ``"full"`` requires an active paid period; ``"write"`` admits everyone but
    read-only (lapsed) users, who keep visibility but may not create.
    """

    async def dependency(user_id: str) -> EntitlementSummary:
        summary, _ = await _load(user_id)
        if level == "full":
            allowed = summary.access_level == AccessLevel.FULL
        else:
            allowed = summary.can_write
        if not allowed:
            raise HTTPException(status_code=403, detail=UPGRADE_PROMPT)
        return summary

    return dependency


def _usage_response(snapshot: UsageSnapshot) -> UsageResponse:
    return UsageResponse(
        user_id=snapshot.user_id,
        plan_type=snapshot.plan_type,
        reset_date=snapshot.reset_date,
        quotas={
            name: QuotaUsageResponse(used=usage.used, limit=usage.limit, remaining=usage.remaining)
            for name, usage in snapshot.quotas.items()
        },
    )


@router.get("/{user_id}/entitlement", response_model=EntitlementResponse)
async def get_entitlement(user_id: str):
    """Access level, plan quotas and the governing subscription."""
    summary, governing = await _load(user_id)
    subscription = None
    if governing is not None:
        subscription = SubscriptionSummary(
            external_subscription_id=governing.external_subscription_id,
            status=governing.status,
            plan_type=governing.plan_type,
            current_period_start=as_utc(governing.current_period_start),
            current_period_end=as_utc(governing.current_period_end),
            cancel_at_period_end=governing.cancel_at_period_end,
        )

    return EntitlementResponse(
        user_id=user_id,
        access_level=summary.access_level.value,
        reason=summary.reason,
        can_write=summary.can_write,
        plan_type=summary.plan_type,
        limits=QuotaLimitsResponse(
            ideas=summary.limits.ideas,
            validations=summary.limits.validations,
            content=summary.limits.content,
        ),
        subscription=subscription,
    )


@router.get("/{user_id}/usage", response_model=UsageResponse)
async def get_usage(user_id: str, ledger: UsageLedger = Depends(get_usage_ledger)):
    """Monthly counters, limits and next reset date."""
    return _usage_response(await ledger.snapshot(user_id))


@router.post("/{user_id}/usage/{quota_type}", response_model=UsageIncrementResponse)
async def consume_quota(
    user_id: str,
    quota_type: QuotaType,
    _: EntitlementSummary = Depends(require_access("write")),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    """Consume one unit of a monthly quota (429 once it is exhausted)."""
    allowed = await ledger.increment(user_id, quota_type)
    snapshot = await ledger.snapshot(user_id)
    usage = snapshot.quotas[quota_type.value]
    if not allowed:
        raise QuotaExceeded(quota_type.value, usage.used, usage.limit)
    return UsageIncrementResponse(quota_type=quota_type.value, allowed=True, used=usage.used, limit=usage.limit)


@router.get("/{user_id}/messages", response_model=MessageUsageResponse)
async def get_message_usage(user_id: str, limiter: DailyMessageLimiter = Depends(get_message_limiter)):
    summary, _ = await _load(user_id)
    usage = await limiter.usage(user_id, summary.plan_type)
    return MessageUsageResponse(used=usage.used, limit=usage.limit, remaining=usage.remaining, resets_at=usage.resets_at)


@router.post("/{user_id}/messages", response_model=MessageUsageResponse)
async def send_message(
    user_id: str,
    summary: EntitlementSummary = Depends(require_access("write")),
    limiter: DailyMessageLimiter = Depends(get_message_limiter),
):
    """Count one outreach message against the daily limit (429 once reached)."""
    usage = await limiter.hit(user_id, summary.plan_type)
    return MessageUsageResponse(used=usage.used, limit=usage.limit, remaining=usage.remaining, resets_at=usage.resets_at)


@router.get("/{user_id}/proration", response_model=ProrationResponse)
async def get_proration_quote(user_id: str):
    """Amount due to switch the user's active monthly plan to yearly billing."""
    _, governing = await _load(user_id)
    if (
        governing is None
        or governing.status != "active"
        or governing.plan_type != PlanType.PRO_MONTHLY.value
    ):
        raise HTTPException(status_code=409, detail="No active monthly subscription to upgrade")

    settings = get_settings()
    monthly_price, yearly_price = plan_prices(settings)
    quote = proration.calculate(governing.current_period_end, monthly_price, yearly_price, utcnow())
    return ProrationResponse(
        days_remaining=quote.days_remaining,
        days_in_period=quote.days_in_period,
        unused_credit=quote.unused_credit,
        yearly_price=quote.yearly_price,
        amount_due=quote.amount_due,
        savings=quote.savings,
        currency=settings.currency,
        message=proration.proration_message(quote, settings.currency),
    )


@router.get("/{user_id}/payments", response_model=list[PaymentRecord])
async def get_billing_history(user_id: str, verifier: PaymentVerifier = Depends(get_payment_verifier)):
    """The user's 20 most recent payment records."""
    return [
        PaymentRecord(
            external_payment_id=p.external_payment_id,
            external_subscription_id=p.external_subscription_id,
            amount=p.amount,
            currency=p.currency,
            method=p.method,
            status=p.status,
            created_at=as_utc(p.created_at),
        )
        for p in await verifier.history(user_id)
    ]
