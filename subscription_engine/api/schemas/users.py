"""Response models for the per-user billing endpoints."""

from datetime import datetime

from pydantic import BaseModel


class QuotaLimitsResponse(BaseModel):
    ideas: int  # -1 = unlimited
    validations: int
    content: int


class SubscriptionSummary(BaseModel):
    external_subscription_id: str
    status: str
    plan_type: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool


class EntitlementResponse(BaseModel):
    user_id: str
    access_level: str  # full | readonly | none
    reason: str | None
    can_write: bool
    plan_type: str
    limits: QuotaLimitsResponse
    subscription: SubscriptionSummary | None


class QuotaUsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int | None  # None = unlimited


class UsageResponse(BaseModel):
    user_id: str
    plan_type: str
    reset_date: datetime
    quotas: dict[str, QuotaUsageResponse]


class UsageIncrementResponse(BaseModel):
    quota_type: str
    allowed: bool
    used: int
    limit: int


class MessageUsageResponse(BaseModel):
    used: int
    limit: int
    remaining: int
    resets_at: str  # ISO 8601, next midnight UTC


class ProrationResponse(BaseModel):
    days_remaining: int
    days_in_period: int
    unused_credit: int
    yearly_price: int
    amount_due: int
    savings: int
    currency: str
    message: str


class PaymentRecord(BaseModel):
    external_payment_id: str
    external_subscription_id: str | None
    amount: int
    currency: str
    method: str | None
    status: str
    created_at: datetime
