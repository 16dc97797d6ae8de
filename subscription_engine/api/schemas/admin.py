from pydantic import BaseModel

from subscription_engine.domain.plans import PlanType


class ManualActivationRequest(BaseModel):
    user_id: str
    plan_type: PlanType
    email: str | None = None


class ManualActivationResponse(BaseModel):
    user_id: str
    external_subscription_id: str | None
    applied: bool
    detail: str
