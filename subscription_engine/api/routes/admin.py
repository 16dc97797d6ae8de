"""Operator endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from subscription_engine.api.schemas.admin import ManualActivationRequest, ManualActivationResponse
from subscription_engine.core.exceptions import DataIntegrityViolation
from subscription_engine.core.logging import get_security_logger
from subscription_engine.core.security import require_internal_token
from subscription_engine.domain.plans import PlanType
from subscription_engine.services.subscription_state_machine import SubscriptionStateMachine

security_log = get_security_logger()

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_internal_token)])


def get_state_machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine()


@router.post("/subscriptions/activate", response_model=ManualActivationResponse)
async def activate_subscription(
    body: ManualActivationRequest,
    machine: SubscriptionStateMachine = Depends(get_state_machine),
):
    """Grant a paid plan for a payment settled outside the webhook flow."""
    if body.plan_type == PlanType.FREE:
        raise HTTPException(status_code=400, detail="Free plan needs no activation")

    try:
        outcome = await machine.activate_manually(body.user_id, body.plan_type, email=body.email)
    except DataIntegrityViolation as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    security_log.info(
        "manual_activation",
        user_id=body.user_id,
        plan_type=body.plan_type.value,
        external_subscription_id=outcome.external_subscription_id,
    )
    return ManualActivationResponse(
        user_id=body.user_id,
        external_subscription_id=outcome.external_subscription_id,
        applied=outcome.applied,
        detail=outcome.detail,
    )
