"""Scheduler-triggered maintenance endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from subscription_engine.core.security import require_cron_secret
from subscription_engine.services.expiration_sweeper import ExpirationSweeper

router = APIRouter(dependencies=[Depends(require_cron_secret)])


class SweepResponse(BaseModel):
    processed: int
    failed: int
    skipped: int
    errors: list[str]


class PruneResponse(BaseModel):
    deleted: int


def get_sweeper() -> ExpirationSweeper:
    return ExpirationSweeper()


@router.api_route("/expire-subscriptions", methods=["GET", "POST"], response_model=SweepResponse)
async def expire_subscriptions(sweeper: ExpirationSweeper = Depends(get_sweeper)):
    """Close every cancelled subscription whose paid period has ended."""
    result = await sweeper.sweep()
    return SweepResponse(
        processed=result.processed,
        failed=result.failed,
        skipped=result.skipped,
        errors=result.errors,
    )


@router.post("/prune-webhook-events", response_model=PruneResponse)
async def prune_webhook_events(sweeper: ExpirationSweeper = Depends(get_sweeper)):
    """Drop processed webhook events past the retention window."""
    return PruneResponse(deleted=await sweeper.prune_webhook_events())
