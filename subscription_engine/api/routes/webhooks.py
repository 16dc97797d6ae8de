"""Processor webhook endpoint."""

from fastapi import APIRouter, Depends, HTTPException, Request

from subscription_engine.services.webhook_ingestor import WebhookIngestor

router = APIRouter()

SIGNATURE_HEADER = "x-razorpay-signature"
EVENT_ID_HEADER = "x-razorpay-event-id"


def get_webhook_ingestor() -> WebhookIngestor:
    return WebhookIngestor()


@router.post("/webhooks/razorpay")
async def razorpay_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_webhook_ingestor)):
    """Verify, deduplicate and apply a Razorpay event.

    2xx tells the processor to stop redelivering; any 5xx makes it retry.
    """
    body = await request.body()
    result = await ingestor.ingest(
        body,
        request.headers.get(SIGNATURE_HEADER),
        event_id_header=request.headers.get(EVENT_ID_HEADER),
    )

    if result.http_status >= 400:
        raise HTTPException(status_code=result.http_status, detail=result.detail)

    return {"status": "ok", "detail": result.detail, "event_id": result.event_id}
