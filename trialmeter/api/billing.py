"""
Billing API routes.

- POST /api/billing/webhook: Handle Stripe webhooks
"""
import logging

from fastapi import APIRouter, Request, HTTPException, Header
from starlette.concurrency import run_in_threadpool

from trialmeter.features.billing.service import billing_enabled, process_webhook_event
from trialmeter.features.billing.provider import BillingWebhookError


router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("trialmeter")


@router.post("/webhook")
async def handle_webhook(request: Request, stripe_signature: str = Header(None)):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and reconciles the
    tenant's trial state (conversion confirmed, subscription deleted).

    Returns:
        {"received": true, "event_id": "..."}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing disabled", "code": "billing_disabled"},
        )

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = await run_in_threadpool(process_webhook_event, headers, body)
    except BillingWebhookError as e:
        logger.warning("billing.webhook_rejected", extra={"error_code": "invalid_webhook", "error": str(e)})
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True, "event_id": result.event_id}
