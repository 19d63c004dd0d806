import logging

from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from marketplace.payments.stripe_client import get_gateway
from marketplace.payments import webhooks

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])

# module marketplace.payments.views
@router.post("/webhook", include_in_schema=False)
async def webhook_stripe(request: Request, gateway=Depends(get_gateway)):
    """
    Webhook Stripe.
    - Signature: gateway.verify_signature (Stripe-Signature + STRIPE_WEBHOOK_SECRET), 400 sinon
    - Dispatch: webhooks.dispatch (types inconnus => {"status": "ignored"})
    - Les échecs métier sont compensés dans les handlers et répondent 200
    """
    payload = await request.body()
    try:
        event = gateway.verify_signature(payload, request.headers.get("stripe-signature"))
    except Exception:
        logger.warning("payments.views.webhook_stripe invalid signature or payload")
        raise HTTPException(status_code=400, detail="Invalid Stripe webhook payload")
    result = await run_in_threadpool(webhooks.dispatch, event, webhooks.WebhookContext(gateway))
    return JSONResponse(result)
