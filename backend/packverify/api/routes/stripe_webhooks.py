from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from packverify.api.dependencies import get_payment_reconciler
from packverify.models.enums import WebhookOutcome
from packverify.services.payments import PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request, reconciler: PaymentReconciler = Depends(get_payment_reconciler)):
    """Handle Stripe webhook events.

    The raw body is handed to the reconciler untouched; signature checks
    must see the exact bytes Stripe signed.  Responds 200 for applied and
    ignored events, 400 for signature errors.
    """
    if not reconciler.secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    outcome = await reconciler.apply(payload, sig_header)
    if outcome is WebhookOutcome.SIGNATURE_INVALID:
        raise HTTPException(status_code=400, detail="Invalid signature")
    return JSONResponse(status_code=200, content={"received": True, "outcome": outcome.value})
