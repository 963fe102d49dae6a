"""Stripe webhook endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from creator_vault.api.dependencies import get_webhook_reconciler
from creator_vault.services.webhook_reconciler import WebhookReconciler

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

# Bare path registered in the Stripe dashboard.
callback_router = APIRouter(tags=["webhooks"])


async def _receive(request: Request, reconciler: WebhookReconciler) -> dict:
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    outcome = await reconciler.handle(payload, sig_header)
    return {"received": True, "outcome": outcome.status}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    """Receive and process Stripe webhook events.

    Reads the raw request body and the Stripe-Signature header, then
    delegates to the reconciler. 200 means every side effect is committed.
    """
    return await _receive(request, reconciler)


@callback_router.post("/webhook")
async def stripe_webhook_callback(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    return await _receive(request, reconciler)
