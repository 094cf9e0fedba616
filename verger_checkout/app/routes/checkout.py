# app/routes/checkout.py
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request

from ..deps import get_orchestrator, get_stripe_gateway
from ..errors import SignatureError
from ..schemas.checkout import (
    CaptureIn,
    CaptureOut,
    CheckoutCreated,
    CheckoutRequest,
    OrderStatusOut,
    WebhookAck,
)
from ..services.checkout import CheckoutOrchestrator
from ..services.stripe_gateway import StripeGateway

router = APIRouter(prefix="/checkout", tags=["checkout"])
logger = structlog.get_logger(__name__)


@router.post("", status_code=201, response_model=CheckoutCreated, response_model_exclude_none=True)
async def create_checkout(
    body: CheckoutRequest,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.create_checkout(body)


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def card_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    """
    Stripe pushes PaymentIntent events here. Anything that passes the
    signature check gets a 200, including duplicates and event types we do
    not act on, so Stripe stops retrying.
    """
    raw = await request.body()
    try:
        event = gateway.verify_webhook(raw, stripe_signature)
    except SignatureError as e:
        logger.warning("webhook_signature_rejected", error=e.message)
        raise
    handled = await orchestrator.handle_card_event(event)
    return WebhookAck(handled=handled)


@router.post("/capture", response_model=CaptureOut)
async def capture_wallet(
    body: CaptureIn,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.capture_wallet(body.remoteSessionId)


@router.get("/{order_id}/status", response_model=OrderStatusOut)
async def checkout_status(
    order_id: str,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_status(order_id)
