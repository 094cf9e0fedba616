# app/services/stripe_gateway.py
"""Card payments through Stripe PaymentIntents (secret-key client, webhook push)."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import stripe
import structlog

from ..errors import ProcessorAuthError, ProcessorError, SignatureError
from ..schemas.orders import PaymentMethod
from .gateway import (
    FAILED,
    PENDING,
    SUCCEEDED,
    CaptureResult,
    GatewayLine,
    PaymentGateway,
    RemoteSession,
    ShippingAddress,
    money,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

# requires_payment_method: the last attempt was declined, the customer may retry
_FAILED_STATUSES = {"canceled", "requires_payment_method"}
_METADATA_MAX = 500


def _line_summary(lines: List[GatewayLine]) -> str:
    s = "; ".join(f"{ln.quantity}x {ln.name} @ {money(ln.unit_price)}" for ln in lines)
    return s[:_METADATA_MAX]


class StripeGateway(PaymentGateway):
    method = PaymentMethod.card
    name = "stripe"

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str], timeout: float = 20.0):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        # fail fast: no silent SDK retries, bounded socket timeout
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    async def get_access_credential(self) -> str:
        key = (self._secret_key or "").strip()
        if not key:
            raise ProcessorAuthError("STRIPE_SECRET_KEY is not set")
        if not key.startswith(("sk_test_", "sk_live_", "rk_test_", "rk_live_")):
            raise ProcessorAuthError("STRIPE_SECRET_KEY has an invalid format")
        return key

    async def _call(self, op: str, fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.AuthenticationError as e:
            logger.error("stripe_auth_failed", op=op, error=str(e))
            raise ProcessorAuthError("Stripe rejected the configured credentials") from e
        except stripe.StripeError as e:
            logger.error("stripe_call_failed", op=op, error=str(e), code=getattr(e, "code", None))
            raise ProcessorError(f"Stripe {op} failed: {e.user_message or e}") from e

    async def create_remote_session(
        self,
        *,
        amount: float,
        currency: str,
        lines: List[GatewayLine],
        correlation_id: str,
        shipping_amount: float = 0.0,
        discount_amount: float = 0.0,
        shipping_address: Optional[ShippingAddress] = None,
        customer_email: Optional[str] = None,
    ) -> RemoteSession:
        api_key = await self.get_access_credential()

        metadata: Dict[str, str] = {
            "correlationId": correlation_id,
            "itemCount": str(sum(ln.quantity for ln in lines)),
            "lines": _line_summary(lines),
        }
        if shipping_amount > 0:
            metadata["shipping"] = money(shipping_amount)
        if discount_amount > 0:
            metadata["discount"] = money(discount_amount)

        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if customer_email:
            params["receipt_email"] = customer_email
        if shipping_address is not None:
            params["shipping"] = {
                "name": shipping_address.full_name,
                "address": {
                    "line1": shipping_address.street,
                    "city": shipping_address.city,
                    "postal_code": shipping_address.postal_code or "",
                    "country": (shipping_address.country or "FR")[:2].upper(),
                },
            }

        pi = await self._call(
            "create",
            stripe.PaymentIntent.create,
            api_key=api_key,
            idempotency_key=correlation_id,
            **params,
        )
        logger.info(
            "stripe_intent_created",
            remote_session_id=pi.id,
            correlation_id=correlation_id,
            amount_minor=params["amount"],
        )
        return RemoteSession(id=pi.id, client_secret=pi.client_secret, raw_status=pi.status)

    async def get_remote_session_status(self, remote_session_id: str) -> str:
        api_key = await self.get_access_credential()
        pi = await self._call("retrieve", stripe.PaymentIntent.retrieve, remote_session_id, api_key=api_key)
        return pi.status

    async def capture_remote_session(self, remote_session_id: str, correlation_id: str) -> CaptureResult:
        api_key = await self.get_access_credential()
        pi = await self._call("retrieve", stripe.PaymentIntent.retrieve, remote_session_id, api_key=api_key)

        if pi.status == "requires_capture":
            pi = await self._call(
                "capture",
                stripe.PaymentIntent.capture,
                remote_session_id,
                api_key=api_key,
                idempotency_key=f"{correlation_id}_capture",
            )

        status = pi.status
        if status == "succeeded":
            return CaptureResult(
                status=SUCCEEDED,
                transaction_id=getattr(pi, "latest_charge", None) or pi.id,
                raw_status=status,
            )
        if status in _FAILED_STATUSES:
            return CaptureResult(status=FAILED, raw_status=status, terminal=status == "canceled")
        return CaptureResult(status=PENDING, raw_status=status)

    def verify_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Return the parsed event or raise SignatureError."""
        if not self._webhook_secret:
            raise SignatureError("STRIPE_WEBHOOK_SECRET is not set")
        if not signature:
            raise SignatureError("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload=raw_body, sig_header=signature, secret=self._webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureError(f"invalid signature: {e}") from e
        except ValueError as e:
            # construct_event raises ValueError on a body that is not JSON
            raise SignatureError(f"invalid payload: {e}") from e
        # plain dicts downstream, whatever the SDK version makes of StripeObject
        return json.loads(raw_body)
