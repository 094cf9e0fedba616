# app/services/paypal_gateway.py
"""
Redirect-wallet payments through the PayPal Orders v2 REST API.

Authentication is OAuth2 client-credentials; the bearer token is cached until
shortly before PayPal says it expires and is never reused after a 401.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..errors import NotFoundError, ProcessorAuthError, ProcessorError
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
)

logger = structlog.get_logger(__name__)

PAYPAL_API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# remote order states (GET /v2/checkout/orders/{id} -> "status")
APPROVED = "APPROVED"
COMPLETED = "COMPLETED"
VOIDED = "VOIDED"
NOT_YET_APPROVED = {"CREATED", "SAVED", "PAYER_ACTION_REQUIRED"}

_TOKEN_SKEW_SECONDS = 60


def _extract_capture(order: Dict[str, Any]) -> CaptureResult:
    """Map a PayPal order representation to a CaptureResult."""
    captures: List[Dict[str, Any]] = []
    for unit in order.get("purchase_units") or []:
        captures.extend(((unit.get("payments") or {}).get("captures")) or [])
    cap = captures[0] if captures else {}
    cap_status = cap.get("status")
    order_status = order.get("status")

    if order_status == COMPLETED and cap_status in (None, "COMPLETED"):
        return CaptureResult(status=SUCCEEDED, transaction_id=cap.get("id"), raw_status=order_status)
    if cap_status == "PENDING":
        return CaptureResult(status=PENDING, transaction_id=cap.get("id"), raw_status=cap_status)
    return CaptureResult(
        status=FAILED,
        transaction_id=cap.get("id"),
        raw_status=cap_status or order_status,
    )


class PayPalGateway(PaymentGateway):
    method = PaymentMethod.wallet
    name = "paypal"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        environment: str = "sandbox",
        return_url: str,
        cancel_url: str,
        brand_name: str = "Votre Boutique",
        token_timeout: float = 10.0,
        order_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        env = environment if environment in PAYPAL_API_BASE else "sandbox"
        self.base_url = PAYPAL_API_BASE[env]
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self._token_timeout = token_timeout
        self._order_timeout = order_timeout
        self._transport = transport
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    def _forget_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def get_access_credential(self) -> str:
        if not self._client_id or not self._client_secret:
            raise ProcessorAuthError("PayPal credentials are not configured")

        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            try:
                async with self._client(self._token_timeout) as client:
                    resp = await client.post(
                        "/v1/oauth2/token",
                        data={"grant_type": "client_credentials"},
                        auth=(self._client_id, self._client_secret),
                        headers={"Accept": "application/json"},
                    )
                    resp.raise_for_status()
                    data = resp.json()
            except httpx.HTTPStatusError as exc:
                self._forget_token()
                logger.error("paypal_token_rejected", status=exc.response.status_code)
                if exc.response.status_code == 401:
                    raise ProcessorAuthError("Invalid PayPal credentials") from exc
                raise ProcessorAuthError("Failed to authenticate with PayPal") from exc
            except httpx.RequestError as exc:
                self._forget_token()
                logger.error("paypal_token_unreachable", error=str(exc))
                raise ProcessorAuthError(f"PayPal token request failed: {exc}") from exc

            token = data.get("access_token")
            if not token:
                raise ProcessorAuthError("Invalid token response from PayPal")
            expires_in = float(data.get("expires_in") or 0)
            self._token = token
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - _TOKEN_SKEW_SECONDS)
            return token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        correlation_id: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        prefer_representation: bool = False,
    ) -> httpx.Response:
        token = await self.get_access_credential()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if correlation_id:
            headers["PayPal-Request-Id"] = correlation_id
        if prefer_representation:
            headers["Prefer"] = "return=representation"

        try:
            async with self._client(self._order_timeout) as client:
                resp = await client.request(method, path, json=json, headers=headers)
        except httpx.RequestError as exc:
            logger.error("paypal_request_failed", path=path, error=str(exc))
            raise ProcessorError(f"PayPal request failed: {exc}") from exc

        if resp.status_code == 401:
            # token revoked early; do not reuse it
            self._forget_token()
            raise ProcessorAuthError("PayPal rejected the access token")
        return resp

    def build_purchase_unit(
        self,
        *,
        amount: float,
        currency: str,
        lines: List[GatewayLine],
        correlation_id: str,
        shipping_amount: float,
        discount_amount: float,
        shipping_address: Optional[ShippingAddress],
    ) -> Dict[str, Any]:
        items_total = round(sum(ln.unit_price * ln.quantity for ln in lines), 2)
        breakdown: Dict[str, Any] = {
            "item_total": {"currency_code": currency, "value": money(items_total)},
        }
        if shipping_amount > 0:
            breakdown["shipping"] = {"currency_code": currency, "value": money(shipping_amount)}
        if discount_amount > 0:
            breakdown["discount"] = {"currency_code": currency, "value": money(discount_amount)}

        unit: Dict[str, Any] = {
            "custom_id": correlation_id,
            "description": f"Commande {correlation_id[-8:]}",
            "amount": {
                "currency_code": currency,
                "value": money(amount),
                "breakdown": breakdown,
            },
            "items": [
                {
                    "name": ln.name[:127],
                    "unit_amount": {"currency_code": currency, "value": money(ln.unit_price)},
                    "quantity": str(ln.quantity),
                    "category": ln.category,
                }
                for ln in lines
            ],
        }
        if shipping_address is not None:
            unit["shipping"] = {
                "name": {"full_name": shipping_address.full_name[:300]},
                "address": {
                    "address_line_1": shipping_address.street[:300],
                    "admin_area_2": shipping_address.city[:120],
                    "postal_code": (shipping_address.postal_code or "")[:60],
                    "country_code": (shipping_address.country or "FR")[:2].upper(),
                },
            }
        return unit

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
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                self.build_purchase_unit(
                    amount=amount,
                    currency=currency,
                    lines=lines,
                    correlation_id=correlation_id,
                    shipping_amount=shipping_amount,
                    discount_amount=discount_amount,
                    shipping_address=shipping_address,
                )
            ],
            "application_context": {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
                "brand_name": self.brand_name,
                "locale": "fr-FR",
                "landing_page": "LOGIN",
                "shipping_preference": "SET_PROVIDED_ADDRESS" if shipping_address else "NO_SHIPPING",
                "user_action": "PAY_NOW",
            },
        }

        resp = await self._request(
            "POST",
            "/v2/checkout/orders",
            correlation_id=correlation_id,
            json=payload,
            prefer_representation=True,
        )
        if resp.status_code >= 400:
            logger.error("paypal_create_rejected", status=resp.status_code, body=resp.text[:300])
            raise ProcessorError(f"PayPal order creation failed ({resp.status_code})")

        data = resp.json()
        order_id = data.get("id")
        if not order_id:
            raise ProcessorError("Invalid PayPal order response - missing order ID")
        approval_url = next(
            (ln.get("href") for ln in data.get("links") or [] if ln.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approval_url:
            raise ProcessorError("No approval URL received from PayPal")

        logger.info(
            "paypal_order_created",
            remote_session_id=order_id,
            correlation_id=correlation_id,
            status=data.get("status"),
        )
        return RemoteSession(id=order_id, approval_url=approval_url, raw_status=data.get("status"))

    async def _get_order(self, remote_session_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/v2/checkout/orders/{remote_session_id}")
        if resp.status_code == 404:
            raise NotFoundError(f"PayPal order {remote_session_id} not found")
        if resp.status_code >= 400:
            raise ProcessorError(f"PayPal order lookup failed ({resp.status_code})")
        return resp.json()

    async def get_remote_session_status(self, remote_session_id: str) -> str:
        data = await self._get_order(remote_session_id)
        return data.get("status") or ""

    async def capture_remote_session(self, remote_session_id: str, correlation_id: str) -> CaptureResult:
        resp = await self._request(
            "POST",
            f"/v2/checkout/orders/{remote_session_id}/capture",
            correlation_id=f"{correlation_id}_capture",
            json={},
            prefer_representation=True,
        )

        if resp.status_code == 404:
            raise NotFoundError(f"PayPal order {remote_session_id} not found")
        if resp.status_code == 422 and self._already_captured(resp):
            logger.info("paypal_order_already_captured", remote_session_id=remote_session_id)
            return _extract_capture(await self._get_order(remote_session_id))
        if resp.status_code == 422:
            # e.g. INSTRUMENT_DECLINED: the buyer can go back and pick another funding source
            logger.warning("paypal_capture_declined", remote_session_id=remote_session_id, body=resp.text[:300])
            return CaptureResult(status=FAILED, raw_status="UNPROCESSABLE_ENTITY")
        if resp.status_code >= 400:
            logger.error("paypal_capture_failed", remote_session_id=remote_session_id, status=resp.status_code)
            raise ProcessorError(f"PayPal capture failed ({resp.status_code})")

        result = _extract_capture(resp.json())
        logger.info(
            "paypal_order_captured",
            remote_session_id=remote_session_id,
            status=result.status,
            transaction_id=result.transaction_id,
        )
        return result

    @staticmethod
    def _already_captured(resp: httpx.Response) -> bool:
        try:
            details = resp.json().get("details") or []
        except ValueError:
            return False
        return any(d.get("issue") == "ORDER_ALREADY_CAPTURED" for d in details)
