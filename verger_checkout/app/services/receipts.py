# app/services/receipts.py
"""Order receipts sent through Resend."""
from __future__ import annotations

import asyncio
from typing import Dict, Optional

import resend
import structlog

from ..schemas.orders import Order

logger = structlog.get_logger(__name__)


class ReceiptError(Exception):
    pass


def _receipt_text(order: Order, brand_name: str) -> str:
    lines = [f"Merci pour votre commande chez {brand_name} !", "", f"Commande n° {order.id}", ""]
    for li in order.items:
        unit = f" ({li.unit})" if li.unit else ""
        lines.append(f"- {li.quantity} x {li.name}{unit} : {li.total:.2f} {li.currency}")
    if order.deliveryFee:
        lines.append(f"Livraison : {order.deliveryFee:.2f} {order.currency}")
    if order.discountAmount:
        code = f" ({order.discountCode})" if order.discountCode else ""
        lines.append(f"Remise{code} : -{order.discountAmount:.2f} {order.currency}")
    lines += ["", f"Total payé : {order.amount:.2f} {order.currency}"]
    if order.pickupType == "store" and order.pickupLocation:
        lines.append(f"Retrait : {order.pickupLocation.name}, {order.pickupLocation.address}")
    elif order.deliveryAddress:
        slot = f" ({order.deliveryTime})" if order.deliveryTime else ""
        lines.append(f"Livraison à : {order.deliveryAddress.street}, {order.deliveryAddress.city}{slot}")
    return "\n".join(lines)


class ReceiptSender:
    def __init__(self, api_key: Optional[str], from_email: str, brand_name: str):
        self._api_key = (api_key or "").strip()
        self.from_email = from_email
        self.brand_name = brand_name

    def build_payload(self, to_email: str, order: Order) -> Dict[str, object]:
        return {
            "from": f"{self.brand_name} <{self.from_email}>",
            "to": [to_email],
            "subject": f"Votre commande {order.id[-6:].upper()} est confirmée",
            "text": _receipt_text(order, self.brand_name),
        }

    def _send(self, payload: Dict[str, object]) -> str:
        resend.api_key = self._api_key
        response = resend.Emails.send(payload)
        if not isinstance(response, dict) or not response.get("id"):
            raise ReceiptError(f"unexpected Resend response: {response!r}")
        return response["id"]

    async def send_receipt(self, to_email: str, order: Order) -> None:
        if not self._api_key:
            logger.warning("receipt_skipped_no_api_key", order_id=order.id)
            return
        message_id = await asyncio.to_thread(self._send, self.build_payload(to_email, order))
        logger.info("receipt_sent", order_id=order.id, message_id=message_id)
