# app/services/checkout.py
"""
Payment-to-order reconciliation.

A checkout is validated and priced here, handed to a payment processor, and
parked in the pending cache until the processor confirms it (card webhook or
wallet capture). Only then does an Order exist, created directly as `paid`.
The remote session id is the idempotency key for the whole flow: the store
holds at most one Order per remote session and flips it to paid at most once.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import structlog

from ..db.catalog import Catalog
from ..db.orders_store import OrderStore
from ..errors import NotFoundError, StateConflictError, ValidationError
from ..schemas.checkout import CaptureOut, CheckoutCreated, CheckoutRequest, OrderStatusOut
from ..schemas.orders import Order, OrderStatus, PaymentMethod, PendingCheckout
from .events import PaymentEventJournal
from .gateway import FAILED, PENDING, GatewayLine, PaymentGateway, ShippingAddress, new_correlation_id
from .paypal_gateway import APPROVED, COMPLETED, NOT_YET_APPROVED, VOIDED
from .pending_checkouts import PendingCheckoutCache
from .pricing import normalize_checkout, verify_against_catalog
from .receipts import ReceiptSender

logger = structlog.get_logger(__name__)

CARD_SUCCESS_EVENTS = ("payment_intent.succeeded", "charge.succeeded")
# payment_failed leaves the intent in requires_payment_method: the customer may
# pay again on the same session, so only cancellation drops the pending entry
CARD_DECLINED_EVENTS = ("payment_intent.payment_failed",)
CARD_CANCELLED_EVENTS = ("payment_intent.canceled",)


@dataclass
class CheckoutConfig:
    default_currency: str = "EUR"
    amount_tolerance: float = 0.01
    require_delivery_time_slot: bool = False
    verify_catalog_prices: bool = False

    @classmethod
    def from_settings(cls, s) -> "CheckoutConfig":
        return cls(
            default_currency=s.default_currency,
            amount_tolerance=s.amount_tolerance,
            require_delivery_time_slot=s.require_delivery_time_slot,
            verify_catalog_prices=s.verify_catalog_prices,
        )


@dataclass
class ConfirmationResult:
    remote_session_id: str
    status: str  # paid | failed | pending
    order: Optional[Order] = None
    # True only for the call that performed the paid transition
    created: bool = False

    @property
    def order_id(self) -> Optional[str]:
        return self.order.id if self.order else None


class CheckoutOrchestrator:
    def __init__(
        self,
        *,
        config: CheckoutConfig,
        orders: OrderStore,
        pending: PendingCheckoutCache,
        gateways: Dict[PaymentMethod, PaymentGateway],
        notifier: Optional[ReceiptSender] = None,
        catalog: Optional[Catalog] = None,
        journal: Optional[PaymentEventJournal] = None,
    ):
        self.config = config
        self.orders = orders
        self.pending = pending
        self.gateways = gateways
        self.notifier = notifier
        self.catalog = catalog
        self.journal = journal
        self._receipt_tasks: Set[asyncio.Task] = set()

    def _gateway(self, method: PaymentMethod) -> PaymentGateway:
        gateway = self.gateways.get(method)
        if gateway is None:
            raise ValidationError("Mode de paiement invalide", field="paymentMethod")
        return gateway

    # ---------- create ----------

    async def create_checkout(self, body: CheckoutRequest) -> CheckoutCreated:
        draft = normalize_checkout(
            body,
            allowed_methods=self.gateways.keys(),
            default_currency=self.config.default_currency,
            require_delivery_time_slot=self.config.require_delivery_time_slot,
            tolerance=self.config.amount_tolerance,
        )
        if self.config.verify_catalog_prices and self.catalog is not None:
            prices = await self.catalog.get_variant_prices([li.productId for li in draft.items])
            verify_against_catalog(draft, prices)

        gateway = self._gateway(draft.paymentMethod)
        correlation_id = new_correlation_id()
        shipping = None
        if draft.deliveryAddress is not None:
            shipping = ShippingAddress.from_delivery(draft.customer.fullName, draft.deliveryAddress)

        session = await gateway.create_remote_session(
            amount=draft.amount,
            currency=draft.currency,
            lines=[
                GatewayLine(
                    name=f"{li.name} - {li.unit}" if li.unit else li.name,
                    unit_price=li.price,
                    quantity=li.quantity,
                )
                for li in draft.items
            ],
            correlation_id=correlation_id,
            shipping_amount=draft.deliveryFee,
            discount_amount=draft.discountAmount,
            shipping_address=shipping,
            customer_email=draft.customer.email,
        )

        payload = PendingCheckout(**draft.model_dump(), correlationId=correlation_id)
        try:
            await self.pending.put(session.id, payload)
        except Exception:
            # the remote session exists but a confirmation could not be matched
            logger.critical(
                "pending_checkout_stash_failed",
                remote_session_id=session.id,
                correlation_id=correlation_id,
                amount=draft.amount,
            )
            raise

        logger.info(
            "checkout_created",
            remote_session_id=session.id,
            correlation_id=correlation_id,
            payment_method=draft.paymentMethod.value,
            amount=draft.amount,
            currency=draft.currency,
        )
        return CheckoutCreated(
            remoteSessionId=session.id,
            paymentMethod=draft.paymentMethod.value,
            amount=draft.amount,
            currency=draft.currency,
            clientSecret=session.client_secret,
            approvalUrl=session.approval_url,
        )

    # ---------- confirm ----------

    async def confirm_payment(self, remote_session_id: str, method: PaymentMethod) -> ConfirmationResult:
        gateway = self._gateway(method)
        log = logger.bind(remote_session_id=remote_session_id, payment_method=method.value)

        payload = await self.pending.get(remote_session_id)
        if payload is None:
            existing = await self.orders.find_by_remote_session_id(remote_session_id)
            if existing is not None:
                log.info("payment_already_confirmed", order_id=existing.id, status=existing.status.value)
                return ConfirmationResult(remote_session_id, existing.status.value, existing)
            log.critical("pending_checkout_orphaned")
            raise NotFoundError("Aucune commande en attente pour cette session de paiement")

        if method == PaymentMethod.wallet:
            await self._ensure_wallet_capturable(gateway, remote_session_id)

        capture = await gateway.capture_remote_session(remote_session_id, payload.correlationId)

        if capture.status == FAILED:
            if capture.terminal:
                await self.pending.delete(remote_session_id)
            log.warning(
                "payment_failed", raw_status=capture.raw_status, terminal=capture.terminal
            )
            return ConfirmationResult(remote_session_id, OrderStatus.failed.value)
        if capture.status == PENDING:
            log.info("payment_still_processing", raw_status=capture.raw_status)
            return ConfirmationResult(remote_session_id, OrderStatus.pending.value)

        order, created = await self.orders.create_paid_if_absent(
            payload, remote_session_id, capture.transaction_id
        )
        if not created and order.status == OrderStatus.pending:
            created = await self.orders.update_status_if_remote_session_matches(
                remote_session_id,
                OrderStatus.pending,
                OrderStatus.paid,
                {"transactionId": capture.transaction_id},
            )
            if created:
                order = await self.orders.find_by_remote_session_id(remote_session_id)

        await self.pending.delete(remote_session_id)

        if created:
            log.info("order_paid", order_id=order.id, transaction_id=capture.transaction_id, amount=order.amount)
            self._schedule_receipt(order)
        else:
            log.info("payment_already_confirmed", order_id=order.id, status=order.status.value)
        return ConfirmationResult(remote_session_id, order.status.value, order, created)

    async def _ensure_wallet_capturable(self, gateway: PaymentGateway, remote_session_id: str) -> None:
        status = await gateway.get_remote_session_status(remote_session_id)
        # COMPLETED: an earlier attempt captured but never persisted; the
        # capture call reports the existing capture
        if status in (APPROVED, COMPLETED):
            return
        if status == VOIDED:
            await self.pending.delete(remote_session_id)
            raise StateConflictError("Le paiement a été annulé", reason="cancelled", remote_status=status)
        if status in NOT_YET_APPROVED:
            raise StateConflictError(
                "Le paiement n'a pas encore été approuvé", reason="not_approved", remote_status=status
            )
        raise StateConflictError(
            "État du paiement inattendu", reason="unexpected_state", remote_status=status
        )

    async def capture_wallet(self, remote_session_id: str) -> CaptureOut:
        result = await self.confirm_payment(remote_session_id, PaymentMethod.wallet)
        return CaptureOut(
            success=result.status == OrderStatus.paid.value,
            orderId=result.order_id,
            status=result.status,
            remoteSessionId=remote_session_id,
        )

    async def handle_card_event(self, event: Dict[str, Any]) -> str:
        """Dispatch a verified card webhook event; returns what was done with it."""
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        if event_type == "charge.succeeded":
            remote_session_id = obj.get("payment_intent")
        else:
            remote_session_id = obj.get("id")

        if self.journal is not None:
            await self.journal.record("stripe", event_type, remote_session_id, event.get("id"))

        if event_type in CARD_SUCCESS_EVENTS and remote_session_id:
            try:
                result = await self.confirm_payment(remote_session_id, PaymentMethod.card)
            except NotFoundError:
                # already logged as orphaned; a retry from the processor cannot repair it
                return "orphaned"
            return result.status
        if event_type in CARD_DECLINED_EVENTS and remote_session_id:
            logger.info("card_payment_declined", remote_session_id=remote_session_id)
            return OrderStatus.failed.value
        if event_type in CARD_CANCELLED_EVENTS and remote_session_id:
            await self.drop_pending(remote_session_id, reason=event_type)
            return OrderStatus.cancelled.value

        logger.debug("card_event_ignored", event_type=event_type)
        return "ignored"

    async def drop_pending(self, remote_session_id: str, reason: str) -> None:
        removed = await self.pending.delete(remote_session_id)
        logger.info("pending_checkout_dropped", remote_session_id=remote_session_id, reason=reason, removed=removed)

    # ---------- status ----------

    async def get_status(self, order_id: str) -> OrderStatusOut:
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise NotFoundError("Commande introuvable")
        return OrderStatusOut(
            orderId=order.id,
            status=order.status.value,
            amount=order.amount,
            currency=order.currency,
            remoteSessionId=order.remoteSessionId,
            delivered=order.delivered,
            pickupType=order.pickupType,
        )

    # ---------- receipts ----------

    def _schedule_receipt(self, order: Order) -> None:
        if self.notifier is None:
            return
        task = asyncio.create_task(self._send_receipt(order))
        self._receipt_tasks.add(task)
        task.add_done_callback(self._receipt_tasks.discard)

    async def _send_receipt(self, order: Order) -> None:
        try:
            await self.notifier.send_receipt(order.customer.email, order)
        except Exception as e:
            # the order stays paid whatever happens to the e-mail
            logger.error("receipt_failed", order_id=order.id, error=str(e))

    async def wait_for_receipts(self) -> None:
        if self._receipt_tasks:
            await asyncio.gather(*list(self._receipt_tasks), return_exceptions=True)
