# app/services/orders.py
"""Cash orders and the admin back-office operations on orders."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import structlog

from ..db.catalog import Catalog
from ..db.orders_store import OrderStore
from ..errors import NotFoundError, OrderConflictError, ValidationError
from ..schemas.checkout import CheckoutRequest
from ..schemas.orders import Order, OrderPage, OrderStatus, PaymentMethod
from .checkout import CheckoutConfig
from .pricing import compute_totals, normalize_checkout, parse_quantity

logger = structlog.get_logger(__name__)

# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.paid: [OrderStatus.pending],
    OrderStatus.failed: [OrderStatus.pending],
    OrderStatus.cancelled: [OrderStatus.pending, OrderStatus.failed, OrderStatus.paid],
    OrderStatus.pending: [],
}


async def create_cash_order(
    body: CheckoutRequest, *, store: OrderStore, catalog: Catalog, config: CheckoutConfig
) -> Order:
    """Price the cart from the catalog and persist it right away; cash is settled at pickup."""
    if not body.items:
        raise ValidationError("Le panier est vide", field="items")

    prices = await catalog.get_variant_prices([it.productId for it in body.items if it.productId])
    items = []
    for idx, it in enumerate(body.items, start=1):
        entry = prices.get((it.productId, it.variantId or None))
        if entry is None:
            raise ValidationError(
                f"Article {idx}: produit introuvable", field=f"items[{idx - 1}].productId"
            )
        items.append(it.model_copy(update={
            "price": entry["price"],
            "name": it.name or entry["name"],
            "unit": it.unit or entry["unit"],
            "currency": entry["currency"],
        }))

    amount = body.amount
    if amount is None:
        amount = compute_totals(
            ((li.price, parse_quantity(li.quantity, idx)) for idx, li in enumerate(items, start=1)),
            delivery_fee=body.deliveryFee,
            discount_amount=body.discountAmount,
        )["total"]

    draft = normalize_checkout(
        body.model_copy(update={"items": items, "amount": amount, "paymentMethod": "cash"}),
        allowed_methods=[PaymentMethod.cash],
        default_currency=config.default_currency,
        require_delivery_time_slot=config.require_delivery_time_slot,
        tolerance=config.amount_tolerance,
    )
    order = await store.create(draft)
    logger.info("cash_order_created", order_id=order.id, amount=order.amount, pickup_type=order.pickupType)
    return order


async def get_order(store: OrderStore, order_id: str) -> Order:
    order = await store.find_by_id(order_id)
    if order is None:
        raise NotFoundError("Commande introuvable")
    return order


async def list_orders(
    store: OrderStore,
    *,
    status: Optional[OrderStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> OrderPage:
    page = max(1, page)
    limit = min(max(1, limit), 100)
    items, total = await store.list_orders(
        status=status, date_from=date_from, date_to=date_to, search=search, page=page, limit=limit
    )
    return OrderPage(items=items, total=total, page=page, limit=limit)


async def orders_for_customer(store: OrderStore, email: str) -> List[Order]:
    return await store.list_for_customer(email)


async def update_status(store: OrderStore, order_id: str, to_status: OrderStatus) -> Order:
    sources = ALLOWED_TRANSITIONS.get(to_status) or []
    order = await store.transition(order_id, sources, to_status) if sources else None
    if order is not None:
        logger.info("order_status_changed", order_id=order_id, status=to_status.value)
        return order

    current = await get_order(store, order_id)
    raise OrderConflictError(
        f"Transition impossible: {current.status.value} -> {to_status.value}", field="status"
    )


async def mark_delivered(store: OrderStore, order_id: str) -> Order:
    order = await store.mark_delivered(order_id)
    if order is not None:
        logger.info("order_delivered", order_id=order_id)
        return order

    current = await get_order(store, order_id)
    if current.delivered:
        raise OrderConflictError("Commande déjà livrée", field="delivered")
    raise OrderConflictError("Une commande à livrer doit être payée avant la livraison", field="delivered")
