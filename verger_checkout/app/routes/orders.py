# app/routes/orders.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..db.catalog import Catalog
from ..db.orders_store import OrderStore
from ..deps import get_catalog, get_checkout_config, get_order_store
from ..schemas.checkout import CheckoutRequest
from ..schemas.orders import Order, OrderPage, OrderStatus
from ..services import orders as order_service
from ..services.checkout import CheckoutConfig
from .auth import require_admin

router = APIRouter(prefix="/orders", tags=["orders"])


class StatusBody(BaseModel):
    status: OrderStatus


@router.post("", status_code=201, response_model=Order)
async def create_cash_order(
    body: CheckoutRequest,
    store: OrderStore = Depends(get_order_store),
    catalog: Catalog = Depends(get_catalog),
    config: CheckoutConfig = Depends(get_checkout_config),
):
    return await order_service.create_cash_order(body, store=store, catalog=catalog, config=config)


@router.get("", response_model=OrderPage, dependencies=[Depends(require_admin)])
async def list_orders_endpoint(
    status: Optional[OrderStatus] = None,
    date_from: Optional[datetime] = Query(default=None, alias="from"),
    date_to: Optional[datetime] = Query(default=None, alias="to"),
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    store: OrderStore = Depends(get_order_store),
):
    """Paginated orders for the admin UI, newest first."""
    return await order_service.list_orders(
        store, status=status, date_from=date_from, date_to=date_to, search=search, page=page, limit=limit
    )


@router.get("/customer/{email}", response_model=List[Order], dependencies=[Depends(require_admin)])
async def customer_orders(email: str, store: OrderStore = Depends(get_order_store)):
    return await order_service.orders_for_customer(store, email)


@router.get("/{order_id}", response_model=Order, dependencies=[Depends(require_admin)])
async def get_order(order_id: str, store: OrderStore = Depends(get_order_store)):
    return await order_service.get_order(store, order_id)


@router.patch("/{order_id}/status", response_model=Order, dependencies=[Depends(require_admin)])
async def update_order_status(
    order_id: str, body: StatusBody, store: OrderStore = Depends(get_order_store)
):
    return await order_service.update_status(store, order_id, body.status)


@router.post("/{order_id}/delivered", response_model=Order, dependencies=[Depends(require_admin)])
async def mark_order_delivered(order_id: str, store: OrderStore = Depends(get_order_store)):
    return await order_service.mark_delivered(store, order_id)
