# app/db/orders_store.py
"""
Order persistence on Postgres.

Every status change is a single conditional statement (`... WHERE status = $n
RETURNING`) so two confirmations racing on the same order cannot both win.
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import asyncpg

from ..schemas.orders import Order, OrderDraft, OrderStatus
from . import get_pool

# extra fields a status transition may set alongside the status
_EXTRA_COLUMNS = {"transactionId": "transaction_id", "delivered": "delivered"}


def _now():
    return datetime.now(timezone.utc)


def _oid():
    return uuid.uuid4().hex[:24]


def _money(v: float) -> Decimal:
    return Decimal(f"{float(v):.2f}")


def _json(v):
    return json.loads(v) if isinstance(v, str) else v


def _row_to_order(row) -> Order:
    """Convert a flat Postgres order row into the nested Order model."""
    return Order(
        id=row["id"],
        items=_json(row["items"]),
        customer=_json(row["customer"]),
        pickupType=row["pickup_type"],
        pickupLocation=_json(row["pickup_location"]),
        deliveryAddress=_json(row["delivery_address"]),
        deliveryTime=row["delivery_time"],
        deliveryFee=float(row["delivery_fee"]),
        discountCode=row["discount_code"],
        discountAmount=float(row["discount_amount"]),
        amount=float(row["amount"]),
        currency=row["currency"],
        paymentMethod=row["payment_method"],
        remoteSessionId=row["remote_session_id"],
        transactionId=row["transaction_id"],
        status=row["status"],
        delivered=row["delivered"],
        notes=row["notes"],
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


def _insert_args(
    draft: OrderDraft,
    *,
    status: OrderStatus,
    remote_session_id: Optional[str],
    transaction_id: Optional[str],
) -> List[Any]:
    now = _now()
    return [
        _oid(),
        json.dumps([li.model_dump() for li in draft.items]),
        json.dumps(draft.customer.model_dump()),
        draft.customer.email,
        draft.pickupType,
        json.dumps(draft.pickupLocation.model_dump()) if draft.pickupLocation else None,
        json.dumps(draft.deliveryAddress.model_dump()) if draft.deliveryAddress else None,
        draft.deliveryTime,
        _money(draft.deliveryFee),
        draft.discountCode,
        _money(draft.discountAmount),
        _money(draft.amount),
        draft.currency,
        draft.paymentMethod.value,
        remote_session_id,
        transaction_id,
        status.value,
        draft.delivered_on_creation,
        draft.notes,
        now,
    ]


_INSERT = """
    INSERT INTO orders (id, items, customer, customer_email, pickup_type,
                        pickup_location, delivery_address, delivery_time,
                        delivery_fee, discount_code, discount_amount, amount,
                        currency, payment_method, remote_session_id,
                        transaction_id, status, delivered, notes,
                        created_at, updated_at)
    VALUES ($1, $2::jsonb, $3::jsonb, $4, $5, $6::jsonb, $7::jsonb, $8,
            $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19, $20, $20)
"""


class OrderStore:
    def __init__(self, pool_factory: Callable[[], Awaitable[asyncpg.Pool]] = get_pool):
        self._pool_factory = pool_factory

    async def create(
        self,
        draft: OrderDraft,
        *,
        status: OrderStatus = OrderStatus.pending,
        remote_session_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Order:
        pool = await self._pool_factory()
        args = _insert_args(
            draft, status=status, remote_session_id=remote_session_id, transaction_id=transaction_id
        )
        async with pool.acquire() as conn:
            row = await conn.fetchrow(_INSERT + " RETURNING *", *args)
        return _row_to_order(row)

    async def create_paid_if_absent(
        self,
        draft: OrderDraft,
        remote_session_id: str,
        transaction_id: Optional[str],
    ) -> Tuple[Order, bool]:
        """
        Insert a paid order for this remote session unless one already exists.
        Returns (order, created); `created` is False for the losing racer.
        """
        pool = await self._pool_factory()
        args = _insert_args(
            draft,
            status=OrderStatus.paid,
            remote_session_id=remote_session_id,
            transaction_id=transaction_id,
        )
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                _INSERT + " ON CONFLICT (remote_session_id) DO NOTHING RETURNING *", *args
            )
            if row is not None:
                return _row_to_order(row), True
            row = await conn.fetchrow(
                "SELECT * FROM orders WHERE remote_session_id = $1", remote_session_id
            )
        return _row_to_order(row), False

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1", order_id)
        return _row_to_order(row) if row else None

    async def find_by_remote_session_id(self, remote_session_id: str) -> Optional[Order]:
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM orders WHERE remote_session_id = $1", remote_session_id
            )
        return _row_to_order(row) if row else None

    async def update_status_if_remote_session_matches(
        self,
        remote_session_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move the order bearing this remote session id; fires at most once."""
        sets = ["status = $3", "updated_at = $4"]
        args: List[Any] = [remote_session_id, from_status.value, to_status.value, _now()]
        for key, value in (extra or {}).items():
            column = _EXTRA_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"unsupported field: {key}")
            args.append(value)
            sets.append(f"{column} = ${len(args)}")

        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE orders SET {", ".join(sets)}
                WHERE remote_session_id = $1 AND status = $2
                RETURNING id
                """,
                *args,
            )
        return row is not None

    async def transition(
        self, order_id: str, from_statuses: Iterable[OrderStatus], to_status: OrderStatus
    ) -> Optional[Order]:
        """Conditional status change by order id; None when the order was not in `from_statuses`."""
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders SET status = $3, updated_at = $4
                WHERE id = $1 AND status = ANY($2::text[])
                RETURNING *
                """,
                order_id,
                [s.value for s in from_statuses],
                to_status.value,
                _now(),
            )
        return _row_to_order(row) if row else None

    async def mark_delivered(self, order_id: str) -> Optional[Order]:
        # a delivery order is only handed over once it is paid
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE orders SET delivered = TRUE, updated_at = $2
                WHERE id = $1 AND delivered = FALSE
                  AND (pickup_type = 'store' OR status = 'paid')
                RETURNING *
                """,
                order_id,
                _now(),
            )
        return _row_to_order(row) if row else None

    async def list_orders(
        self,
        *,
        status: Optional[OrderStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        where, args = [], []
        if status is not None:
            args.append(status.value)
            where.append(f"status = ${len(args)}")
        if date_from is not None:
            args.append(date_from)
            where.append(f"created_at >= ${len(args)}")
        if date_to is not None:
            args.append(date_to)
            where.append(f"created_at <= ${len(args)}")
        if search:
            args.append(f"%{search.strip().lower()}%")
            where.append(
                f"(customer_email ILIKE ${len(args)} OR customer->>'fullName' ILIKE ${len(args)})"
            )
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {clause}", *args)
            rows = await conn.fetch(
                f"""
                SELECT * FROM orders {clause}
                ORDER BY created_at DESC
                LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
                """,
                *args,
                limit,
                (page - 1) * limit,
            )
        return [_row_to_order(r) for r in rows], int(total or 0)

    async def list_for_customer(self, email: str) -> List[Order]:
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM orders WHERE customer_email = $1 ORDER BY created_at DESC",
                email.strip().lower(),
            )
        return [_row_to_order(r) for r in rows]
