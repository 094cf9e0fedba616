"""Async Postgres connection pool using asyncpg."""
from __future__ import annotations

from typing import Optional

import asyncpg

from ..settings import settings

_pool: Optional[asyncpg.Pool] = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id                 TEXT PRIMARY KEY,
    items              JSONB NOT NULL,
    customer           JSONB NOT NULL,
    customer_email     TEXT NOT NULL,
    pickup_type        TEXT NOT NULL,
    pickup_location    JSONB,
    delivery_address   JSONB,
    delivery_time      TEXT,
    delivery_fee       NUMERIC(10, 2) NOT NULL DEFAULT 0,
    discount_code      TEXT,
    discount_amount    NUMERIC(10, 2) NOT NULL DEFAULT 0,
    amount             NUMERIC(10, 2) NOT NULL,
    currency           TEXT NOT NULL,
    payment_method     TEXT NOT NULL,
    remote_session_id  TEXT UNIQUE,
    transaction_id     TEXT,
    status             TEXT NOT NULL,
    delivered          BOOLEAN NOT NULL DEFAULT FALSE,
    notes              TEXT,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS orders_customer_email_idx ON orders (customer_email);
CREATE INDEX IF NOT EXISTS orders_created_at_idx ON orders (created_at DESC);

CREATE TABLE IF NOT EXISTS product_variants (
    product_id  TEXT NOT NULL,
    variant_id  TEXT NOT NULL DEFAULT '',
    name        TEXT NOT NULL,
    unit        TEXT NOT NULL DEFAULT '',
    price       NUMERIC(10, 2) NOT NULL,
    currency    TEXT NOT NULL DEFAULT 'EUR',
    active      BOOLEAN NOT NULL DEFAULT TRUE,
    PRIMARY KEY (product_id, variant_id)
);
"""


async def get_pool() -> asyncpg.Pool:
    """Return (and lazily create) the asyncpg connection pool."""
    global _pool
    if _pool is None:
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set. Postgres is required.")
        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.database_pool_min,
            max_size=settings.database_pool_max,
        )
    return _pool


async def ensure_schema() -> None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)


async def close_pool() -> None:
    """Shut down the connection pool (call on app shutdown)."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
