# app/db/catalog.py
"""Read-only view of product variant prices (the authoritative price list)."""
from __future__ import annotations

from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import asyncpg

from . import get_pool

VariantKey = Tuple[str, Optional[str]]


class Catalog:
    def __init__(self, pool_factory: Callable[[], Awaitable[asyncpg.Pool]] = get_pool):
        self._pool_factory = pool_factory

    async def get_variant_prices(self, product_ids: List[str]) -> Dict[VariantKey, Dict]:
        """Map (productId, variantId) to {name, unit, price, currency} for active variants."""
        if not product_ids:
            return {}
        pool = await self._pool_factory()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT product_id, variant_id, name, unit, price, currency
                FROM product_variants
                WHERE product_id = ANY($1::text[]) AND active
                """,
                list(set(product_ids)),
            )
        out: Dict[VariantKey, Dict] = {}
        for r in rows:
            # variant_id '' is the product's only variant
            key = (r["product_id"], r["variant_id"] or None)
            out[key] = {
                "name": r["name"],
                "unit": r["unit"],
                "price": float(r["price"]),
                "currency": r["currency"],
            }
        return out
