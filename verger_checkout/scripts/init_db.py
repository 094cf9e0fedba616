import argparse, asyncio, json
from decimal import Decimal
from typing import List

from app.db import close_pool, ensure_schema, get_pool
from app.logging_config import setup_logging


def load_variants(path: str) -> List[dict]:
    """JSON list of {productId, variantId?, name, unit?, price, currency?}."""
    with open(path, 'r', encoding='utf-8') as f:
        rows = json.load(f)
    out = []
    for r in rows:
        if not r.get('productId') or r.get('price') is None:
            continue
        out.append({
            'product_id': str(r['productId']),
            'variant_id': str(r.get('variantId') or ''),
            'name': r.get('name') or str(r['productId']),
            'unit': r.get('unit') or '',
            'price': Decimal(f"{float(r['price']):.2f}"),
            'currency': (r.get('currency') or 'EUR').upper(),
        })
    return out


async def seed_catalog(variants: List[dict]) -> int:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.executemany(
            """
            INSERT INTO product_variants (product_id, variant_id, name, unit, price, currency)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (product_id, variant_id)
            DO UPDATE SET name = EXCLUDED.name, unit = EXCLUDED.unit,
                          price = EXCLUDED.price, currency = EXCLUDED.currency, active = TRUE
            """,
            [(v['product_id'], v['variant_id'], v['name'], v['unit'], v['price'], v['currency']) for v in variants],
        )
    return len(variants)


async def main(catalog_path: str = None):
    setup_logging()
    try:
        await ensure_schema()
        print("Schema ready")
        if catalog_path:
            n = await seed_catalog(load_variants(catalog_path))
            print(f"Seeded {n} product variants")
    finally:
        await close_pool()


if __name__ == "__main__":
    ap = argparse.ArgumentParser()
    ap.add_argument('--catalog', help='Optional JSON file of product variants to upsert')
    args = ap.parse_args()
    asyncio.run(main(args.catalog))
