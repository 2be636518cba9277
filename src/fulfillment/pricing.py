"""Price snapshots taken when an order is created.

There is no price history: the unit price copied into an order line is
whatever the catalog says at that moment.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.errors import NotFound
from fulfillment.models import ProductItem

CENT = Decimal("0.01")


async def snapshot_prices(
    session: AsyncSession,
    product_item_ids: Iterable[int]
) -> dict[int, Decimal]:
    ids = sorted(set(product_item_ids))
    result = await session.execute(
        select(ProductItem.id, ProductItem.price).where(ProductItem.id.in_(ids))
    )
    prices = {row.id: Decimal(str(row.price)) for row in result}
    missing = [i for i in ids if i not in prices]
    if missing:
        raise NotFound(f"Product items not found: {', '.join(map(str, missing))}")
    return prices


def order_total(lines: Iterable[tuple[int, Decimal]]) -> Decimal:
    """Sum of quantity x unit price, rounded to cents."""
    total = sum((Decimal(quantity) * price for quantity, price in lines), Decimal("0"))
    return total.quantize(CENT, rounding=ROUND_HALF_UP)
