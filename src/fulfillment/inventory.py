"""Stock ledger operations over ``product_items.stock``.

Reservations are a single conditional UPDATE so the check and the decrement
happen in one statement; the caller's transaction decides whether they stick.
"""
import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models import ProductItem, ShoppingCartItem
from fulfillment.schemas import StockShortfall

logger = logging.getLogger("fulfillment.inventory")


def find_shortfalls(items: Iterable[ShoppingCartItem]) -> list[StockShortfall]:
    """Every cart line asking for more than the loaded stock."""
    shortfalls = []
    for item in items:
        product = item.product_item
        if product.stock < item.quantity:
            shortfalls.append(StockShortfall(
                product_item_id=product.id,
                sku=product.sku,
                requested=item.quantity,
                available=product.stock,
            ))
    return shortfalls


async def reserve_stock(
    session: AsyncSession,
    product_item_id: int,
    quantity: int
) -> bool:
    result = await session.execute(
        update(ProductItem)
        .where(ProductItem.id == product_item_id, ProductItem.stock >= quantity)
        .values(stock=ProductItem.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount == 1
    if not reserved:
        logger.info("Reservation of %d x item %s lost to a concurrent order", quantity, product_item_id)
    return reserved


async def release_stock(
    session: AsyncSession,
    product_item_id: int,
    quantity: int
) -> None:
    await session.execute(
        update(ProductItem)
        .where(ProductItem.id == product_item_id)
        .values(stock=ProductItem.stock + quantity)
        .execution_options(synchronize_session=False)
    )


async def current_stock(session: AsyncSession, product_item_ids: list[int]) -> dict[int, tuple[str, int]]:
    result = await session.execute(
        select(ProductItem.id, ProductItem.sku, ProductItem.stock)
        .where(ProductItem.id.in_(product_item_ids))
    )
    return {row.id: (row.sku, row.stock) for row in result}
