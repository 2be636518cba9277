"""Low-stock notifications for users who favorited an item but never bought it.

A ``stock_alerts`` row is the dedup fact: once it exists for a (user, item)
pair that user is never notified about that item again. The row and the
notification job are written in one transaction.
"""
import asyncio
import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.config import settings
from fulfillment.errors import AlreadyNotified, NoActionNeeded, NoEligibleUser, NotFound, StockAlertSkipped
from fulfillment.messaging import JOB_STOCK_ALERT, JobQueue
from fulfillment.models import Favorite, Order, OrderLine, ProductItem, StockAlert, utcnow

logger = logging.getLogger("fulfillment.stock_alerts")


async def find_eligible_favorite(session: AsyncSession, product_item_id: int) -> Favorite | None:
    """
    Most recent favorite of the item by a user with no order containing it.
    Any order counts, whatever its status.
    """
    purchased = (
        select(OrderLine.id)
        .join(Order, Order.id == OrderLine.order_id)
        .where(
            Order.user_id == Favorite.user_id,
            OrderLine.product_item_id == product_item_id,
        )
        .exists()
    )
    result = await session.execute(
        select(Favorite)
        .where(Favorite.product_item_id == product_item_id, ~purchased)
        .order_by(Favorite.created_at.desc(), Favorite.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def check_stock_and_notify(
    session: AsyncSession,
    product_item_id: int,
    queue: JobQueue | None = None,
    threshold: int | None = None,
) -> StockAlert:
    if threshold is None:
        threshold = settings.LOW_STOCK_THRESHOLD
    queue = queue or JobQueue(session)

    try:
        item = await session.get(ProductItem, product_item_id)
        if item is None:
            raise NotFound(f"ProductItem {product_item_id} not found")

        if item.stock > threshold:
            raise NoActionNeeded("Sufficient stock available, no notification required")

        favorite = await find_eligible_favorite(session, product_item_id)
        if favorite is None:
            raise NoEligibleUser("No eligible user found (no favorites or already purchased)")

        existing = (await session.execute(
            select(StockAlert.id).where(
                StockAlert.user_id == favorite.user_id,
                StockAlert.product_item_id == product_item_id,
            )
        )).first()
        if existing is not None:
            raise AlreadyNotified("Notification already sent to this user for this product")

        await queue.enqueue(JOB_STOCK_ALERT, {
            "user_id": str(favorite.user_id),
            "product_item_id": product_item_id,
        })
        alert = StockAlert(
            user_id=favorite.user_id,
            product_item_id=product_item_id,
            notified_at=utcnow(),
        )
        session.add(alert)
        await session.commit()
    except IntegrityError:
        # a concurrent check inserted the same pair first; our job is rolled back with it
        await session.rollback()
        raise AlreadyNotified("Notification already sent to this user for this product")
    except Exception:
        await session.rollback()
        raise

    logger.info("Low stock alert queued for user %s on item %s (stock %d)",
                alert.user_id, product_item_id, item.stock)
    return alert


async def fan_out_stock_checks(
    product_item_ids: Iterable[int],
    session_factory: async_sessionmaker[AsyncSession],
) -> dict[int, str]:
    """
    Runs one isolated check per distinct item and waits for all of them.
    Never raises: skips are logged at INFO, anything else at ERROR.
    """
    ids = sorted(set(product_item_ids))

    async def attempt(product_item_id: int) -> None:
        async with session_factory() as session:
            await check_stock_and_notify(session, product_item_id)

    results = await asyncio.gather(*(attempt(i) for i in ids), return_exceptions=True)

    outcomes = {}
    for product_item_id, result in zip(ids, results):
        if result is None:
            outcomes[product_item_id] = "notified"
        elif isinstance(result, StockAlertSkipped):
            logger.info("Stock check for item %s skipped: %s", product_item_id, result)
            outcomes[product_item_id] = type(result).__name__
        elif isinstance(result, NotFound):
            logger.warning("Stock check for item %s: %s", product_item_id, result)
            outcomes[product_item_id] = type(result).__name__
        else:
            logger.error("Stock check for item %s failed: %r", product_item_id, result)
            outcomes[product_item_id] = "error"
    return outcomes
