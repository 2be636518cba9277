import logging
from datetime import datetime
from typing import List
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment import inventory, pricing
from fulfillment.config import settings
from fulfillment.errors import EmptyCart, Forbidden, InsufficientStock, InvalidInput, NotFound
from fulfillment.models import Order, OrderLine, OrderStatus, ShoppingCart, ShoppingCartItem, utcnow

logger = logging.getLogger("fulfillment.orders")

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.APPROVED, OrderStatus.REJECTED, OrderStatus.CANCELLED},
    OrderStatus.APPROVED: {OrderStatus.CANCELLED},
}

RELEASING_STATUSES = {OrderStatus.REJECTED, OrderStatus.CANCELLED}


def validate_shipping_address(shipping_address: str | None) -> str:
    if not shipping_address or not shipping_address.strip():
        raise InvalidInput("Shipping address is required")
    if len(shipping_address) > settings.SHIPPING_ADDRESS_MAX_LENGTH:
        raise InvalidInput(
            f"Shipping address cannot exceed {settings.SHIPPING_ADDRESS_MAX_LENGTH} characters"
        )
    return shipping_address


def cart_for_checkout(user_id: UUID):
    # the cart row lock makes a second submit of the same cart wait, then see it emptied
    return select(ShoppingCart).where(ShoppingCart.user_id == user_id).with_for_update()


async def create_order_from_cart(
    user_id: UUID,
    shipping_address: str,
    session: AsyncSession
) -> Order:
    """
    Turns the user's cart into a PENDING order in one transaction: stock is
    checked and decremented, prices are snapshotted and the cart is emptied.
    Any failure rolls everything back.
    """
    validate_shipping_address(shipping_address)

    try:
        cart = (await session.execute(cart_for_checkout(user_id))).scalar_one_or_none()
        if cart is None or not cart.items:
            raise EmptyCart("Cart is empty or not found")

        items = sorted(cart.items, key=lambda i: i.product_item_id)

        shortfalls = inventory.find_shortfalls(items)
        if shortfalls:
            raise InsufficientStock([s.model_dump() for s in shortfalls])

        prices = await pricing.snapshot_prices(session, (i.product_item_id for i in items))
        total = pricing.order_total((i.quantity, prices[i.product_item_id]) for i in items)

        now = utcnow()
        order = Order(
            user_id=user_id,
            shipping_address=shipping_address,
            status=OrderStatus.PENDING.value,
            order_date=now,
            total=total,
            lines=[
                OrderLine(
                    product_item_id=i.product_item_id,
                    quantity=i.quantity,
                    unit_price=prices[i.product_item_id],
                    created_at=now,
                )
                for i in items
            ],
        )
        session.add(order)
        await session.flush()

        # ascending item id so concurrent orders take row locks in the same order
        lost = []
        for item in items:
            if not await inventory.reserve_stock(session, item.product_item_id, item.quantity):
                lost.append(item)
        if lost:
            levels = await inventory.current_stock(session, [i.product_item_id for i in lost])
            raise InsufficientStock([
                {
                    "product_item_id": i.product_item_id,
                    "sku": levels[i.product_item_id][0],
                    "requested": i.quantity,
                    "available": levels[i.product_item_id][1],
                }
                for i in lost
            ])

        cleared = await session.execute(
            delete(ShoppingCartItem).where(ShoppingCartItem.cart_id == cart.id)
        )
        if cleared.rowcount != len(items):
            raise EmptyCart("Cart was checked out concurrently")
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s created for user %s, total %s", order.id, user_id, order.total)
    return order


async def get_order(
    order_id: UUID,
    session: AsyncSession
) -> Order | None:
    return await session.get(Order, order_id)


async def get_order_details(
    order_id: UUID,
    user_id: UUID,
    session: AsyncSession
) -> Order:
    """
    Returns the order if it belongs to ``user_id``.
    """
    order = await get_order(order_id, session)
    if order is None:
        raise NotFound(f"Order with id {order_id} not found")
    if order.user_id != user_id:
        raise Forbidden(f"Order {order_id} does not belong to user {user_id}")
    return order


async def get_orders_by_user(
    user_id: UUID,
    session: AsyncSession,
    status: OrderStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> List[Order]:
    """
    Returns the user's orders, newest first, optionally filtered by status and order date.
    """
    if start_date and end_date and start_date > end_date:
        raise InvalidInput("Start date cannot be after end date")

    stmt = select(Order).where(Order.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Order.status == status.value)
    if start_date is not None:
        stmt = stmt.where(Order.order_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(Order.order_date <= end_date)
    result = await session.execute(stmt.order_by(Order.order_date.desc()))
    return list(result.scalars().all())


async def update_order_status(
    order_id: UUID,
    new_status: OrderStatus,
    session: AsyncSession
) -> Order:
    """
    Administrative status change. Cancelling or rejecting an order puts its
    reserved units back in stock within the same transaction.
    """
    try:
        order = (await session.execute(
            select(Order).where(Order.id == order_id).with_for_update()
        )).scalar_one_or_none()
        if order is None:
            raise NotFound(f"Order with id {order_id} not found")

        current = OrderStatus(order.status)
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidInput(f"Cannot move order from {current.value} to {new_status.value}")

        if new_status in RELEASING_STATUSES:
            for line in order.lines:
                await inventory.release_stock(session, line.product_item_id, line.quantity)

        order.status = new_status.value
        order.updated_at = utcnow()
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Order %s moved from %s to %s", order_id, current.value, new_status.value)
    return order
