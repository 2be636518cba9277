"""Shared fixtures: a file-backed SQLite database per test and a fake gateway."""
import json
import os
import uuid
from types import SimpleNamespace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("PAYMENT_GATEWAY", "fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from fulfillment.config import settings
from fulfillment.db import Base
from fulfillment.gateway import FakeGateway, reset_gateway, set_gateway
from fulfillment.models import (
    Favorite, Order, OrderLine, OrderStatus, ProductItem, ShoppingCart, ShoppingCartItem,
)

WEBHOOK_SECRET = settings.STRIPE_WEBHOOK_SECRET


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")

    # take the write lock at BEGIN so concurrent transactions queue up
    # instead of failing, the way row locks behave on PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


class Seeder:
    """Writes fixture rows and reads state back, each call in its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def item(self, sku: str, price: str, stock: int) -> int:
        async with self.session_factory() as session:
            item = ProductItem(sku=sku, price=Decimal(price), stock=stock)
            session.add(item)
            await session.commit()
            return item.id

    async def cart(self, user_id: uuid.UUID, lines: dict[int, int]) -> int:
        async with self.session_factory() as session:
            cart = ShoppingCart(user_id=user_id)
            session.add(cart)
            await session.flush()
            for product_item_id, quantity in lines.items():
                session.add(ShoppingCartItem(cart_id=cart.id, product_item_id=product_item_id, quantity=quantity))
            await session.commit()
            return cart.id

    async def favorite(self, user_id: uuid.UUID, product_item_id: int, minutes_ago: int = 0) -> None:
        async with self.session_factory() as session:
            session.add(Favorite(
                user_id=user_id,
                product_item_id=product_item_id,
                created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
            ))
            await session.commit()

    async def past_order(self, user_id: uuid.UUID, product_item_id: int, status: OrderStatus) -> uuid.UUID:
        async with self.session_factory() as session:
            order = Order(
                user_id=user_id,
                shipping_address="1 Old Street",
                status=status.value,
                total=Decimal("1.00"),
                lines=[OrderLine(product_item_id=product_item_id, quantity=1, unit_price=Decimal("1.00"))],
            )
            session.add(order)
            await session.commit()
            return order.id

    async def stock(self, product_item_id: int) -> int:
        async with self.session_factory() as session:
            return (await session.execute(
                select(ProductItem.stock).where(ProductItem.id == product_item_id)
            )).scalar_one()

    async def cart_quantities(self, user_id: uuid.UUID) -> dict[int, int]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(ShoppingCartItem.product_item_id, ShoppingCartItem.quantity)
                .join(ShoppingCart, ShoppingCart.id == ShoppingCartItem.cart_id)
                .where(ShoppingCart.user_id == user_id)
            )
            return {row.product_item_id: row.quantity for row in rows}

    async def count(self, model) -> int:
        async with self.session_factory() as session:
            return (await session.execute(select(func.count()).select_from(model))).scalar_one()

    async def get(self, model, key):
        async with self.session_factory() as session:
            return await session.get(model, key)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


def stripe_event(payment_id, event_type="payment_intent.succeeded", intent_id="pi_3Nabc", created=1700000000) -> bytes:
    return json.dumps({
        "id": "evt_1Nxyz",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"paymentId": str(payment_id)}}},
    }).encode()


def sign(payload: bytes) -> str:
    return FakeGateway.sign(payload, WEBHOOK_SECRET)


@pytest.fixture
def webhook():
    return SimpleNamespace(event=stripe_event, sign=sign, secret=WEBHOOK_SECRET)
