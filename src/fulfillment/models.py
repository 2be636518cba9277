import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON, TIMESTAMP, CheckConstraint, Column, ForeignKey, Integer, Numeric,
    String, UniqueConstraint, Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from fulfillment.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class ProductItem(Base):
    """Sellable catalog item. Only ``stock`` is mutated by this service."""
    __tablename__ = "product_items"
    __table_args__ = (CheckConstraint("stock >= 0", name="stock_non_negative"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku = Column(String(64), nullable=False, unique=True)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=utcnow)


class ShoppingCart(Base):
    __tablename__ = "shopping_carts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, nullable=False, unique=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

    items = relationship("ShoppingCartItem", back_populates="cart", lazy="selectin")


class ShoppingCartItem(Base):
    __tablename__ = "shopping_cart_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="cart_quantity_positive"),
        UniqueConstraint("cart_id", "product_item_id", name="uq_cart_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(Integer, ForeignKey("shopping_carts.id", ondelete="CASCADE"), nullable=False)
    product_item_id = Column(Integer, ForeignKey("product_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)

    cart = relationship("ShoppingCart", back_populates="items")
    product_item = relationship("ProductItem", lazy="selectin")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    shipping_address = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    order_date = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)
    total = Column(Numeric(12, 2), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        lazy="selectin",
        order_by="OrderLine.id",
    )


class OrderLine(Base):
    __tablename__ = "order_lines"
    __table_args__ = (CheckConstraint("quantity > 0", name="line_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_item_id = Column(Integer, ForeignKey("product_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="lines")


class Payment(Base):
    __tablename__ = "payments"

    payment_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # one payment per order; the constraint backs the webhook idempotency check
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, unique=True)
    external_payment_id = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "product_item_id", name="uq_favorite"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, nullable=False)
    product_item_id = Column(Integer, ForeignKey("product_items.id"), nullable=False, index=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)


class StockAlert(Base):
    __tablename__ = "stock_alerts"
    __table_args__ = (UniqueConstraint("user_id", "product_item_id", name="uq_stock_alert"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, nullable=False)
    product_item_id = Column(Integer, ForeignKey("product_items.id"), nullable=False)
    notified_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)


class JobOutbox(Base):
    __tablename__ = "job_outbox"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    published_at = Column(TIMESTAMP(timezone=True), nullable=True)
