from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from uuid import UUID
from datetime import datetime
from decimal import Decimal

from fulfillment.models import OrderStatus, PaymentStatus

class OrderCreateRequest(BaseModel):
    shipping_address: str = Field(..., description="Delivery address, at most 100 characters")

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class OrderLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_item_id: int
    quantity: int
    unit_price: Decimal
    created_at: Optional[datetime]

class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    shipping_address: str
    status: OrderStatus
    order_date: datetime
    total: Decimal
    lines: List[OrderLineRead]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

class PaymentCreateRequest(BaseModel):
    order_id: UUID

class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: UUID
    order_id: UUID
    external_payment_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

class StockShortfall(BaseModel):
    product_item_id: int
    sku: str
    requested: int
    available: int

class StockAlertJob(BaseModel):
    user_id: UUID
    product_item_id: int
