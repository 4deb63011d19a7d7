from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderStatus, PaymentMethod, PaymentStatus


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    customer_id: int
    billing_address_id: int
    shipping_address_id: int
    items: List[OrderItemCreate] = Field(..., min_length=1)
    shipping_cost: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    discount_amount: Decimal = Field(Decimal("0.00"), ge=0, decimal_places=2)
    coupon_codes: List[str] = Field(default_factory=list)


class TransitionRequest(BaseModel):
    status: OrderStatus
    actor_id: Optional[int] = None
    note: Optional[str] = Field(None, max_length=512)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    method: PaymentMethod
    payment_reference: str = Field(..., min_length=1, max_length=255)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class RefundCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_reference: str = Field(..., min_length=1, max_length=255)
    method: Optional[PaymentMethod] = None


class GatewayConfirmation(BaseModel):
    status: PaymentStatus


class RestockRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_id: int
    status: OrderStatus
    subtotal: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    items: List[OrderItemOut]


class StatusHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    previous_status: Optional[OrderStatus]
    new_status: OrderStatus
    changed_by_user_id: Optional[int]
    changed_at: datetime
    note: Optional[str]


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    payment_reference: str
    method: PaymentMethod
    amount: Decimal
    currency: str
    status: PaymentStatus
    paid_at: Optional[datetime]


class InventoryOut(BaseModel):
    product_id: int
    quantity: int
    reserved: int
    available: int
