"""Pydantic schemas for order submission and lifecycle."""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field

from stockroom.models.order import OrderStatus
from stockroom.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== SUBMISSION ====================
# Field constraints are checked by the order service so that every
# problem is reported at once with its error code.

class OrderItemCreate(BaseCreateSchema):
    product_id: str = ""
    product_name: str = ""
    product_sku: Optional[str] = None
    quantity: int = 0
    unit_price: Decimal = Decimal("0")
    reservation_id: Optional[str] = None


class OrderCreate(BaseCreateSchema):
    customer_email: str = ""
    # Cart placing the order; only its own reservations may be consumed
    cart_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None

    items: List[OrderItemCreate] = []

    subtotal: Optional[Decimal] = None
    tax_amount: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    currency: str = "USD"
    payment_method: Optional[str] = None

    shipping_address: dict = {}
    billing_address: Optional[dict] = None
    notes: Optional[str] = None


class OrderProcessingError(BaseModel):
    code: str
    message: str
    item_index: Optional[int] = None
    product_id: Optional[str] = None


class InventoryUpdate(BaseModel):
    product_id: str
    stock_change: int
    previous_stock: int
    new_stock: int


class OrderProcessingResult(BaseModel):
    """Outcome of an order submission. Same shape for success and failure."""
    success: bool
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    errors: List[OrderProcessingError] = []
    inventory_updates: List[InventoryUpdate] = []
    warnings: List[str] = []


# ==================== LIFECYCLE ====================

class OrderStatusUpdate(BaseCreateSchema):
    status: OrderStatus
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class AllowedTransitionsResponse(BaseModel):
    order_id: str
    current_status: str
    allowed: List[str]


# ==================== RESPONSES ====================

class OrderItemResponse(BaseResponseSchema):
    id: UUID
    line_number: int
    product_id: str
    product_name: str
    product_sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    reservation_id: Optional[str] = None
    stock_before_order: int
    stock_after_order: int


class StatusHistoryResponse(BaseResponseSchema):
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    id: UUID
    order_number: str
    customer_id: Optional[str] = None
    customer_email: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str
    payment_status: str
    fulfillment_status: str
    payment_method: Optional[str] = None
    subtotal: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    shipping_address: dict
    billing_address: Optional[dict] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []


class OrderDetailResponse(OrderResponse):
    status_history: List[StatusHistoryResponse] = []


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int
