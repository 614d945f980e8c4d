"""Pydantic schemas for cart reservations."""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from stockroom.schemas.base import BaseResponseSchema, BaseCreateSchema


class ReservationCreate(BaseCreateSchema):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    cart_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    product_price: Decimal = Decimal("0")


class ReservationResultResponse(BaseModel):
    success: bool
    reservation_id: Optional[str] = None
    available_to_sell: int
    expires_at: Optional[datetime] = None
    message: str = ""


class ReservationResponse(BaseResponseSchema):
    id: UUID
    cart_id: str
    session_id: str
    user_id: Optional[str] = None
    product_id: str
    quantity_reserved: int
    product_price: Optional[Decimal] = None
    expires_at: datetime
    is_active: bool
    converted_to_order: bool
    order_id: Optional[str] = None
    released_at: Optional[datetime] = None
    created_at: datetime


class ReservationExtend(BaseCreateSchema):
    minutes: int = Field(..., gt=0, le=24 * 60)


class ReleaseResponse(BaseModel):
    released: int
