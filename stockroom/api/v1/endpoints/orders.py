"""Order API endpoints: submission and lifecycle."""
from typing import Optional
from math import ceil

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from stockroom.api.deps import Orders
from stockroom.models.order import OrderStatus
from stockroom.schemas.order import (
    OrderCreate,
    OrderProcessingResult,
    OrderResponse,
    OrderDetailResponse,
    OrderListResponse,
    OrderStatusUpdate,
    AllowedTransitionsResponse,
)


router = APIRouter()

VALIDATION_CODES = {
    "MISSING_EMAIL",
    "NO_ITEMS",
    "INVALID_TOTAL",
    "MISSING_PRODUCT_ID",
    "INVALID_QUANTITY",
    "INVALID_PRICE",
}
STOCK_CODES = {"INSUFFICIENT_STOCK", "PRODUCT_NOT_FOUND"}


def _failure_status(result: OrderProcessingResult) -> int:
    codes = {error.code for error in result.errors}
    if codes & VALIDATION_CODES:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if codes <= STOCK_CODES:
        return status.HTTP_409_CONFLICT
    return status.HTTP_503_SERVICE_UNAVAILABLE


@router.post(
    "",
    response_model=OrderProcessingResult,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": OrderProcessingResult}, 422: {"model": OrderProcessingResult}, 503: {"model": OrderProcessingResult}},
)
async def place_order(data: OrderCreate, orders: Orders):
    """
    Place an order.

    Stock for every line is deducted or none is. The body has the same shape
    on failure, with one error per failing line.
    """
    result = await orders.process_order(data)
    if not result.success:
        return JSONResponse(status_code=_failure_status(result), content=result.model_dump(mode="json"))
    return result


@router.get("", response_model=OrderListResponse)
async def list_orders(
    orders: Orders,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    customer_email: Optional[str] = Query(None),
):
    """Get paginated list of orders."""
    items, total = await orders.list_orders(status=status, customer_email=customer_email, page=page, size=size)
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in items],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.get("/number/{order_number}", response_model=OrderDetailResponse)
async def get_order_by_number(order_number: str, orders: Orders):
    order = await orders.get_order_by_number(order_number)
    return OrderDetailResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: str, orders: Orders):
    order = await orders.get_order(order_id)
    return OrderDetailResponse.model_validate(order)


@router.get("/{order_id}/transitions", response_model=AllowedTransitionsResponse)
async def get_allowed_transitions(order_id: str, orders: Orders):
    order, allowed = await orders.get_allowed_transitions(order_id)
    return AllowedTransitionsResponse(order_id=str(order.id), current_status=order.status, allowed=allowed)


@router.patch("/{order_id}/status", response_model=OrderDetailResponse)
async def update_order_status(order_id: str, data: OrderStatusUpdate, orders: Orders):
    """
    Change order status.

    Cancelling or refunding puts every item back into stock.
    """
    order = await orders.update_order_status(
        order_id,
        data.status,
        notes=data.notes,
        changed_by=data.changed_by,
        tracking_number=data.tracking_number,
        carrier=data.carrier,
    )
    return OrderDetailResponse.model_validate(order)
