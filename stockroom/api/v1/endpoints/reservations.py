"""Cart reservation API endpoints for the storefront."""
from typing import List

from fastapi import APIRouter, status

from stockroom.api.deps import Reservations
from stockroom.schemas.reservation import (
    ReservationCreate,
    ReservationResultResponse,
    ReservationResponse,
    ReservationExtend,
    ReleaseResponse,
)


router = APIRouter()


@router.post("", response_model=ReservationResultResponse)
async def create_reservation(data: ReservationCreate, reservations: Reservations):
    """
    Hold stock while the item sits in a cart.

    An unavailable quantity is not an error: the response has
    `success: false` and the quantity still available to sell.
    """
    result = await reservations.reserve(
        data.product_id,
        data.quantity,
        data.cart_id,
        data.session_id,
        user_id=data.user_id,
        product_price=data.product_price,
    )
    return ReservationResultResponse(
        success=result.success,
        reservation_id=result.reservation_id,
        available_to_sell=result.available_to_sell,
        expires_at=result.expires_at,
        message=result.message,
    )


@router.get("/cart/{cart_id}", response_model=List[ReservationResponse])
async def list_cart_reservations(cart_id: str, reservations: Reservations):
    items = await reservations.list_cart_reservations(cart_id)
    return [ReservationResponse.model_validate(r) for r in items]


@router.delete("/cart/{cart_id}", response_model=ReleaseResponse)
async def release_cart(cart_id: str, reservations: Reservations):
    """Release every active hold for a cart (cart cleared or abandoned)."""
    released = await reservations.release_cart(cart_id)
    return ReleaseResponse(released=released)


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(reservation_id: str, reservations: Reservations):
    reservation = await reservations.get_reservation(reservation_id)
    return ReservationResponse.model_validate(reservation)


@router.delete("/{reservation_id}", response_model=ReleaseResponse)
async def release_reservation(reservation_id: str, reservations: Reservations):
    """Release a hold. Releasing twice is harmless."""
    released = await reservations.release(reservation_id)
    return ReleaseResponse(released=1 if released else 0)


@router.post("/{reservation_id}/extend", response_model=ReservationResponse, status_code=status.HTTP_200_OK)
async def extend_reservation(reservation_id: str, data: ReservationExtend, reservations: Reservations):
    reservation = await reservations.extend_reservation(reservation_id, data.minutes)
    return ReservationResponse.model_validate(reservation)
