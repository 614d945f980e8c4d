from fastapi import APIRouter

from stockroom.api.v1.endpoints import (
    inventory,
    reservations,
    orders,
)


api_router = APIRouter(prefix="/api/v1")

api_router.include_router(inventory.router, prefix="/inventory", tags=["Inventory"])
api_router.include_router(reservations.router, prefix="/reservations", tags=["Reservations"])
api_router.include_router(orders.router, prefix="/orders", tags=["Orders"])
