from typing import Annotated

from fastapi import Depends, Request

from stockroom.factory import Services
from stockroom.services.order_processing_service import OrderProcessingService
from stockroom.services.stock_ledger_service import StockLedgerService
from stockroom.services.stock_reservation_service import StockReservationService


def get_services(request: Request) -> Services:
    """Services built at startup by the application lifespan."""
    return request.app.state.services


def get_ledger(request: Request) -> StockLedgerService:
    return get_services(request).ledger


def get_reservations(request: Request) -> StockReservationService:
    return get_services(request).reservations


def get_orders(request: Request) -> OrderProcessingService:
    return get_services(request).orders


# Type aliases for cleaner dependency injection
Ledger = Annotated[StockLedgerService, Depends(get_ledger)]
Reservations = Annotated[StockReservationService, Depends(get_reservations)]
Orders = Annotated[OrderProcessingService, Depends(get_orders)]
