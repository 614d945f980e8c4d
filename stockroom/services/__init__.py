# Services module
from stockroom.services.event_broadcaster import EventBroadcaster
from stockroom.services.stock_ledger_service import StockLedgerService
from stockroom.services.stock_reservation_service import StockReservationService
from stockroom.services.order_processing_service import OrderProcessingService

__all__ = [
    "EventBroadcaster",
    "StockLedgerService",
    "StockReservationService",
    "OrderProcessingService",
]
