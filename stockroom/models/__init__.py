# Models module
from stockroom.models.inventory import (
    StockLevel,
    StockMovement,
    InventoryAlert,
    StockStatus,
    StockMovementType,
    ReferenceType,
    AlertType,
    AlertLevel,
)
from stockroom.models.reservation import CartReservation
from stockroom.models.order import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderStatus,
    PaymentStatus,
    FulfillmentStatus,
)

__all__ = [
    "StockLevel",
    "StockMovement",
    "InventoryAlert",
    "StockStatus",
    "StockMovementType",
    "ReferenceType",
    "AlertType",
    "AlertLevel",
    "CartReservation",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "OrderStatus",
    "PaymentStatus",
    "FulfillmentStatus",
]
