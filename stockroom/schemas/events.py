"""Realtime event envelope delivered to subscribers."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from stockroom.core.clock import utc_now


class EventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Collection(str, Enum):
    PRODUCTS = "products"
    STOCK_MOVEMENTS = "stock_movements"
    ORDERS = "orders"
    INVENTORY_ALERTS = "inventory_alerts"
    CART_RESERVATIONS = "cart_reservations"


class RealtimeEvent(BaseModel):
    event: EventType
    collection: str
    document: Dict[str, Any]
    timestamp: datetime = Field(default_factory=utc_now)
    subscription_id: Optional[str] = None


class AdminNotification(BaseModel):
    type: str
    title: str
    message: str
