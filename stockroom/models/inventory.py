"""Inventory models for per-product stock tracking."""
from enum import Enum
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, Index
from sqlalchemy import CheckConstraint
import uuid

from stockroom.database import Base
from stockroom.db_types import UUIDType


class StockStatus(str, Enum):
    """Derived stock status."""
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


class StockMovementType(str, Enum):
    """Stock movement type enum."""
    SALE = "sale"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RETURN = "return"
    DAMAGE = "damage"
    TRANSFER = "transfer"


class ReferenceType(str, Enum):
    """What caused a movement."""
    ORDER = "order"
    PURCHASE = "purchase"
    MANUAL = "manual"
    ROLLBACK = "rollback"


class AlertType(str, Enum):
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"
    OVERSTOCK = "overstock"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class StockLevel(Base):
    """Current stock for one product. Mutated only through the stock ledger."""

    __tablename__ = "stock_levels"
    __table_args__ = (
        CheckConstraint("available_units >= 0", name="ck_stock_level_available_non_negative"),
        CheckConstraint("reserved_units >= 0", name="ck_stock_level_reserved_non_negative"),
        Index("ix_stock_level_status", "stock_status"),
    )

    product_id = Column(String(64), primary_key=True)
    product_name = Column(String(255))

    # Quantities
    available_units = Column(Integer, nullable=False, default=0)
    reserved_units = Column(Integer, nullable=False, default=0)  # Sum of active reservations

    stock_status = Column(String(20), nullable=False, default=StockStatus.OUT_OF_STOCK.value)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    last_restocked_at = Column(DateTime(timezone=True))

    # Compare-and-swap guard for concurrent writers
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def available_to_sell(self) -> int:
        return max(0, (self.available_units or 0) - (self.reserved_units or 0))

    def __repr__(self):
        return f"<StockLevel {self.product_id}: {self.available_units}>"


class StockMovement(Base):
    """Stock movement history/ledger. Append-only."""

    __tablename__ = "stock_movements"
    __table_args__ = (
        Index("ix_stock_movement_product_created", "product_id", "created_at"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id = Column(String(64), nullable=False, index=True)
    movement_type = Column(
        String(20), nullable=False, index=True,
        comment="sale, restock, adjustment, return, damage, transfer"
    )

    # Quantity
    quantity_change = Column(Integer, nullable=False)  # Positive for in, negative for out
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)

    # Related documents
    reference_type = Column(String(20))  # order, purchase, manual, rollback
    reference_id = Column(String(64), index=True)

    reason = Column(Text)
    created_by = Column(String(100))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<StockMovement {self.product_id} {self.quantity_change:+d}>"


class InventoryAlert(Base):
    """Threshold alert raised by the stock ledger."""

    __tablename__ = "inventory_alerts"
    __table_args__ = (
        Index("ix_inventory_alert_product_active", "product_id", "is_active"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    product_id = Column(String(64), nullable=False)
    alert_type = Column(String(20), nullable=False)  # low_stock, out_of_stock, overstock
    alert_level = Column(String(20), nullable=False)  # warning, critical, info

    current_stock = Column(Integer, nullable=False)
    threshold_value = Column(Integer, nullable=False)
    message = Column(Text, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    auto_resolve = Column(Boolean, default=True, nullable=False)
    notification_sent = Column(Boolean, default=False, nullable=False)

    acknowledged_by = Column(String(100))
    acknowledged_at = Column(DateTime(timezone=True))
    resolution_notes = Column(Text)
    resolved_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<InventoryAlert {self.product_id} {self.alert_type}/{self.alert_level}>"
