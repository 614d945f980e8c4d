"""Cart reservation model."""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Integer, DateTime, Numeric, Index
from sqlalchemy import CheckConstraint
import uuid

from stockroom.database import Base
from stockroom.db_types import UUIDType


class CartReservation(Base):
    """Time-boxed soft hold on stock for an in-progress cart."""

    __tablename__ = "cart_reservations"
    __table_args__ = (
        CheckConstraint("quantity_reserved > 0", name="ck_cart_reservation_quantity_positive"),
        Index("ix_cart_reservation_sweep", "is_active", "expires_at"),
        Index("ix_cart_reservation_product_active", "product_id", "is_active"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)

    cart_id = Column(String(64), nullable=False, index=True)
    session_id = Column(String(128), nullable=False)
    user_id = Column(String(64))

    product_id = Column(String(64), nullable=False)
    quantity_reserved = Column(Integer, nullable=False)
    product_price = Column(Numeric(12, 2), default=0)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    converted_to_order = Column(Boolean, default=False, nullable=False)
    order_id = Column(String(64))

    released_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<CartReservation {self.id} {self.product_id} x{self.quantity_reserved}>"
