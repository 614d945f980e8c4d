"""Pydantic schemas for stock levels, movements and alerts."""
from datetime import datetime
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field

from stockroom.models.inventory import StockMovementType
from stockroom.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== STOCK LEVEL ====================

class TrackProductRequest(BaseCreateSchema):
    """Start tracking stock for a product."""
    product_id: str = Field(..., min_length=1, max_length=64)
    product_name: Optional[str] = None
    initial_units: int = Field(0, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class StockLevelResponse(BaseResponseSchema):
    product_id: str
    product_name: Optional[str] = None
    available_units: int
    reserved_units: int
    available_to_sell: int
    stock_status: str
    low_stock_threshold: int
    last_restocked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StockLevelListResponse(BaseModel):
    items: List[StockLevelResponse]
    total: int


class ThresholdUpdate(BaseCreateSchema):
    low_stock_threshold: int = Field(..., ge=0)


# ==================== ADJUSTMENTS ====================

class StockAdjustmentRequest(BaseCreateSchema):
    """Manual stock correction or restock from the admin console."""
    product_id: str = Field(..., min_length=1)
    quantity_change: int
    reason: str = Field(..., min_length=1, description="Why the stock is being changed")
    movement_type: StockMovementType = StockMovementType.ADJUSTMENT
    created_by: Optional[str] = None
    override: bool = Field(False, description="Clamp at zero instead of rejecting a deduction")


class StockChangeResponse(BaseModel):
    product_id: str
    previous_stock: int
    new_stock: int
    stock_change: int
    stock_status: str


class BulkAdjustmentRequest(BaseCreateSchema):
    updates: List[StockAdjustmentRequest] = Field(..., min_length=1)


class BulkAdjustmentError(BaseModel):
    index: int
    product_id: str
    message: str


class BulkAdjustmentResponse(BaseModel):
    success: int
    failed: int
    errors: List[BulkAdjustmentError] = []


class RecalculateResponse(BaseModel):
    products_checked: int
    products_updated: int


# ==================== MOVEMENTS ====================

class StockMovementResponse(BaseResponseSchema):
    id: UUID
    product_id: str
    movement_type: str
    quantity_change: int
    quantity_before: int
    quantity_after: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class MovementSummary(BaseModel):
    total_transactions: int
    sales: int
    returns: int
    adjustments: int
    restocks: int
    total_sold: int
    total_returned: int
    current_stock: int


class MovementHistoryResponse(BaseModel):
    product_id: str
    movements: List[StockMovementResponse]
    summary: MovementSummary


# ==================== LOW STOCK ====================

class LowStockProduct(BaseResponseSchema):
    product_id: str
    product_name: Optional[str] = None
    available_units: int
    low_stock_threshold: int


class LowStockReport(BaseModel):
    threshold: int
    critical: List[LowStockProduct] = []
    low: List[LowStockProduct] = []
    out_of_stock: List[LowStockProduct] = []
    total: int = 0


# ==================== ALERTS ====================

class InventoryAlertResponse(BaseResponseSchema):
    id: UUID
    product_id: str
    alert_type: str
    alert_level: str
    current_stock: int
    threshold_value: int
    message: str
    is_active: bool
    is_acknowledged: bool
    auto_resolve: bool
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime


class AlertAcknowledgeRequest(BaseCreateSchema):
    acknowledged_by: str = Field(..., min_length=1)
    resolution_notes: Optional[str] = None
