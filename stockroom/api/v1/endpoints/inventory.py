"""Inventory API endpoints for the admin console."""
from typing import Optional, List
import uuid

from fastapi import APIRouter, Query, status

from stockroom.api.deps import Ledger
from stockroom.models.inventory import ReferenceType, StockStatus
from stockroom.schemas.inventory import (
    TrackProductRequest,
    StockLevelResponse,
    StockLevelListResponse,
    ThresholdUpdate,
    StockAdjustmentRequest,
    StockChangeResponse,
    BulkAdjustmentRequest,
    BulkAdjustmentResponse,
    RecalculateResponse,
    StockMovementResponse,
    MovementHistoryResponse,
    MovementSummary,
    LowStockProduct,
    LowStockReport,
    InventoryAlertResponse,
    AlertAcknowledgeRequest,
)
from stockroom.services.stock_ledger_service import with_conflict_retry


router = APIRouter()


# ==================== STOCK LEVELS ====================

@router.get("", response_model=StockLevelListResponse)
async def list_stock_levels(
    ledger: Ledger,
    stock_status: Optional[StockStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """List tracked products with their current stock."""
    levels, total = await ledger.list_stock_levels(stock_status=stock_status, skip=skip, limit=limit)
    return StockLevelListResponse(
        items=[StockLevelResponse.model_validate(level) for level in levels],
        total=total,
    )


@router.post("", response_model=StockLevelResponse, status_code=status.HTTP_201_CREATED)
async def track_product(data: TrackProductRequest, ledger: Ledger):
    """Start tracking stock for a product."""
    level = await ledger.track_product(
        data.product_id,
        initial_units=data.initial_units,
        low_stock_threshold=data.low_stock_threshold,
        product_name=data.product_name,
    )
    return StockLevelResponse.model_validate(level)


# ==================== ADJUSTMENTS ====================

@router.post("/adjust", response_model=StockChangeResponse)
async def adjust_stock(data: StockAdjustmentRequest, ledger: Ledger):
    """
    Manual restock or correction.

    Deductions past the sellable quantity are rejected unless `override`
    is set, in which case stock is clamped at zero.
    """
    change = await with_conflict_retry(ledger.apply_delta)(
        data.product_id,
        data.quantity_change,
        data.movement_type,
        reference_type=ReferenceType.MANUAL,
        reason=data.reason,
        created_by=data.created_by,
        override=data.override,
    )
    return StockChangeResponse(
        product_id=change.product_id,
        previous_stock=change.previous,
        new_stock=change.new,
        stock_change=change.delta,
        stock_status=change.stock_status,
    )


@router.post("/bulk-update", response_model=BulkAdjustmentResponse)
async def bulk_update_stock(data: BulkAdjustmentRequest, ledger: Ledger):
    """Apply several adjustments; each succeeds or fails on its own."""
    result = await ledger.bulk_adjust(data.updates)
    return BulkAdjustmentResponse(**result)


@router.post("/recalculate", response_model=RecalculateResponse)
async def recalculate_stock(ledger: Ledger):
    """Recompute reserved units and stock status for every product."""
    result = await ledger.recalculate()
    return RecalculateResponse(**result)


# ==================== REPORTS ====================

@router.get("/low-stock", response_model=LowStockReport)
async def get_low_stock(
    ledger: Ledger,
    threshold: Optional[int] = Query(None, ge=0),
):
    """Products at or below the threshold, grouped by severity."""
    report = await ledger.get_low_stock_products(threshold)

    def to_items(levels) -> List[LowStockProduct]:
        return [LowStockProduct.model_validate(level) for level in levels]

    return LowStockReport(
        threshold=report["threshold"],
        critical=to_items(report["critical"]),
        low=to_items(report["low"]),
        out_of_stock=to_items(report["out_of_stock"]),
        total=report["total"],
    )


# ==================== ALERTS ====================

@router.get("/alerts", response_model=List[InventoryAlertResponse])
async def list_alerts(
    ledger: Ledger,
    product_id: Optional[str] = Query(None),
):
    """Active inventory alerts, newest first."""
    alerts = await ledger.list_active_alerts(product_id)
    return [InventoryAlertResponse.model_validate(alert) for alert in alerts]


@router.post("/alerts/{alert_id}/acknowledge", response_model=InventoryAlertResponse)
async def acknowledge_alert(alert_id: uuid.UUID, data: AlertAcknowledgeRequest, ledger: Ledger):
    alert = await ledger.acknowledge_alert(alert_id, data.acknowledged_by, data.resolution_notes)
    return InventoryAlertResponse.model_validate(alert)


# ==================== PER PRODUCT ====================

@router.get("/{product_id}", response_model=StockLevelResponse)
async def get_stock_level(product_id: str, ledger: Ledger):
    level = await ledger.get_stock_level(product_id)
    return StockLevelResponse.model_validate(level)


@router.get("/{product_id}/history", response_model=MovementHistoryResponse)
async def get_movement_history(
    product_id: str,
    ledger: Ledger,
    limit: int = Query(50, ge=1, le=500),
):
    """Movement ledger for a product with totals."""
    movements, summary = await ledger.get_movement_history(product_id, limit=limit)
    return MovementHistoryResponse(
        product_id=product_id,
        movements=[StockMovementResponse.model_validate(m) for m in movements],
        summary=MovementSummary(**summary),
    )


@router.patch("/{product_id}/threshold", response_model=StockLevelResponse)
async def update_threshold(product_id: str, data: ThresholdUpdate, ledger: Ledger):
    level = await ledger.update_threshold(product_id, data.low_stock_threshold)
    return StockLevelResponse.model_validate(level)
