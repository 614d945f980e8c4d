"""
Stock Ledger Service

Single source of truth for per-product stock. Every change to
``StockLevel.available_units`` goes through ``apply_delta`` so that the
movement history is complete and alerts are evaluated consistently.

Concurrency:
- Within a process, mutations for one product are serialized with an
  asyncio lock, which also keeps that product's events in mutation order.
- Across processes, the row is written with a compare-and-swap on
  ``version``; a lost race raises ConcurrencyConflictError and the caller
  retries (see ``with_conflict_retry``).
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from stockroom.config import settings
from stockroom.core.clock import Clock, utc_now
from stockroom.database import transactional
from stockroom.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    StockroomError,
    ValidationError,
)
from stockroom.models.inventory import (
    AlertLevel,
    AlertType,
    InventoryAlert,
    ReferenceType,
    StockLevel,
    StockMovement,
    StockMovementType,
    StockStatus,
)
from stockroom.models.reservation import CartReservation
from stockroom.schemas.events import Collection, EventType
from stockroom.schemas.inventory import (
    InventoryAlertResponse,
    StockAdjustmentRequest,
    StockLevelResponse,
    StockMovementResponse,
)
from stockroom.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StockThresholds:
    """Alert thresholds. ``warning`` is the default per-product low-stock threshold."""
    warning: int = 5
    critical: int = 2
    overstock: int = 10000

    @classmethod
    def from_settings(cls) -> "StockThresholds":
        return cls(
            warning=settings.DEFAULT_LOW_STOCK_THRESHOLD,
            critical=settings.CRITICAL_STOCK_THRESHOLD,
            overstock=settings.OVERSTOCK_THRESHOLD,
        )


@dataclass(frozen=True)
class AlertSpec:
    """An alert that should be active for the current stock level."""
    alert_type: AlertType
    alert_level: AlertLevel
    threshold_value: int
    message: str

    @property
    def key(self) -> Tuple[str, str]:
        return (self.alert_type.value, self.alert_level.value)


@dataclass
class StockChange:
    """Result of a ledger mutation."""
    product_id: str
    previous: int
    new: int
    stock_status: str
    movement_id: Optional[uuid.UUID] = None

    @property
    def delta(self) -> int:
        return self.new - self.previous


@dataclass
class _PendingEvents:
    items: List[Tuple[EventType, Collection, Dict[str, Any]]] = field(default_factory=list)

    def add(self, event_type: EventType, collection: Collection, document: Dict[str, Any]) -> None:
        self.items.append((event_type, collection, document))


# ==================== PURE RULES ====================

def compute_stock_status(available_units: int, low_stock_threshold: int) -> StockStatus:
    """0 -> out_of_stock; <= threshold -> low_stock; else in_stock."""
    if available_units <= 0:
        return StockStatus.OUT_OF_STOCK
    if available_units <= low_stock_threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def check_thresholds(
    product_id: str,
    stock: int,
    thresholds: StockThresholds,
    low_stock_threshold: Optional[int] = None,
) -> List[AlertSpec]:
    """
    Alerts that apply to ``stock``.

    Critical is checked before warning, so a single low-stock crossing
    yields at most one low_stock alert.
    """
    warning = thresholds.warning if low_stock_threshold is None else low_stock_threshold
    critical = min(thresholds.critical, warning)

    if stock <= 0:
        return [AlertSpec(
            AlertType.OUT_OF_STOCK, AlertLevel.CRITICAL, 0,
            f"{product_id} is out of stock",
        )]
    if stock <= critical:
        return [AlertSpec(
            AlertType.LOW_STOCK, AlertLevel.CRITICAL, critical,
            f"Stock for {product_id} is critically low: {stock} units remaining (threshold {critical})",
        )]
    if stock <= warning:
        return [AlertSpec(
            AlertType.LOW_STOCK, AlertLevel.WARNING, warning,
            f"Stock for {product_id} is low: {stock} units remaining (threshold {warning})",
        )]
    if stock > thresholds.overstock:
        return [AlertSpec(
            AlertType.OVERSTOCK, AlertLevel.INFO, thresholds.overstock,
            f"{product_id} is overstocked: {stock} units (threshold {thresholds.overstock})",
        )]
    return []


def with_conflict_retry(func: Callable[..., Awaitable[T]], max_attempts: Optional[int] = None) -> Callable[..., Awaitable[T]]:
    """Wrap a ledger call so ConcurrencyConflictError is retried a bounded number of times."""
    return retry(
        stop=stop_after_attempt(max_attempts or settings.LEDGER_MAX_RETRIES),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(ConcurrencyConflictError),
        reraise=True,
    )(func)


def _value(item) -> Optional[str]:
    if item is None:
        return None
    return item.value if hasattr(item, "value") else str(item)


class StockLedgerService:
    """
    Applies stock deltas, records movements and maintains inventory alerts.

    One instance per process; built by ``stockroom.factory``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        broadcaster: EventBroadcaster,
        thresholds: Optional[StockThresholds] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.broadcaster = broadcaster
        self.thresholds = thresholds or StockThresholds.from_settings()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    # ==================== READS ====================

    async def get_stock(self, product_id: str) -> int:
        """Current available units. Untracked products raise NotFoundError."""
        level = await self.get_stock_level(product_id)
        return level.available_units

    async def get_stock_level(self, product_id: str) -> StockLevel:
        async with self.session_factory() as session:
            level = await session.get(StockLevel, product_id)
        if level is None:
            raise NotFoundError("Product", product_id)
        return level

    async def list_stock_levels(
        self,
        stock_status: Optional[StockStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[StockLevel], int]:
        query = select(StockLevel)
        count_query = select(func.count()).select_from(StockLevel)
        if stock_status:
            query = query.where(StockLevel.stock_status == stock_status.value)
            count_query = count_query.where(StockLevel.stock_status == stock_status.value)

        async with self.session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(
                query.order_by(StockLevel.product_id).offset(skip).limit(limit)
            )
            return list(result.scalars().all()), total

    # ==================== MUTATIONS ====================

    async def track_product(
        self,
        product_id: str,
        initial_units: int = 0,
        low_stock_threshold: Optional[int] = None,
        product_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockLevel:
        """Start tracking a product. Initial stock is recorded as a restock movement."""
        if initial_units < 0:
            raise ValidationError("Initial units cannot be negative")
        threshold = self.thresholds.warning if low_stock_threshold is None else low_stock_threshold

        events = _PendingEvents()
        async with self._locked(product_id):
            async with transactional(self.session_factory, "Track product") as session:
                if await session.get(StockLevel, product_id) is not None:
                    raise ValidationError(f"Product {product_id} is already tracked")

                level = self._new_level(product_id, threshold, product_name)
                session.add(level)
                await session.flush()

                if initial_units > 0:
                    change = await self._write(
                        session, level, initial_units, StockMovementType.RESTOCK,
                        reference_type=ReferenceType.MANUAL, reason="Initial stock",
                        created_by=created_by, events=events, created=True,
                    )
                    logger.info(f"Tracking {product_id} with {change.new} units")
                else:
                    await self._sync_alerts(session, level, None, events)
                    events.add(EventType.CREATE, Collection.PRODUCTS, self._level_document(level))
                    logger.info(f"Tracking {product_id} with no stock")

            await self._publish(events)
        return level

    async def apply_delta(
        self,
        product_id: str,
        delta: int,
        movement_type: StockMovementType,
        reference_id: Optional[str] = None,
        reference_type: Optional[ReferenceType] = None,
        reason: Optional[str] = None,
        *,
        created_by: Optional[str] = None,
        override: bool = False,
        reserved_allowance: int = 0,
    ) -> StockChange:
        """
        Atomically apply ``delta`` to the product's available units.

        Args:
            delta: Signed quantity change
            movement_type: Cause recorded on the movement
            override: Admin correction; a deduction past zero clamps to 0
                instead of raising InsufficientStockError
            reserved_allowance: Units of the caller's own reservation this
                deduction consumes. Other carts' reservations stay honoured.

        Raises:
            InsufficientStockError: Deduction would go below zero or into
                stock held for other carts
            NotFoundError: Product untracked (a positive restock tracks it)
            ConcurrencyConflictError: Another writer updated the row first
            PersistenceError: The store rejected the write
        """
        movement_type = StockMovementType(movement_type)
        if delta == 0:
            raise ValidationError("Stock delta must be non-zero")

        events = _PendingEvents()
        async with self._locked(product_id):
            async with transactional(self.session_factory, "Stock update") as session:
                level = await session.get(StockLevel, product_id)
                created = False
                if level is None:
                    if movement_type != StockMovementType.RESTOCK or delta < 0:
                        raise NotFoundError("Product", product_id)
                    level = self._new_level(product_id, self.thresholds.warning)
                    session.add(level)
                    await session.flush()
                    created = True

                previous = level.available_units
                new = previous + delta
                if delta < 0 and not override:
                    floor = max(0, level.reserved_units - max(0, reserved_allowance))
                    if new < floor:
                        raise InsufficientStockError(product_id, -delta, max(0, previous - floor))
                new = max(0, new)

                change = await self._write(
                    session, level, new - previous, movement_type,
                    reference_id=reference_id, reference_type=reference_type,
                    reason=reason, created_by=created_by, events=events, created=created,
                )

            await self._publish(events)

        logger.info(
            f"Stock {product_id}: {change.previous} -> {change.new} "
            f"({movement_type.value}, ref={reference_id})"
        )
        return change

    async def run_locked(
        self,
        product_id: str,
        work: Callable[[AsyncSession, StockLevel], Awaitable[T]],
    ) -> T:
        """
        Run ``work`` inside the product's critical section and transaction.

        Used for reservation changes: after ``work`` the product's
        ``reserved_units`` is recomputed from the active reservations and
        written with the same compare-and-swap as ``apply_delta``.
        """
        events = _PendingEvents()
        async with self._locked(product_id):
            async with transactional(self.session_factory, "Reservation update") as session:
                level = await session.get(StockLevel, product_id)
                if level is None:
                    raise NotFoundError("Product", product_id)
                result = await work(session, level)
                await session.flush()
                reserved = await self._active_reserved_units(session, product_id)
                if reserved != level.reserved_units:
                    await self._compare_and_swap(session, level, reserved_units=reserved)
                    events.add(EventType.UPDATE, Collection.PRODUCTS, self._level_document(level))
            await self._publish(events)
        return result

    async def update_threshold(self, product_id: str, low_stock_threshold: int) -> StockLevel:
        if low_stock_threshold < 0:
            raise ValidationError("Threshold cannot be negative")

        events = _PendingEvents()
        async with self._locked(product_id):
            async with transactional(self.session_factory, "Threshold update") as session:
                level = await session.get(StockLevel, product_id)
                if level is None:
                    raise NotFoundError("Product", product_id)
                before = self._alert_keys(level.available_units, level.low_stock_threshold)
                await self._compare_and_swap(
                    session, level,
                    low_stock_threshold=low_stock_threshold,
                    stock_status=compute_stock_status(level.available_units, low_stock_threshold).value,
                )
                await self._sync_alerts(session, level, before, events)
                events.add(EventType.UPDATE, Collection.PRODUCTS, self._level_document(level))
            await self._publish(events)
        return level

    async def bulk_adjust(self, updates: Sequence[StockAdjustmentRequest]) -> Dict[str, Any]:
        """Apply independent admin adjustments; one failure does not stop the rest."""
        apply = with_conflict_retry(self.apply_delta)
        succeeded, errors = 0, []
        for index, item in enumerate(updates):
            try:
                await apply(
                    item.product_id,
                    item.quantity_change,
                    item.movement_type,
                    reference_type=ReferenceType.MANUAL,
                    reason=item.reason,
                    created_by=item.created_by,
                    override=item.override,
                )
                succeeded += 1
            except StockroomError as e:
                errors.append({"index": index, "product_id": item.product_id, "message": e.message})

        if errors:
            logger.warning(f"Bulk adjustment: {succeeded} applied, {len(errors)} failed")
        return {"success": succeeded, "failed": len(errors), "errors": errors}

    async def recalculate(self) -> Dict[str, int]:
        """Recompute reserved units and status for every tracked product."""
        async with self.session_factory() as session:
            product_ids = (await session.execute(select(StockLevel.product_id))).scalars().all()

        updated = 0
        for product_id in product_ids:
            events = _PendingEvents()
            async with self._locked(product_id):
                async with transactional(self.session_factory, "Recalculate stock") as session:
                    level = await session.get(StockLevel, product_id)
                    if level is None:
                        continue
                    reserved = await self._active_reserved_units(session, product_id)
                    status = compute_stock_status(level.available_units, level.low_stock_threshold).value
                    if reserved == level.reserved_units and status == level.stock_status:
                        continue
                    await self._compare_and_swap(session, level, reserved_units=reserved, stock_status=status)
                    events.add(EventType.UPDATE, Collection.PRODUCTS, self._level_document(level))
                    updated += 1
                await self._publish(events)

        logger.info(f"Recalculated {len(product_ids)} products, {updated} corrected")
        return {"products_checked": len(product_ids), "products_updated": updated}

    # ==================== ALERTS ====================

    async def list_active_alerts(self, product_id: Optional[str] = None) -> List[InventoryAlert]:
        query = select(InventoryAlert).where(InventoryAlert.is_active.is_(True))
        if product_id:
            query = query.where(InventoryAlert.product_id == product_id)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(InventoryAlert.created_at.desc()))
            return list(result.scalars().all())

    async def acknowledge_alert(
        self,
        alert_id: uuid.UUID,
        acknowledged_by: str,
        resolution_notes: Optional[str] = None,
    ) -> InventoryAlert:
        async with self.session_factory() as session:
            alert = await session.get(InventoryAlert, alert_id)
        if alert is None:
            raise NotFoundError("Inventory alert", alert_id)

        events = _PendingEvents()
        async with self._locked(alert.product_id):
            async with transactional(self.session_factory, "Acknowledge alert") as session:
                alert = await session.get(InventoryAlert, alert_id)
                now = self.clock()
                alert.is_acknowledged = True
                alert.is_active = False
                alert.acknowledged_by = acknowledged_by
                alert.acknowledged_at = now
                alert.resolution_notes = resolution_notes
                alert.resolved_at = alert.resolved_at or now
                await session.flush()
                events.add(EventType.UPDATE, Collection.INVENTORY_ALERTS, self._alert_document(alert))
            await self._publish(events)
        return alert

    # ==================== REPORTING ====================

    async def get_movement_history(
        self,
        product_id: str,
        limit: int = 50,
    ) -> Tuple[List[StockMovement], Dict[str, int]]:
        """Latest movements plus a summary over the full history."""
        level = await self.get_stock_level(product_id)

        def count_of(movement_type: StockMovementType):
            return func.sum(case((StockMovement.movement_type == movement_type.value, 1), else_=0))

        def units_of(movement_type: StockMovementType):
            return func.sum(case(
                (StockMovement.movement_type == movement_type.value, StockMovement.quantity_change),
                else_=0,
            ))

        async with self.session_factory() as session:
            result = await session.execute(
                select(StockMovement)
                .where(StockMovement.product_id == product_id)
                .order_by(StockMovement.created_at.desc())
                .limit(limit)
            )
            movements = list(result.scalars().all())

            totals = (await session.execute(
                select(
                    func.count(StockMovement.id),
                    count_of(StockMovementType.SALE),
                    count_of(StockMovementType.RETURN),
                    count_of(StockMovementType.ADJUSTMENT),
                    count_of(StockMovementType.RESTOCK),
                    units_of(StockMovementType.SALE),
                    units_of(StockMovementType.RETURN),
                ).where(StockMovement.product_id == product_id)
            )).one()

        summary = {
            "total_transactions": totals[0] or 0,
            "sales": totals[1] or 0,
            "returns": totals[2] or 0,
            "adjustments": totals[3] or 0,
            "restocks": totals[4] or 0,
            "total_sold": -(totals[5] or 0),
            "total_returned": totals[6] or 0,
            "current_stock": level.available_units,
        }
        return movements, summary

    async def get_low_stock_products(self, threshold: Optional[int] = None) -> Dict[str, Any]:
        """Products at or below ``threshold`` grouped as critical, low and out of stock."""
        threshold = self.thresholds.warning if threshold is None else threshold
        async with self.session_factory() as session:
            result = await session.execute(
                select(StockLevel)
                .where(StockLevel.available_units <= threshold)
                .order_by(StockLevel.available_units, StockLevel.product_id)
            )
            levels = list(result.scalars().all())

        report = {"threshold": threshold, "critical": [], "low": [], "out_of_stock": [], "total": len(levels)}
        for level in levels:
            if level.available_units == 0:
                report["out_of_stock"].append(level)
            elif level.available_units <= threshold / 2:
                report["critical"].append(level)
            else:
                report["low"].append(level)
        return report

    # ==================== INTERNALS ====================

    @asynccontextmanager
    async def _locked(self, product_id: str) -> AsyncIterator[None]:
        """Per-product critical section. The lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(product_id)
        if lock is None:
            lock = self._locks[product_id] = asyncio.Lock()
        self._lock_users[product_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[product_id] -= 1
            if not self._lock_users[product_id]:
                del self._lock_users[product_id]
                del self._locks[product_id]

    def _new_level(self, product_id: str, threshold: int, product_name: Optional[str] = None) -> StockLevel:
        now = self.clock()
        return StockLevel(
            product_id=product_id,
            product_name=product_name,
            available_units=0,
            reserved_units=0,
            stock_status=StockStatus.OUT_OF_STOCK.value,
            low_stock_threshold=threshold,
            version=1,
            created_at=now,
            updated_at=now,
        )

    async def _write(
        self,
        session: AsyncSession,
        level: StockLevel,
        delta: int,
        movement_type: StockMovementType,
        *,
        reference_id: Optional[str] = None,
        reference_type: Optional[ReferenceType] = None,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
        events: _PendingEvents,
        created: bool = False,
    ) -> StockChange:
        """Persist the new level, append the movement and sync alerts."""
        previous = level.available_units
        new = previous + delta
        before = None if created else self._alert_keys(previous, level.low_stock_threshold)
        now = self.clock()

        values = {
            "available_units": new,
            "stock_status": compute_stock_status(new, level.low_stock_threshold).value,
        }
        if movement_type == StockMovementType.RESTOCK and delta > 0:
            values["last_restocked_at"] = now
        await self._compare_and_swap(session, level, **values)

        movement = StockMovement(
            id=uuid.uuid4(),
            product_id=level.product_id,
            movement_type=movement_type.value,
            quantity_change=delta,
            quantity_before=previous,
            quantity_after=new,
            reference_id=reference_id,
            reference_type=_value(reference_type),
            reason=reason,
            created_by=created_by,
            created_at=now,
        )
        session.add(movement)
        await session.flush()

        events.add(
            EventType.CREATE if created else EventType.UPDATE,
            Collection.PRODUCTS,
            self._level_document(level),
        )
        events.add(EventType.CREATE, Collection.STOCK_MOVEMENTS, StockMovementResponse.model_validate(movement).model_dump(mode="json"))
        await self._sync_alerts(session, level, before, events)

        return StockChange(
            product_id=level.product_id,
            previous=previous,
            new=new,
            stock_status=level.stock_status,
            movement_id=movement.id,
        )

    async def _compare_and_swap(self, session: AsyncSession, level: StockLevel, **values) -> None:
        """Conditional update on the row version, then reload the row."""
        result = await session.execute(
            update(StockLevel)
            .where(
                StockLevel.product_id == level.product_id,
                StockLevel.version == level.version,
            )
            .values(version=StockLevel.version + 1, updated_at=self.clock(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"Version conflict on {level.product_id} at version {level.version}")
            raise ConcurrencyConflictError(level.product_id)
        await session.refresh(level)

    def _alert_keys(self, stock: int, low_stock_threshold: int) -> Set[Tuple[str, str]]:
        return {
            spec.key
            for spec in check_thresholds("", stock, self.thresholds, low_stock_threshold)
        }

    async def _sync_alerts(
        self,
        session: AsyncSession,
        level: StockLevel,
        previous_keys: Optional[Set[Tuple[str, str]]],
        events: _PendingEvents,
    ) -> None:
        """
        Raise alerts for thresholds newly crossed and resolve superseded ones.

        ``previous_keys`` is the alert set for the stock before this change;
        None means every applicable alert counts as newly crossed.
        """
        desired = check_thresholds(
            level.product_id, level.available_units, self.thresholds, level.low_stock_threshold
        )
        desired_keys = {spec.key for spec in desired}

        result = await session.execute(
            select(InventoryAlert).where(
                InventoryAlert.product_id == level.product_id,
                InventoryAlert.is_active.is_(True),
            )
        )
        active_keys = set()
        now = self.clock()
        for alert in result.scalars().all():
            key = (alert.alert_type, alert.alert_level)
            if key in desired_keys:
                active_keys.add(key)
                continue
            if alert.auto_resolve:
                alert.is_active = False
                alert.resolved_at = now
                alert.current_stock = level.available_units
                events.add(EventType.UPDATE, Collection.INVENTORY_ALERTS, self._alert_document(alert))

        for spec in desired:
            if spec.key in active_keys:
                continue
            if previous_keys is not None and spec.key in previous_keys:
                # Still past the same threshold (e.g. acknowledged); not a new crossing
                continue
            alert = InventoryAlert(
                id=uuid.uuid4(),
                product_id=level.product_id,
                alert_type=spec.alert_type.value,
                alert_level=spec.alert_level.value,
                current_stock=level.available_units,
                threshold_value=spec.threshold_value,
                message=spec.message,
                is_active=True,
                is_acknowledged=False,
                auto_resolve=True,
                notification_sent=False,
                created_at=now,
            )
            session.add(alert)
            logger.warning(f"Inventory alert: {spec.message}")
            events.add(EventType.CREATE, Collection.INVENTORY_ALERTS, self._alert_document(alert))

        await session.flush()

    async def _active_reserved_units(self, session: AsyncSession, product_id: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(CartReservation.quantity_reserved), 0)).where(
                CartReservation.product_id == product_id,
                CartReservation.is_active.is_(True),
                CartReservation.converted_to_order.is_(False),
            )
        )
        return int(result.scalar() or 0)

    def _level_document(self, level: StockLevel) -> Dict[str, Any]:
        return StockLevelResponse.model_validate(level).model_dump(mode="json")

    def _alert_document(self, alert: InventoryAlert) -> Dict[str, Any]:
        return InventoryAlertResponse.model_validate(alert).model_dump(mode="json")

    async def _publish(self, events: _PendingEvents) -> None:
        for event_type, collection, document in events.items:
            await self.broadcaster.publish(event_type, collection, document)
