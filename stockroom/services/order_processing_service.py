"""
Order Processing Service

Turns a submitted cart into an order with all-or-nothing stock deduction,
then drives the order through its status lifecycle.

Deduction contract:
- Every line item is attempted and every failure is reported.
- If any item fails, or the order row cannot be written, every deduction
  already applied for the order is reversed through the stock ledger.
- Stock figures are always read from the ledger, never estimated.
"""
import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockroom.config import settings
from stockroom.core.clock import Clock, utc_now
from stockroom.database import transactional
from stockroom.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    StockroomError,
)
from stockroom.models.inventory import ReferenceType, StockMovementType
from stockroom.models.order import (
    FulfillmentStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
)
from stockroom.schemas.events import Collection, EventType
from stockroom.schemas.order import (
    InventoryUpdate,
    OrderCreate,
    OrderProcessingError,
    OrderProcessingResult,
    OrderResponse,
)
from stockroom.services import order_state_machine
from stockroom.services.event_broadcaster import EventBroadcaster
from stockroom.services.stock_ledger_service import StockChange, StockLedgerService, with_conflict_retry
from stockroom.services.stock_reservation_service import StockReservationService

logger = logging.getLogger(__name__)
analytics_logger = logging.getLogger("stockroom.analytics")

RETRY_MESSAGE = "Order could not be processed, please retry"


class OrderNumberGenerator:
    """ORD-YYYYMMDD-<last 6 digits of epoch milliseconds>, unique within the process."""

    def __init__(self):
        self._last_ms = 0

    def next(self, now: datetime) -> str:
        ms = max(int(time.time() * 1000), self._last_ms + 1)
        self._last_ms = ms
        return f"ORD-{now.strftime('%Y%m%d')}-{str(ms)[-6:]}"


def validate_order(order_data: OrderCreate) -> List[OrderProcessingError]:
    """Payload checks done before any stock is touched."""
    errors = []
    if not order_data.customer_email or not order_data.customer_email.strip():
        errors.append(OrderProcessingError(code="MISSING_EMAIL", message="Customer email is required"))
    if not order_data.items:
        errors.append(OrderProcessingError(code="NO_ITEMS", message="Order must contain at least one item"))
    if order_data.total_amount is None or order_data.total_amount <= 0:
        errors.append(OrderProcessingError(code="INVALID_TOTAL", message="Order total must be greater than zero"))

    for index, item in enumerate(order_data.items):
        if not item.product_id or not item.product_id.strip():
            errors.append(OrderProcessingError(
                code="MISSING_PRODUCT_ID", message="Product ID is required", item_index=index,
            ))
        if item.quantity is None or item.quantity <= 0:
            errors.append(OrderProcessingError(
                code="INVALID_QUANTITY", message="Quantity must be a positive whole number",
                item_index=index, product_id=item.product_id or None,
            ))
        if item.unit_price is None or item.unit_price <= 0:
            errors.append(OrderProcessingError(
                code="INVALID_PRICE", message="Unit price must be greater than zero",
                item_index=index, product_id=item.product_id or None,
            ))
    return errors


class OrderProcessingService:
    """Coordinates stock deduction, order persistence and status changes."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: StockLedgerService,
        reservations: StockReservationService,
        broadcaster: EventBroadcaster,
        clock: Clock = utc_now,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.reservations = reservations
        self.broadcaster = broadcaster
        self.clock = clock
        self.max_retries = max_retries or settings.LEDGER_MAX_RETRIES
        self._numbers = OrderNumberGenerator()

    async def _apply_delta(self, *args, **kwargs) -> StockChange:
        return await with_conflict_retry(self.ledger.apply_delta, self.max_retries)(*args, **kwargs)

    # ==================== ORDER PLACEMENT ====================

    async def process_order(self, order_data: OrderCreate) -> OrderProcessingResult:
        """
        Validate, deduct stock for every item and persist the order.

        Returns:
            OrderProcessingResult; on failure no stock change is left standing
        """
        errors = validate_order(order_data)
        if errors:
            logger.info(f"Order rejected by validation: {[e.code for e in errors]}")
            return OrderProcessingResult(success=False, errors=errors)

        now = self.clock()
        order_id = uuid.uuid4()
        order_number = self._numbers.next(now)

        applied: List[Tuple[str, int]] = []
        updates: List[InventoryUpdate] = []
        changes: Dict[int, StockChange] = {}
        product_names: Dict[int, Optional[str]] = {}
        # Hold units drawn by earlier lines, per reservation and per product.
        # They stay in reserved_units until the reservations are converted.
        hold_used: Dict[str, int] = defaultdict(int)
        hold_consumed: Dict[str, int] = defaultdict(int)

        for index, item in enumerate(order_data.items):
            error = None
            from_hold = 0
            try:
                level = await self.ledger.get_stock_level(item.product_id)
                product_names[index] = level.product_name
                own_hold = await self.reservations.get_active_hold(
                    item.reservation_id, item.product_id, order_data.cart_id
                )
                if own_hold:
                    from_hold = min(item.quantity, max(0, own_hold - hold_used[item.reservation_id]))
                consumed = hold_consumed[item.product_id]
                reserved = max(0, level.reserved_units - consumed)
                sellable = max(0, level.available_units - reserved) + from_hold
                if sellable < item.quantity:
                    raise InsufficientStockError(item.product_id, item.quantity, sellable)

                change = await self._apply_delta(
                    item.product_id,
                    -item.quantity,
                    StockMovementType.SALE,
                    reference_id=str(order_id),
                    reference_type=ReferenceType.ORDER,
                    reason=f"Order {order_number}",
                    reserved_allowance=consumed + from_hold,
                )
            except InsufficientStockError as e:
                error = OrderProcessingError(code="INSUFFICIENT_STOCK", message=e.message)
            except NotFoundError:
                error = OrderProcessingError(code="PRODUCT_NOT_FOUND", message=f"Product {item.product_id} not found")
            except ConcurrencyConflictError:
                logger.warning(f"Order {order_number}: conflict persisted for {item.product_id}")
                error = OrderProcessingError(code="INVENTORY_CONFLICT", message=RETRY_MESSAGE)
            except StockroomError as e:
                logger.error(f"Order {order_number}: stock update failed for {item.product_id}: {e.message}")
                error = OrderProcessingError(code="INVENTORY_UPDATE_ERROR", message=RETRY_MESSAGE)

            if error is not None:
                error.item_index = index
                error.product_id = item.product_id
                errors.append(error)
                continue

            applied.append((item.product_id, item.quantity))
            changes[index] = change
            if from_hold:
                hold_used[item.reservation_id] += from_hold
                hold_consumed[item.product_id] += from_hold
            updates.append(InventoryUpdate(
                product_id=item.product_id,
                stock_change=change.delta,
                previous_stock=change.previous,
                new_stock=change.new,
            ))

        if errors:
            warnings = await self._rollback(order_id, order_number, applied)
            logger.info(f"Order {order_number} not placed: {len(errors)} item error(s)")
            return OrderProcessingResult(
                success=False,
                order_number=order_number,
                errors=errors,
                warnings=warnings,
            )

        order = self._build_order(order_id, order_number, order_data, changes, product_names, now)
        try:
            async with transactional(self.session_factory, "Create order") as session:
                session.add(order)
                session.add(OrderStatusHistory(
                    id=uuid.uuid4(),
                    order_id=order_id,
                    from_status=None,
                    to_status=OrderStatus.PENDING.value,
                    notes="Order placed",
                    created_at=now,
                ))
        except PersistenceError:
            warnings = await self._rollback(order_id, order_number, applied)
            return OrderProcessingResult(
                success=False,
                order_number=order_number,
                errors=[OrderProcessingError(code="DATABASE_ERROR", message=RETRY_MESSAGE)],
                warnings=warnings,
            )

        warnings = await self._convert_reservations(order_data, str(order_id), hold_used)
        order = await self.get_order(order_id)
        await self._publish(EventType.CREATE, order)

        analytics_logger.info(
            f"order_placed order_id={order.id} order_number={order.order_number} "
            f"items={order.item_count} total={order.total_amount} currency={order.currency}"
        )
        logger.info(f"Order {order_number} placed with {len(order.items)} item(s)")

        return OrderProcessingResult(
            success=True,
            order_id=str(order_id),
            order_number=order_number,
            inventory_updates=updates,
            warnings=warnings,
        )

    def _build_order(
        self,
        order_id: uuid.UUID,
        order_number: str,
        order_data: OrderCreate,
        changes: Dict[int, StockChange],
        product_names: Dict[int, Optional[str]],
        now: datetime,
    ) -> Order:
        items = []
        for index, item in enumerate(order_data.items):
            change = changes[index]
            items.append(OrderItem(
                id=uuid.uuid4(),
                line_number=index + 1,
                product_id=item.product_id,
                product_name=item.product_name or product_names.get(index) or item.product_id,
                product_sku=item.product_sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.unit_price * item.quantity,
                reservation_id=item.reservation_id,
                stock_before_order=change.previous,
                stock_after_order=change.new,
            ))

        subtotal = order_data.subtotal
        if subtotal is None:
            subtotal = sum((i.total_price for i in items), Decimal("0"))

        return Order(
            id=order_id,
            order_number=order_number,
            customer_id=order_data.customer_id,
            customer_email=order_data.customer_email.strip(),
            customer_name=order_data.customer_name,
            customer_phone=order_data.customer_phone,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
            payment_method=order_data.payment_method,
            subtotal=subtotal,
            tax_amount=order_data.tax_amount,
            shipping_cost=order_data.shipping_cost,
            discount_amount=order_data.discount_amount,
            total_amount=order_data.total_amount,
            currency=order_data.currency,
            shipping_address=order_data.shipping_address,
            billing_address=order_data.billing_address,
            notes=order_data.notes,
            created_at=now,
            updated_at=now,
            items=items,
        )

    async def _rollback(self, order_id: uuid.UUID, order_number: str, applied: List[Tuple[str, int]]) -> List[str]:
        """Reverse applied deductions, newest first."""
        warnings = []
        for product_id, quantity in reversed(applied):
            try:
                await self._apply_delta(
                    product_id,
                    quantity,
                    StockMovementType.ADJUSTMENT,
                    reference_id=str(order_id),
                    reference_type=ReferenceType.ROLLBACK,
                    reason=f"Rollback of order {order_number}",
                )
            except StockroomError as e:
                logger.critical(
                    f"Rollback of {quantity} x {product_id} for order {order_number} failed: {e.message}"
                )
                warnings.append(f"Stock for {product_id} could not be restored automatically")
        if applied:
            logger.info(f"Rolled back {len(applied) - len(warnings)}/{len(applied)} deductions for {order_number}")
        return warnings

    async def _convert_reservations(
        self,
        order_data: OrderCreate,
        order_id: str,
        hold_used: Dict[str, int],
    ) -> List[str]:
        """Convert the holds the order drew on; reservations it could not use are left alone."""
        warnings = []
        requested = dict.fromkeys(item.reservation_id for item in order_data.items if item.reservation_id)
        for reservation_id in requested:
            if not hold_used.get(reservation_id):
                warnings.append(f"Reservation {reservation_id} was not applied to this order")
                continue
            try:
                if not await self.reservations.convert_to_order(reservation_id, order_id):
                    warnings.append(f"Reservation {reservation_id} had already been released")
            except StockroomError as e:
                logger.warning(f"Could not convert reservation {reservation_id}: {e.message}")
                warnings.append(f"Reservation {reservation_id} could not be converted")
        return warnings

    # ==================== LIFECYCLE ====================

    async def update_order_status(
        self,
        order_id: Union[str, uuid.UUID],
        new_status: Union[str, OrderStatus],
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``new_status``.

        The transition is claimed first with a conditional update on the
        current status, so of two concurrent requests for the same order
        only one proceeds. Cancellation and refund then put every item back
        into stock; if any restore fails the ones already applied are
        reversed and the order returns to its previous status.

        Raises:
            NotFoundError: Unknown order
            InvalidTransitionError: Status not reachable from the current one
            PersistenceError: The store rejected a write
        """
        new_status = OrderStatus(new_status).value
        order = await self.get_order(order_id)
        current_status = order.status
        order_state_machine.validate_transition(current_status, new_status)

        claimed = await self._claim_transition(
            order, new_status, notes=notes, changed_by=changed_by,
            tracking_number=tracking_number, carrier=carrier,
        )

        if order_state_machine.restores_inventory(new_status):
            restored: List[Tuple[str, int]] = []
            try:
                for item in order.items:
                    await self._apply_delta(
                        item.product_id,
                        item.quantity,
                        StockMovementType.RETURN,
                        reference_id=str(order.id),
                        reference_type=ReferenceType.ORDER,
                        reason=f"Order {order.order_number} {new_status}",
                    )
                    restored.append((item.product_id, item.quantity))
            except StockroomError as e:
                logger.error(f"Restoring stock for {order.order_number} failed: {e.message}")
                await self._undo_restore(order, restored)
                await self._revert_transition(order, new_status, claimed)
                raise

        order = await self.get_order(order.id)
        logger.info(f"Order {order.order_number}: {current_status} -> {new_status}")
        await self._publish(EventType.UPDATE, order)
        return order

    async def _claim_transition(
        self,
        order: Order,
        new_status: str,
        notes: Optional[str] = None,
        changed_by: Optional[str] = None,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Write the new status only if the order still has the status it was read with.

        Returns:
            The column values written, so the claim can be reverted
        """
        now = self.clock()
        values = order_state_machine.transition_values(new_status, now)
        values["updated_at"] = now
        if tracking_number:
            values["tracking_number"] = tracking_number
        if carrier:
            values["carrier"] = carrier
        if notes:
            entry = f"[{now.isoformat()}] {new_status}: {notes}"
            values["internal_notes"] = f"{order.internal_notes}\n{entry}" if order.internal_notes else entry

        async with transactional(self.session_factory, "Update order status") as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status == order.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                latest = await session.scalar(select(Order.status).where(Order.id == order.id))
                logger.info(f"Order {order.order_number} moved to {latest} before {new_status} was applied")
                raise InvalidTransitionError(
                    latest, new_status, order_state_machine.get_allowed_transitions(latest)
                )
            session.add(OrderStatusHistory(
                id=uuid.uuid4(),
                order_id=order.id,
                from_status=order.status,
                to_status=new_status,
                changed_by=changed_by,
                notes=notes,
                created_at=now,
            ))
        return values

    async def _revert_transition(self, order: Order, new_status: str, claimed: Dict[str, Any]) -> None:
        previous = {key: getattr(order, key) for key in claimed}
        try:
            async with transactional(self.session_factory, "Revert order status") as session:
                await session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status == new_status)
                    .values(**previous)
                    .execution_options(synchronize_session=False)
                )
                session.add(OrderStatusHistory(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    from_status=new_status,
                    to_status=order.status,
                    notes="Reverted: stock could not be restored",
                    created_at=self.clock(),
                ))
        except StockroomError as e:
            logger.critical(
                f"Order {order.order_number} left in {new_status} after a failed stock restore: {e.message}"
            )

    async def _undo_restore(self, order: Order, restored: List[Tuple[str, int]]) -> None:
        for product_id, quantity in reversed(restored):
            try:
                await self._apply_delta(
                    product_id,
                    -quantity,
                    StockMovementType.ADJUSTMENT,
                    reference_id=str(order.id),
                    reference_type=ReferenceType.ROLLBACK,
                    reason=f"Status change of {order.order_number} failed",
                    override=True,
                )
            except StockroomError as e:
                logger.critical(
                    f"Could not reverse restored stock {quantity} x {product_id} "
                    f"for order {order.order_number}: {e.message}"
                )

    async def get_allowed_transitions(self, order_id: Union[str, uuid.UUID]) -> Tuple[Order, List[str]]:
        order = await self.get_order(order_id)
        return order, order_state_machine.get_allowed_transitions(order.status)

    # ==================== QUERIES ====================

    async def get_order(self, order_id: Union[str, uuid.UUID]) -> Order:
        try:
            oid = order_id if isinstance(order_id, uuid.UUID) else uuid.UUID(str(order_id))
        except ValueError:
            raise NotFoundError("Order", order_id)
        async with self.session_factory() as session:
            order = await session.get(Order, oid)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        async with self.session_factory() as session:
            result = await session.execute(select(Order).where(Order.order_number == order_number))
            order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order", order_number)
        return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_email: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Order], int]:
        query = select(Order)
        count_query = select(func.count(Order.id))
        if status:
            query = query.where(Order.status == OrderStatus(status).value)
            count_query = count_query.where(Order.status == OrderStatus(status).value)
        if customer_email:
            query = query.where(Order.customer_email == customer_email)
            count_query = count_query.where(Order.customer_email == customer_email)

        async with self.session_factory() as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(
                query.order_by(Order.created_at.desc()).offset((page - 1) * size).limit(size)
            )
            return list(result.scalars().all()), total

    async def _publish(self, event_type: EventType, order: Order) -> None:
        document = OrderResponse.model_validate(order).model_dump(mode="json")
        await self.broadcaster.publish(event_type, Collection.ORDERS, document)
