"""
Order processing tests: all-or-nothing deduction, retries and the status lifecycle.
"""
import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func

from stockroom.exceptions import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from stockroom.factory import create_services
from stockroom.models.inventory import StockMovement
from stockroom.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory
from stockroom.services import order_state_machine
from stockroom.services.order_processing_service import RETRY_MESSAGE
from tests.helpers import make_order


async def count_rows(session_factory, column):
    async with session_factory() as session:
        return (await session.execute(select(func.count(column)))).scalar()


async def movements_for(session_factory, product_id):
    async with session_factory() as session:
        result = await session.execute(
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.created_at)
        )
        return list(result.scalars().all())


class FixedNumbers:
    def next(self, now):
        return "ORD-20260302-000001"


class TestValidation:

    @pytest.mark.asyncio
    async def test_empty_submission_reports_every_problem(self, orders):
        result = await orders.process_order(make_order(email="", total=0))

        assert result.success is False
        assert [e.code for e in result.errors] == ["MISSING_EMAIL", "NO_ITEMS", "INVALID_TOTAL"]
        assert result.order_number is None

    @pytest.mark.asyncio
    async def test_item_errors_carry_index(self, ledger, orders, session_factory):
        await ledger.track_product("A", initial_units=10)

        result = await orders.process_order(make_order(("A", 1, 5), ("B", 0, 0), total=5))

        assert result.success is False
        codes = [(e.code, e.item_index) for e in result.errors]
        assert codes == [("INVALID_QUANTITY", 1), ("INVALID_PRICE", 1)]
        # Nothing is touched before validation passes
        assert await ledger.get_stock("A") == 10
        assert len(await movements_for(session_factory, "A")) == 1


class TestPlacement:

    @pytest.mark.asyncio
    async def test_successful_order(self, ledger, orders, session_factory):
        await ledger.track_product("A", initial_units=10, product_name="Desk Lamp")

        result = await orders.process_order(make_order(("A", 3, Decimal("19.99"))))

        assert result.success is True
        assert result.errors == []
        assert re.match(r"^ORD-\d{8}-\d{6}$", result.order_number)
        assert result.order_number.startswith("ORD-20260302-")
        update = result.inventory_updates[0]
        assert (update.product_id, update.stock_change, update.previous_stock, update.new_stock) == ("A", -3, 10, 7)
        assert await ledger.get_stock("A") == 7

        order = await orders.get_order(result.order_id)
        assert order.status == OrderStatus.PENDING.value
        assert order.total_amount == Decimal("59.97")
        assert order.subtotal == Decimal("59.97")
        assert order.item_count == 3
        item = order.items[0]
        assert (item.line_number, item.stock_before_order, item.stock_after_order) == (1, 10, 7)
        assert [h.to_status for h in order.status_history] == ["pending"]

        sale = (await movements_for(session_factory, "A"))[-1]
        assert sale.movement_type == "sale"
        assert sale.reference_type == "order"
        assert sale.reference_id == result.order_id

    @pytest.mark.asyncio
    async def test_partial_shortage_places_nothing(self, ledger, orders, session_factory):
        await ledger.track_product("A", initial_units=10)
        await ledger.track_product("B", initial_units=2)

        result = await orders.process_order(make_order(("A", 5, 10), ("B", 5, 10)))

        assert result.success is False
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.code == "INSUFFICIENT_STOCK"
        assert error.message == "Only 2 available"
        assert (error.item_index, error.product_id) == (1, "B")
        assert result.inventory_updates == []

        assert await ledger.get_stock("A") == 10
        assert await ledger.get_stock("B") == 2
        assert await count_rows(session_factory, Order.id) == 0
        assert await count_rows(session_factory, OrderItem.id) == 0

        a_moves = await movements_for(session_factory, "A")
        assert [(m.movement_type, m.quantity_change) for m in a_moves] == [
            ("restock", 10), ("sale", -5), ("adjustment", 5),
        ]
        assert a_moves[-1].reference_type == "rollback"

    @pytest.mark.asyncio
    async def test_every_failing_item_is_reported(self, ledger, orders):
        await ledger.track_product("A", initial_units=1)

        result = await orders.process_order(make_order(("A", 4, 10), ("GHOST", 1, 10)))

        assert [(e.code, e.item_index) for e in result.errors] == [
            ("INSUFFICIENT_STOCK", 0), ("PRODUCT_NOT_FOUND", 1),
        ]

    @pytest.mark.asyncio
    async def test_other_carts_holds_are_honoured(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        await reservations.reserve("A", 3, "cart1", "s1")

        result = await orders.process_order(make_order(("A", 3, 10)))

        assert result.success is False
        assert result.errors[0].message == "Only 2 available"
        assert await ledger.get_stock("A") == 5

    @pytest.mark.asyncio
    async def test_order_consumes_its_own_reservation(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        hold = await reservations.reserve("A", 3, "cart1", "s1")

        order = make_order(("A", 3, 10), cart_id="cart1")
        order.items[0].reservation_id = hold.reservation_id
        result = await orders.process_order(order)

        assert result.success is True
        assert result.warnings == []
        level = await ledger.get_stock_level("A")
        assert (level.available_units, level.reserved_units) == (2, 0)
        reservation = await reservations.get_reservation(hold.reservation_id)
        assert reservation.converted_to_order is True
        assert reservation.order_id == result.order_id

    @pytest.mark.asyncio
    async def test_later_line_for_reserved_product_uses_free_stock(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        hold = await reservations.reserve("A", 3, "cart1", "s1")

        order = make_order(("A", 3, 10), ("A", 2, 10), cart_id="cart1")
        order.items[0].reservation_id = hold.reservation_id
        result = await orders.process_order(order)

        assert result.success is True, result.errors
        assert [u.new_stock for u in result.inventory_updates] == [2, 0]
        level = await ledger.get_stock_level("A")
        assert (level.available_units, level.reserved_units) == (0, 0)
        assert (await reservations.get_reservation(hold.reservation_id)).converted_to_order is True

    @pytest.mark.asyncio
    async def test_reservation_is_not_reused_across_lines(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        hold = await reservations.reserve("A", 3, "cart1", "s1")

        order = make_order(("A", 3, 10), ("A", 3, 10), cart_id="cart1")
        for item in order.items:
            item.reservation_id = hold.reservation_id
        result = await orders.process_order(order)

        assert result.success is False
        assert [(e.code, e.item_index) for e in result.errors] == [("INSUFFICIENT_STOCK", 1)]
        level = await ledger.get_stock_level("A")
        assert (level.available_units, level.reserved_units) == (5, 3)

    @pytest.mark.asyncio
    async def test_another_carts_reservation_cannot_be_claimed(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        hold = await reservations.reserve("A", 3, "cart1", "s1")

        order = make_order(("A", 3, 10), cart_id="cart2")
        order.items[0].reservation_id = hold.reservation_id
        result = await orders.process_order(order)

        assert result.success is False
        assert result.errors[0].message == "Only 2 available"
        reservation = await reservations.get_reservation(hold.reservation_id)
        assert reservation.is_active is True
        assert reservation.converted_to_order is False
        level = await ledger.get_stock_level("A")
        assert (level.available_units, level.reserved_units) == (5, 3)

    @pytest.mark.asyncio
    async def test_reservation_needs_cart_to_be_claimed(self, ledger, reservations, orders):
        await ledger.track_product("A", initial_units=5)
        hold = await reservations.reserve("A", 3, "cart1", "s1")

        order = make_order(("A", 3, 10))
        order.items[0].reservation_id = hold.reservation_id
        result = await orders.process_order(order)

        assert result.success is False
        assert result.errors[0].message == "Only 2 available"

    @pytest.mark.asyncio
    async def test_order_write_failure_restores_stock(self, ledger, orders, session_factory):
        await ledger.track_product("A", initial_units=10)
        await ledger.track_product("B", initial_units=10)
        orders._numbers = FixedNumbers()

        first = await orders.process_order(make_order(("A", 1, 10)))
        second = await orders.process_order(make_order(("B", 4, 10)))

        assert first.success is True
        assert second.success is False
        assert [e.code for e in second.errors] == ["DATABASE_ERROR"]
        assert second.errors[0].message == RETRY_MESSAGE
        assert await ledger.get_stock("B") == 10
        assert await count_rows(session_factory, Order.id) == 1

    @pytest.mark.asyncio
    async def test_publishes_order_created(self, ledger, orders, events):
        await ledger.track_product("A", initial_units=10)

        result = await orders.process_order(make_order(("A", 2, 10)))

        created = [e for e in events if e.collection == "orders"]
        assert len(created) == 1
        assert created[0].event.value == "create"
        assert created[0].document["order_number"] == result.order_number


class TestConflictRetry:

    @staticmethod
    def flaky(ledger, monkeypatch, failures):
        calls = {"count": 0}
        apply_delta = ledger.apply_delta

        async def conflicting(product_id, delta, *args, **kwargs):
            if delta < 0 and calls["count"] < failures:
                calls["count"] += 1
                raise ConcurrencyConflictError(product_id)
            return await apply_delta(product_id, delta, *args, **kwargs)

        monkeypatch.setattr(ledger, "apply_delta", conflicting)
        return calls

    @pytest.mark.asyncio
    async def test_transient_conflict_is_retried(self, ledger, orders, monkeypatch):
        await ledger.track_product("A", initial_units=10)
        calls = self.flaky(ledger, monkeypatch, failures=2)

        result = await orders.process_order(make_order(("A", 4, 10)))

        assert result.success is True
        assert calls["count"] == 2
        assert await ledger.get_stock("A") == 6

    @pytest.mark.asyncio
    async def test_persistent_conflict_fails_with_retry_message(self, ledger, orders, monkeypatch):
        await ledger.track_product("A", initial_units=10)
        await ledger.track_product("B", initial_units=10)
        # A deducts cleanly, every attempt at B conflicts
        calls = {"b": 0}
        patched = ledger.apply_delta

        async def conflict_on_b(product_id, delta, *args, **kwargs):
            if product_id == "B":
                calls["b"] += 1
                raise ConcurrencyConflictError(product_id)
            return await patched(product_id, delta, *args, **kwargs)

        monkeypatch.setattr(ledger, "apply_delta", conflict_on_b)

        result = await orders.process_order(make_order(("A", 2, 10), ("B", 2, 10)))

        assert result.success is False
        assert [(e.code, e.message) for e in result.errors] == [("INVENTORY_CONFLICT", RETRY_MESSAGE)]
        assert calls["b"] == orders.max_retries
        assert await ledger.get_stock("A") == 10


class TestStatusLifecycle:

    @staticmethod
    async def place(ledger, orders, **stock):
        for product_id, units in stock.items():
            await ledger.track_product(product_id, initial_units=units)
        result = await orders.process_order(
            make_order(*[(product_id, 2, 10) for product_id in stock])
        )
        assert result.success is True
        return result.order_id

    @pytest.mark.asyncio
    async def test_cancel_restores_stock(self, ledger, orders, session_factory):
        order_id = await self.place(ledger, orders, A=10, B=5)

        order = await orders.update_order_status(order_id, OrderStatus.CANCELLED, notes="Customer request")

        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert await ledger.get_stock("A") == 10
        assert await ledger.get_stock("B") == 5
        for product_id in ("A", "B"):
            moves = await movements_for(session_factory, product_id)
            assert moves[-1].movement_type == "return"
            assert sum(m.quantity_change for m in moves) == await ledger.get_stock(product_id)

    @pytest.mark.asyncio
    async def test_second_cancel_is_rejected_without_double_restore(self, ledger, orders):
        order_id = await self.place(ledger, orders, A=10)
        await orders.update_order_status(order_id, "cancelled")

        with pytest.raises(InvalidTransitionError):
            await orders.update_order_status(order_id, "cancelled")

        assert await ledger.get_stock("A") == 10

    @pytest.mark.asyncio
    async def test_concurrent_cancels_from_two_processes_restore_once(
        self, services, session_factory, clock, thresholds, events,
    ):
        # Second service graph over the same database, as a second worker would have
        other = create_services(
            session_factory,
            broadcaster=services.broadcaster,
            thresholds=thresholds,
            reservation_ttl=timedelta(minutes=30),
            clock=clock,
        )
        order_id = await self.place(services.ledger, services.orders, A=10)

        results = await asyncio.gather(
            services.orders.update_order_status(order_id, "cancelled"),
            other.orders.update_order_status(order_id, "cancelled"),
            return_exceptions=True,
        )

        cancelled = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(cancelled) == 1
        assert len(refused) == 1
        assert isinstance(refused[0], (InvalidTransitionError, PersistenceError))
        stock_seen = [
            e.document["available_units"] for e in events
            if e.collection == "products" and e.document["product_id"] == "A"
        ]
        assert max(stock_seen) == 10
        assert await services.ledger.get_stock("A") == 10
        returns = [m for m in await movements_for(session_factory, "A") if m.movement_type == "return"]
        assert len(returns) == 1

    @pytest.mark.asyncio
    async def test_failed_restore_reverts_status(self, ledger, orders, session_factory, monkeypatch):
        order_id = await self.place(ledger, orders, A=10, B=5)
        apply_delta = ledger.apply_delta

        async def store_down_for_b(product_id, delta, *args, **kwargs):
            if product_id == "B" and delta > 0:
                raise PersistenceError("Stock store unavailable")
            return await apply_delta(product_id, delta, *args, **kwargs)

        monkeypatch.setattr(ledger, "apply_delta", store_down_for_b)

        with pytest.raises(PersistenceError):
            await orders.update_order_status(order_id, "cancelled")

        order = await orders.get_order(order_id)
        assert order.status == "pending"
        assert order.cancelled_at is None
        assert [h.to_status for h in order.status_history] == ["pending", "cancelled", "pending"]
        assert order.status_history[-1].notes == "Reverted: stock could not be restored"
        assert await ledger.get_stock("A") == 8
        assert await ledger.get_stock("B") == 3
        a_moves = await movements_for(session_factory, "A")
        assert sum(m.quantity_change for m in a_moves) == 8

        monkeypatch.setattr(ledger, "apply_delta", apply_delta)
        retried = await orders.update_order_status(order_id, "cancelled")

        assert retried.status == "cancelled"
        assert await ledger.get_stock("B") == 5

    @pytest.mark.asyncio
    async def test_full_lifecycle_then_refund(self, ledger, orders, session_factory):
        order_id = await self.place(ledger, orders, A=10)

        await orders.update_order_status(order_id, "confirmed", notes="Payment verified", changed_by="ops")
        await orders.update_order_status(order_id, "processing", notes="Picked")
        await orders.update_order_status(order_id, "shipped", tracking_number="1Z999", carrier="UPS")
        delivered = await orders.update_order_status(order_id, "delivered")

        assert delivered.fulfillment_status == "fulfilled"
        assert delivered.tracking_number == "1Z999"
        assert delivered.carrier == "UPS"
        assert await ledger.get_stock("A") == 8

        refunded = await orders.update_order_status(order_id, "refunded")

        assert refunded.payment_status == "refunded"
        assert await ledger.get_stock("A") == 10
        assert [h.to_status for h in refunded.status_history] == [
            "pending", "confirmed", "processing", "shipped", "delivered", "refunded",
        ]
        assert refunded.status_history[1].changed_by == "ops"

        lines = refunded.internal_notes.split("\n")
        assert len(lines) == 2
        assert lines[0].endswith("confirmed: Payment verified")
        assert lines[1].endswith("processing: Picked")

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_order_unchanged(self, ledger, orders):
        order_id = await self.place(ledger, orders, A=10)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orders.update_order_status(order_id, "shipped")

        assert exc_info.value.allowed == ["confirmed", "cancelled"]
        assert (await orders.get_order(order_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_allowed_transitions(self, ledger, orders):
        order_id = await self.place(ledger, orders, A=10)

        order, allowed = await orders.get_allowed_transitions(order_id)

        assert order.status == "pending"
        assert allowed == ["confirmed", "cancelled"]

    @pytest.mark.asyncio
    async def test_unknown_order(self, orders):
        with pytest.raises(NotFoundError):
            await orders.update_order_status("not-a-uuid", "confirmed")
        with pytest.raises(NotFoundError):
            await orders.get_order_by_number("ORD-20260302-999999")

    @pytest.mark.asyncio
    async def test_list_orders_filters_by_status(self, ledger, orders):
        first = await self.place(ledger, orders, A=10)
        await orders.process_order(make_order(("A", 1, 10)))
        await orders.update_order_status(first, "confirmed")

        confirmed, total = await orders.list_orders(status=OrderStatus.CONFIRMED)
        everything, everything_total = await orders.list_orders()

        assert total == 1
        assert str(confirmed[0].id) == first
        assert everything_total == 2

    @pytest.mark.asyncio
    async def test_history_rows_written_per_change(self, ledger, orders, session_factory):
        order_id = await self.place(ledger, orders, A=10)
        await orders.update_order_status(order_id, "confirmed")

        assert await count_rows(session_factory, OrderStatusHistory.id) == 2


class TestStateMachine:

    @pytest.mark.parametrize("current,new,allowed", [
        ("pending", "confirmed", True),
        ("pending", "shipped", False),
        ("confirmed", "refunded", True),
        ("processing", "cancelled", True),
        ("shipped", "cancelled", False),
        ("delivered", "refunded", True),
        ("cancelled", "pending", False),
        ("refunded", "refunded", False),
        ("pending", "pending", False),
    ])
    def test_can_transition(self, current, new, allowed):
        assert order_state_machine.can_transition(current, new) is allowed

    def test_terminal_statuses(self):
        assert order_state_machine.is_terminal("cancelled")
        assert order_state_machine.is_terminal("refunded")
        assert not order_state_machine.is_terminal("delivered")

    def test_restocking_statuses(self):
        assert order_state_machine.restores_inventory("cancelled")
        assert order_state_machine.restores_inventory("refunded")
        assert not order_state_machine.restores_inventory("delivered")

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            order_state_machine.validate_transition("delivered", "shipped")
