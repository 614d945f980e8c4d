"""
Stock Reservation Service for cart holds.

Prevents overselling by temporarily holding stock while a shopper's cart
is open. Held units are tracked as ``StockLevel.reserved_units`` so the
quantity offered to other shoppers is ``available_units - reserved_units``.

Reservations expire after the configured TTL; the scheduler's sweep
releases them so abandoned carts never leak unavailable stock.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockroom.config import settings
from stockroom.core.clock import Clock, ensure_utc, utc_now
from stockroom.exceptions import NotFoundError, StockroomError, ValidationError
from stockroom.models.inventory import StockLevel
from stockroom.models.reservation import CartReservation
from stockroom.schemas.events import Collection, EventType
from stockroom.schemas.reservation import ReservationResponse
from stockroom.services.event_broadcaster import EventBroadcaster
from stockroom.services.stock_ledger_service import StockLedgerService, with_conflict_retry

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    """Result of a reservation attempt. Truthy when the hold was placed."""
    success: bool
    available_to_sell: int
    reservation_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.success


def parse_reservation_id(reservation_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(reservation_id, uuid.UUID):
        return reservation_id
    try:
        return uuid.UUID(str(reservation_id))
    except ValueError:
        raise NotFoundError("Reservation", reservation_id)


class StockReservationService:
    """
    Manages temporary stock holds for carts.

    Flow:
    1. reserve() - shopper adds to cart
    2. convert_to_order() - order placed against the hold
    3. release() - shopper removes the item, or the hold expires
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: StockLedgerService,
        broadcaster: EventBroadcaster,
        ttl: Optional[timedelta] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.ttl = ttl or timedelta(minutes=settings.RESERVATION_TTL_MINUTES)
        self.clock = clock

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        cart_id: str,
        session_id: str,
        user_id: Optional[str] = None,
        product_price: Decimal = Decimal("0"),
    ) -> ReservationResult:
        """
        Hold ``quantity`` units for a cart.

        Returns an unsuccessful result without touching stock when fewer
        than ``quantity`` units are available to sell.
        """
        if quantity <= 0:
            raise ValidationError("Reservation quantity must be positive")

        async def work(session: AsyncSession, level: StockLevel):
            sellable = max(0, level.available_units - level.reserved_units)
            if quantity > sellable:
                return None, sellable
            now = self.clock()
            reservation = CartReservation(
                id=uuid.uuid4(),
                cart_id=cart_id,
                session_id=session_id,
                user_id=user_id,
                product_id=product_id,
                quantity_reserved=quantity,
                product_price=product_price,
                expires_at=now + self.ttl,
                is_active=True,
                converted_to_order=False,
                created_at=now,
            )
            session.add(reservation)
            return reservation, sellable - quantity

        reservation, remaining = await with_conflict_retry(self.ledger.run_locked)(product_id, work)

        if reservation is None:
            logger.info(
                f"Reservation refused for cart {cart_id}: {product_id} "
                f"requested {quantity}, available {remaining}"
            )
            return ReservationResult(
                success=False,
                available_to_sell=remaining,
                message=f"Only {remaining} available",
            )

        logger.info(f"Reserved {quantity} x {product_id} for cart {cart_id} ({reservation.id})")
        await self._publish(EventType.CREATE, reservation)
        return ReservationResult(
            success=True,
            available_to_sell=remaining,
            reservation_id=str(reservation.id),
            expires_at=reservation.expires_at,
            message="Stock reserved",
        )

    async def get_reservation(self, reservation_id: Union[str, uuid.UUID]) -> CartReservation:
        rid = parse_reservation_id(reservation_id)
        async with self.session_factory() as session:
            reservation = await session.get(CartReservation, rid)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    async def release(self, reservation_id: Union[str, uuid.UUID]) -> bool:
        """
        Release a hold. Releasing an inactive reservation is a no-op.

        Returns:
            True if this call released the hold
        """
        return await self._release(reservation_id)

    async def release_cart(self, cart_id: str) -> int:
        """Release every active hold belonging to a cart."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CartReservation.id).where(
                    CartReservation.cart_id == cart_id,
                    CartReservation.is_active.is_(True),
                )
            )
            reservation_ids = result.scalars().all()

        released = 0
        for reservation_id in reservation_ids:
            if await self._release(reservation_id):
                released += 1
        return released

    async def release_expired(self, now: Optional[datetime] = None) -> int:
        """
        Release holds that are active, unconverted and past their expiry.

        A failure on one reservation is logged and left for the next sweep.
        """
        now = now or self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(CartReservation.id).where(
                    CartReservation.is_active.is_(True),
                    CartReservation.converted_to_order.is_(False),
                    CartReservation.expires_at < now,
                )
            )
            expired_ids = result.scalars().all()

        released = 0
        for reservation_id in expired_ids:
            try:
                if await self._release(reservation_id, expired_before=now):
                    released += 1
            except StockroomError as e:
                logger.error(f"Failed to release expired reservation {reservation_id}: {e.message}")

        if expired_ids:
            logger.info(f"Released {released}/{len(expired_ids)} expired reservations")
        return released

    async def extend_reservation(self, reservation_id: Union[str, uuid.UUID], minutes: int) -> CartReservation:
        """Push an active hold's expiry forward."""
        if minutes <= 0:
            raise ValidationError("Extension must be a positive number of minutes")
        reservation = await self.get_reservation(reservation_id)

        async def work(session: AsyncSession, level: StockLevel) -> CartReservation:
            row = await session.get(CartReservation, reservation.id)
            if not row.is_active:
                raise ValidationError(f"Reservation {row.id} is no longer active")
            row.expires_at = ensure_utc(row.expires_at) + timedelta(minutes=minutes)
            return row

        row = await with_conflict_retry(self.ledger.run_locked)(reservation.product_id, work)
        await self._publish(EventType.UPDATE, row)
        return row

    async def convert_to_order(self, reservation_id: Union[str, uuid.UUID], order_id: str) -> bool:
        """
        Mark a hold as consumed by an order.

        The stock itself was deducted by the order; converting only stops
        the hold counting towards reserved units.
        """
        reservation = await self.get_reservation(reservation_id)

        async def work(session: AsyncSession, level: StockLevel) -> Optional[CartReservation]:
            row = await session.get(CartReservation, reservation.id)
            if not row.is_active or row.converted_to_order:
                return None
            row.converted_to_order = True
            row.order_id = order_id
            row.is_active = False
            row.released_at = self.clock()
            return row

        row = await with_conflict_retry(self.ledger.run_locked)(reservation.product_id, work)
        if row is None:
            logger.warning(f"Reservation {reservation_id} was not active when order {order_id} consumed it")
            return False
        await self._publish(EventType.UPDATE, row)
        return True

    async def get_active_hold(
        self,
        reservation_id: Optional[str],
        product_id: str,
        cart_id: Optional[str],
    ) -> int:
        """
        Units an order item may draw from its own reservation.

        Returns 0 when the reservation is unknown, inactive, expired, for
        another product, or held by a cart other than ``cart_id``.
        """
        if not reservation_id or not cart_id:
            return 0
        try:
            reservation = await self.get_reservation(reservation_id)
        except NotFoundError:
            return 0
        if (
            reservation.product_id != product_id
            or reservation.cart_id != cart_id
            or not reservation.is_active
            or reservation.converted_to_order
            or ensure_utc(reservation.expires_at) <= self.clock()
        ):
            return 0
        return reservation.quantity_reserved

    async def list_cart_reservations(self, cart_id: str) -> List[CartReservation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CartReservation)
                .where(CartReservation.cart_id == cart_id)
                .order_by(CartReservation.created_at)
            )
            return list(result.scalars().all())

    async def _release(
        self,
        reservation_id: Union[str, uuid.UUID],
        expired_before: Optional[datetime] = None,
    ) -> bool:
        reservation = await self.get_reservation(reservation_id)
        if not reservation.is_active:
            return False

        async def work(session: AsyncSession, level: StockLevel) -> Optional[CartReservation]:
            row = await session.get(CartReservation, reservation.id)
            if not row.is_active:
                return None
            if expired_before is not None and ensure_utc(row.expires_at) >= expired_before:
                # Extended since the sweep selected it
                return None
            row.is_active = False
            row.released_at = self.clock()
            return row

        row = await with_conflict_retry(self.ledger.run_locked)(reservation.product_id, work)
        if row is None:
            return False
        logger.info(f"Released reservation {row.id} ({row.quantity_reserved} x {row.product_id})")
        await self._publish(EventType.UPDATE, row)
        return True

    async def _publish(self, event_type: EventType, reservation: CartReservation) -> None:
        document = ReservationResponse.model_validate(reservation).model_dump(mode="json")
        await self.broadcaster.publish(event_type, Collection.CART_RESERVATIONS, document)
