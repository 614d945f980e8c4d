"""
Service Factory

Builds the service graph once per process. Route handlers and the
scheduler receive these instances explicitly; nothing else constructs
services.

Usage:
    from stockroom.factory import create_services
    services = create_services()
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from stockroom.core.clock import Clock, utc_now
from stockroom.services.event_broadcaster import EventBroadcaster
from stockroom.services.order_processing_service import OrderProcessingService
from stockroom.services.stock_ledger_service import StockLedgerService, StockThresholds
from stockroom.services.stock_reservation_service import StockReservationService


@dataclass
class Services:
    broadcaster: EventBroadcaster
    ledger: StockLedgerService
    reservations: StockReservationService
    orders: OrderProcessingService


def create_services(
    session_factory: Optional[async_sessionmaker] = None,
    broadcaster: Optional[EventBroadcaster] = None,
    thresholds: Optional[StockThresholds] = None,
    reservation_ttl: Optional[timedelta] = None,
    clock: Clock = utc_now,
) -> Services:
    """
    Create the services with real dependencies.

    Args:
        session_factory: Session factory; defaults to the configured database
        broadcaster: Event broadcaster shared by all services
        thresholds: Alert thresholds; defaults to settings
        reservation_ttl: Cart hold duration; defaults to settings
        clock: Time source, overridable in tests

    Returns:
        Wired Services instance
    """
    if session_factory is None:
        from stockroom.database import async_session_factory
        session_factory = async_session_factory

    broadcaster = broadcaster or EventBroadcaster()
    ledger = StockLedgerService(session_factory, broadcaster, thresholds=thresholds, clock=clock)
    reservations = StockReservationService(
        session_factory, ledger, broadcaster, ttl=reservation_ttl, clock=clock,
    )
    orders = OrderProcessingService(session_factory, ledger, reservations, broadcaster, clock=clock)
    return Services(
        broadcaster=broadcaster,
        ledger=ledger,
        reservations=reservations,
        orders=orders,
    )
