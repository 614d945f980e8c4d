"""
Reservation Jobs

Background job that returns abandoned cart holds to sellable stock.
"""

import logging
from datetime import datetime, timezone

from stockroom.services.stock_reservation_service import StockReservationService

logger = logging.getLogger(__name__)


async def release_expired_reservations(reservations: StockReservationService) -> int:
    """
    Release reservations whose TTL has passed.

    Runs every RESERVATION_SWEEP_INTERVAL_MINUTES. A failed cycle is logged
    and the remaining holds are picked up by the next run.
    """
    start_time = datetime.now(timezone.utc)
    try:
        released = await reservations.release_expired()
    except Exception as e:
        logger.error(f"Expired reservation sweep failed: {type(e).__name__}: {e}")
        return 0

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    if released:
        logger.info(f"Released {released} expired reservations in {duration:.2f}s")
    else:
        logger.debug(f"No expired reservations ({duration:.2f}s)")
    return released
