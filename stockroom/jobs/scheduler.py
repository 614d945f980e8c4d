"""
APScheduler Configuration

Background job scheduler for the reservation expiry sweep.

When the API runs on several instances, enable the scheduler on exactly
one of them (SCHEDULER_ENABLED) so the sweep is not run redundantly.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from stockroom.config import settings
from stockroom.services.stock_reservation_service import StockReservationService

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE,
)


def start_scheduler(reservations: StockReservationService):
    """Start the background job scheduler."""
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background scheduler disabled on this instance")
        return

    if not scheduler.running:
        from stockroom.jobs.reservation_jobs import release_expired_reservations

        scheduler.add_job(
            release_expired_reservations,
            'interval',
            minutes=settings.RESERVATION_SWEEP_INTERVAL_MINUTES,
            args=[reservations],
            id='release_expired_reservations',
            name='Release Expired Reservations',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]
