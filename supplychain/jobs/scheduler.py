"""
APScheduler configuration.

Periodic maintenance jobs run in the application's event loop. Jobs are
registered in start_scheduler(); intervals come from settings.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from supplychain.config import settings

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
    'misfire_grace_time': 60,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE,
)


async def run_reconciliation():
    """Scheduler entry point for the ledger reconciliation check."""
    from supplychain.jobs.reconciliation_jobs import reconcile_inventory_ledger

    try:
        discrepancies = await reconcile_inventory_ledger()
        logger.info(f"Job 'reconcile_inventory_ledger' completed: {len(discrepancies)} discrepancies")
    except Exception as e:
        logger.error(f"Job 'reconcile_inventory_ledger' failed: {e}")


def start_scheduler():
    """Register jobs and start the scheduler."""
    if not scheduler.running:
        scheduler.add_job(
            run_reconciliation,
            'interval',
            minutes=settings.RECONCILIATION_INTERVAL_MINUTES,
            id='reconcile_inventory_ledger',
            name='Reconcile Inventory Ledger',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background scheduler started with jobs:")
        for job in scheduler.get_jobs():
            logger.info(f"  - {job.name} (ID: {job.id})")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
