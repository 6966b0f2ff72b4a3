"""
APScheduler configuration for background jobs.

Jobs run inside the API process on the FastAPI event loop.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from storefront.config import settings

logger = logging.getLogger(__name__)

jobstores = {
    'default': MemoryJobStore()
}

executors = {
    'default': AsyncIOExecutor(),
}

job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,
}

scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone='America/Sao_Paulo'
)


async def run_check_pending_payments():
    """Scheduler entry point; errors are logged so the job keeps its schedule."""
    from storefront.jobs.payment_jobs import check_pending_payments

    try:
        await check_pending_payments()
    except Exception as e:
        logger.error(f"Job 'check_pending_payments' failed: {e}")


async def run_expire_unpaid_orders():
    from storefront.jobs.order_jobs import expire_unpaid_orders

    try:
        await expire_unpaid_orders()
    except Exception as e:
        logger.error(f"Job 'expire_unpaid_orders' failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        scheduler.add_job(
            run_check_pending_payments,
            'interval',
            minutes=settings.PAYMENT_POLL_INTERVAL_MINUTES,
            id='check_pending_payments',
            name='Check Pending Payments',
            replace_existing=True,
        )
        scheduler.add_job(
            run_expire_unpaid_orders,
            'interval',
            minutes=settings.ORDER_EXPIRY_INTERVAL_MINUTES,
            id='expire_unpaid_orders',
            name='Expire Unpaid Orders',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")
