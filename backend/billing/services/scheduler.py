"""
Background Job Scheduler.

WHAT: Configures and manages APScheduler for the billing jobs.

WHY: Overdue detection, recurring invoice generation and pre-due
reminders must happen without a user request. The jobs themselves live in billing_jobs and stay
callable on their own; this module only decides when they run.

HOW: AsyncIOScheduler with an in-memory job store and one IntervalTrigger
per job. Started and stopped from the FastAPI lifespan when
settings.SCHEDULER_ENABLED is true.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.triggers.interval import IntervalTrigger

from billing.core.config import settings
from billing.services.billing_jobs import BillingJobs, get_billing_jobs


logger = logging.getLogger(__name__)


# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> Optional[AsyncIOScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def start_scheduler(jobs: Optional[BillingJobs] = None) -> Optional[AsyncIOScheduler]:
    """
    Start the background job scheduler.

    HOW:
    1. Creates AsyncIOScheduler with memory job store
    2. Registers the overdue, recurring and reminder jobs
    3. Starts the scheduler

    Args:
        jobs: Job implementation (defaults to the shared BillingJobs)

    Returns:
        The running scheduler, or None when scheduling is disabled
    """
    global _scheduler

    if not settings.SCHEDULER_ENABLED:
        logger.info("Scheduler disabled by configuration")
        return None

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running")
        return _scheduler

    jobs = jobs or get_billing_jobs()

    _scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={
            "coalesce": True,  # Combine multiple missed runs into one
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

    _scheduler.add_job(
        func=jobs.refresh_overdue_invoices,
        trigger=IntervalTrigger(minutes=settings.OVERDUE_CHECK_INTERVAL_MINUTES),
        id="overdue_invoice_check",
        name="Overdue Invoice Check",
        replace_existing=True,
    )
    _scheduler.add_job(
        func=jobs.generate_due_recurring_invoices,
        trigger=IntervalTrigger(minutes=settings.RECURRING_CHECK_INTERVAL_MINUTES),
        id="recurring_invoice_generation",
        name="Recurring Invoice Generation",
        replace_existing=True,
    )
    _scheduler.add_job(
        func=jobs.send_upcoming_reminders,
        trigger=IntervalTrigger(minutes=settings.UPCOMING_REMINDER_INTERVAL_MINUTES),
        id="upcoming_invoice_reminders",
        name="Upcoming Invoice Reminders",
        replace_existing=True,
    )

    _scheduler.start()
    logger.info(
        f"Scheduler started (overdue every {settings.OVERDUE_CHECK_INTERVAL_MINUTES} min, "
        f"recurring every {settings.RECURRING_CHECK_INTERVAL_MINUTES} min, "
        f"reminders every {settings.UPCOMING_REMINDER_INTERVAL_MINUTES} min)"
    )
    return _scheduler


def shutdown_scheduler() -> None:
    """Stop the scheduler, letting running jobs finish."""
    global _scheduler

    if _scheduler is None:
        logger.info("Scheduler not running")
        return

    if _scheduler.running:
        logger.info("Shutting down scheduler...")
        _scheduler.shutdown(wait=True)
    _scheduler = None
    logger.info("Scheduler shut down successfully")


def get_scheduler_status() -> dict:
    """
    Get scheduler status information.

    Returns:
        Dict with scheduler status and job details
    """
    if _scheduler is None:
        return {
            "running": False,
            "jobs": [],
            "message": "Scheduler not initialized",
        }

    jobs = [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": str(job.next_run_time) if job.next_run_time else None,
            "trigger": str(job.trigger),
        }
        for job in _scheduler.get_jobs()
    ]

    return {
        "running": _scheduler.running,
        "jobs": jobs,
        "message": "Scheduler is running" if _scheduler.running else "Scheduler is paused",
    }
