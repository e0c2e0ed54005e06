"""
APScheduler configuration for the billing engine.

Two schedules:
- The account-wide ingestion pipeline (ingest, attribute, normalize) on an
  interval, so attribution and cost decomposition keep up with the provider
- The weekly billing cycle on Monday morning, which runs the pipeline once
  more and then assembles one invoice per active client
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from billing_engine.config import settings

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
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_pipeline_job():
    """Scheduled entry point for the ingestion pipeline."""
    from billing_engine.jobs.billing_job_runner import run_ingestion_pipeline

    try:
        result = await run_ingestion_pipeline()
        logger.info(
            f"Pipeline completed: {result['ingestion']['inserted']} inserted, "
            f"{result['attribution']['unresolved']} unresolved"
        )
    except Exception as e:
        logger.error(f"Pipeline job failed: {e}")


async def run_billing_cycle_job():
    """Scheduled entry point for the weekly billing cycle."""
    from billing_engine.jobs.billing_job_runner import run_billing_cycle

    try:
        result = await run_billing_cycle()
        invoices = result["invoices"]
        logger.info(
            f"Billing cycle completed: "
            f"{invoices.get('successful', 0)}/{invoices.get('tenant_count', 0)} clients invoiced"
        )
    except Exception as e:
        logger.error(f"Billing cycle failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        # Registers @tenant_job functions
        from billing_engine.jobs import billing_job_runner  # noqa: F401

        scheduler.add_job(
            run_pipeline_job,
            'interval',
            minutes=settings.INGEST_INTERVAL_MINUTES,
            id='ingestion_pipeline',
            name='Ingest, Attribute and Normalize Transactions',
            replace_existing=True,
        )

        # Weekly invoices for the previous Monday-Sunday period
        scheduler.add_job(
            run_billing_cycle_job,
            'cron',
            day_of_week='mon',
            hour=6,
            minute=0,
            id='weekly_billing_cycle',
            name='[Multi-Tenant] Weekly Invoice Generation',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Billing job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Billing job scheduler stopped")


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
