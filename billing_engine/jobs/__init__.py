"""
Background Jobs Module

Handles scheduled tasks for:
- Provider ingestion, attribution and cost normalization
- Weekly invoice generation per client
"""

from billing_engine.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from billing_engine.jobs.billing_job_runner import run_ingestion_pipeline, run_billing_cycle, run_tenant_job

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "run_ingestion_pipeline",
    "run_billing_cycle",
    "run_tenant_job",
]
