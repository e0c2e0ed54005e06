"""
Billing Job Runner

Runs the billing pipeline stages as background jobs.

Architecture:
- Account-wide stages (ingestion, attribution, normalization) run once,
  in that order, since the provider account spans every client
- Per-client jobs are registered with @tenant_job and fanned out across
  active, non-system clients
- Each client gets its own session; a failure for one client doesn't
  affect the others
- Concurrency across clients is bounded by a semaphore

Usage:
    @tenant_job("assemble_invoices")
    async def assemble_invoices(session, client, **params):
        ...
"""

import asyncio
import logging
import uuid
from datetime import date, timedelta, datetime, timezone
from functools import wraps
from typing import Callable, Dict, List, Any, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.config import settings
from billing_engine.core.exceptions import NothingToInvoiceError
from billing_engine.database import async_session_factory
from billing_engine.models.client import Client
from billing_engine.services.attribution_service import AttributionService
from billing_engine.services.cost_normalizer_service import CostNormalizerService
from billing_engine.services.ingestion_service import IngestionService
from billing_engine.services.invoice_assembler_service import InvoiceAssemblerService
from billing_engine.services.provider_client import ProviderBillingClient

logger = logging.getLogger(__name__)

# Registry of per-client jobs
_tenant_jobs: Dict[str, Callable] = {}


def tenant_job(name: str):
    """
    Decorator to register a per-client background job.

    The decorated function receives:
    - session: AsyncSession owned by this client's run
    - client: dict with id, name, short_code
    - any keyword parameters passed to run_job()
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(session: AsyncSession, client: dict, **params):
            return await func(session, client, **params)

        _tenant_jobs[name] = wrapper
        logger.debug(f"Registered tenant job: {name}")
        return wrapper
    return decorator


class TenantJobRunner:
    """
    Executes a registered job for every active client.

    Features:
    - One session per client
    - Error isolation per client
    - Bounded concurrency
    - Summary with per-client results
    """

    def __init__(
        self,
        max_concurrent: Optional[int] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        self.max_concurrent = max_concurrent or settings.JOB_MAX_CONCURRENT_TENANTS
        self.session_factory = session_factory or async_session_factory
        self._semaphore = asyncio.Semaphore(self.max_concurrent)

    async def get_active_clients(self) -> List[dict]:
        """Active merchant clients; system clients are never invoiced by jobs."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Client)
                .where(and_(Client.is_active.is_(True), Client.is_system.is_(False)))
                .order_by(Client.name)
            )
            return [
                {"id": str(client.id), "name": client.name, "short_code": client.short_code}
                for client in result.scalars().all()
            ]

    async def run_job_for_client(self, job_name: str, job_func: Callable, client: dict, **params) -> dict:
        start_time = datetime.now(timezone.utc)
        result = {
            "client_id": client["id"],
            "client": client["name"],
            "job": job_name,
            "status": "pending",
            "started_at": start_time.isoformat(),
            "error": None,
            "duration_ms": 0,
        }

        try:
            async with self._semaphore:
                async with self.session_factory() as session:
                    try:
                        outcome = await job_func(session, client, **params)
                        await session.commit()
                    except Exception:
                        await session.rollback()
                        raise
            result["status"] = "skipped" if outcome is None else "success"
            result["result"] = outcome
        except Exception as e:
            result["status"] = "failed"
            result["error"] = str(e)
            logger.error(f"Job '{job_name}' failed for client '{client['name']}': {e}")

        end_time = datetime.now(timezone.utc)
        result["duration_ms"] = int((end_time - start_time).total_seconds() * 1000)
        result["completed_at"] = end_time.isoformat()
        return result

    async def run_job(self, job_name: str, **params) -> dict:
        """Run a registered job across all active clients."""
        if job_name not in _tenant_jobs:
            raise ValueError(f"Unknown job: {job_name}. Registered: {list(_tenant_jobs.keys())}")

        job_func = _tenant_jobs[job_name]
        start_time = datetime.now(timezone.utc)
        logger.info(f"Starting tenant job: {job_name}")

        clients = await self.get_active_clients()
        if not clients:
            logger.info(f"No active clients found. Job '{job_name}' skipped.")
            return {"job": job_name, "status": "skipped", "reason": "no_active_clients", "tenant_count": 0}

        results = await asyncio.gather(
            *(self.run_job_for_client(job_name, job_func, client, **params) for client in clients)
        )
        successful = sum(1 for r in results if r["status"] == "success")
        skipped = sum(1 for r in results if r["status"] == "skipped")
        failed = sum(1 for r in results if r["status"] == "failed")

        end_time = datetime.now(timezone.utc)
        total_duration = int((end_time - start_time).total_seconds() * 1000)
        logger.info(
            f"Job '{job_name}' completed: {successful}/{len(clients)} successful, "
            f"{skipped} skipped, {failed} failed in {total_duration}ms"
        )
        return {
            "job": job_name,
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": total_duration,
            "tenant_count": len(clients),
            "successful": successful,
            "skipped": skipped,
            "failed": failed,
            "results": list(results),
        }


# Global runner instance
_runner: Optional[TenantJobRunner] = None


def get_tenant_job_runner() -> TenantJobRunner:
    """Get or create the global tenant job runner."""
    global _runner
    if _runner is None:
        _runner = TenantJobRunner()
    return _runner


async def run_tenant_job(job_name: str, **params) -> dict:
    return await get_tenant_job_runner().run_job(job_name, **params)


# ============================================================
# ACCOUNT-WIDE STAGES
# ============================================================

async def run_ingestion_pipeline(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_factory: Optional[async_sessionmaker] = None,
    provider: Optional[ProviderBillingClient] = None
) -> dict:
    """
    Ingestion, attribution, then normalization over a lookback window.

    A stage failure aborts the later stages; rows already committed stay.
    """
    session_factory = session_factory or async_session_factory
    end_date = end_date or date.today()
    start_date = start_date or end_date - timedelta(days=settings.INGEST_LOOKBACK_DAYS)
    summary: Dict[str, Any] = {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}

    async with (provider or ProviderBillingClient()) as client:
        async with session_factory() as session:
            summary["ingestion"] = await IngestionService(session, client).ingest_window(start_date, end_date)
        async with session_factory() as session:
            summary["attribution"] = await AttributionService(session, client).resolve_pending()

    async with session_factory() as session:
        normalizer = CostNormalizerService(session)
        summary["taxes"] = await normalizer.normalize_taxes()
        summary["cost_extracts"] = await normalizer.load_extract_files(
            since=start_date - timedelta(days=1)
        )

    logger.info(
        f"Pipeline {start_date} to {end_date}: {summary['ingestion']['inserted']} inserted, "
        f"{summary['attribution']['resolved']} attributed, {len(summary['cost_extracts'])} extract files"
    )
    return summary


# ============================================================
# PER-CLIENT JOBS
# ============================================================

@tenant_job("assemble_invoices")
async def assemble_invoices_job(session: AsyncSession, client: dict, invoice_date: Optional[date] = None):
    """Weekly invoice for one client; returns None when there is nothing to bill."""
    service = InvoiceAssemblerService(session)
    try:
        invoice = await service.assemble(uuid.UUID(client["id"]), invoice_date=invoice_date)
    except NothingToInvoiceError as e:
        logger.info(f"Client '{client['name']}': {e}")
        return None
    return {
        "invoice_id": str(invoice.id),
        "invoice_number": invoice.invoice_number,
        "transaction_count": invoice.transaction_count,
        "total_amount": str(invoice.total_amount),
    }


async def run_billing_cycle(invoice_date: Optional[date] = None) -> dict:
    """Full cycle: account-wide pipeline, then per-client assembly."""
    pipeline = await run_ingestion_pipeline()
    invoices = await run_tenant_job("assemble_invoices", invoice_date=invoice_date)
    return {"pipeline": pipeline, "invoices": invoices}
