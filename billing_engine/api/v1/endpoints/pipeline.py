"""API endpoints for ingestion, attribution and cost normalization."""
from typing import List, Dict, Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, UploadFile, File

from billing_engine.api.deps import DB
from billing_engine.schemas.billing import (
    IngestWindowRequest,
    UnattributedTransactionResponse,
    ManualAttributionRequest,
)
from billing_engine.services.attribution_service import AttributionService
from billing_engine.services.cost_normalizer_service import CostNormalizerService
from billing_engine.services.ingestion_service import IngestionService
from billing_engine.services.provider_client import ProviderBillingClient, ProviderAPIError
from billing_engine.services.transaction_store import TransactionStore


router = APIRouter()


def _provider_failure(e: ProviderAPIError) -> HTTPException:
    return HTTPException(status_code=502, detail=f"Provider API error ({e.status_code}): {e.message}")


# ==================== Ingestion ====================

@router.post("/ingest", summary="Ingest provider transactions for a date window")
async def ingest_window(data: IngestWindowRequest, db: DB) -> Dict[str, Any]:
    """
    Pull every provider transaction touching the window and upsert it.

    Re-running the same window is idempotent. Pages committed before a
    provider failure are kept.
    """
    try:
        async with ProviderBillingClient() as provider:
            return await IngestionService(db, provider).ingest_window(
                data.start_date, data.end_date, include_settlements=data.include_settlements
            )
    except ProviderAPIError as e:
        raise _provider_failure(e)


@router.post("/settlement-invoices/{invoice_id}/ingest", summary="Re-ingest one settlement invoice")
async def ingest_settlement_invoice(invoice_id: str, db: DB) -> Dict[str, Any]:
    try:
        async with ProviderBillingClient() as provider:
            return await IngestionService(db, provider).ingest_settlement_invoice(invoice_id)
    except ProviderAPIError as e:
        raise _provider_failure(e)


# ==================== Attribution ====================

@router.post("/attribute", summary="Resolve clients for pending transactions")
async def attribute_pending(
    db: DB,
    limit: Optional[int] = Query(None, ge=1, description="Rows per committed batch"),
    backfill_returns: bool = Query(True, description="Look up unknown returns at the provider"),
) -> Dict[str, Any]:
    """Run attribution over every pending transaction; leftovers are flagged for review."""
    try:
        if backfill_returns:
            async with ProviderBillingClient() as provider:
                return await AttributionService(db, provider).resolve_pending(limit)
        return await AttributionService(db).resolve_pending(limit)
    except ProviderAPIError as e:
        raise _provider_failure(e)


@router.get("/unattributed", response_model=List[UnattributedTransactionResponse])
async def list_unattributed(
    db: DB,
    limit: int = Query(100, ge=1, le=1000),
):
    """Transactions awaiting manual attribution, oldest first."""
    return await TransactionStore(db).list_unattributed(limit=limit)


@router.get("/unattributed/report", summary="Unattributed transactions grouped for review")
async def unattributed_report(db: DB) -> Dict[str, Any]:
    return await AttributionService(db).unattributed_report()


@router.post(
    "/transactions/{transaction_id}/attribution",
    response_model=UnattributedTransactionResponse,
    summary="Assign a client manually",
)
async def assign_client(transaction_id: UUID, data: ManualAttributionRequest, db: DB):
    return await AttributionService(db).assign_manually(transaction_id, data.client_id)


# ==================== Cost Normalization ====================

@router.post("/normalize-taxes", summary="Convert costs to pre-tax amounts")
async def normalize_taxes(db: DB) -> Dict[str, int]:
    return await CostNormalizerService(db).normalize_taxes()


@router.post("/cost-extracts", summary="Apply an uploaded daily cost extract")
async def upload_cost_extract(
    db: DB,
    file: UploadFile = File(...),
) -> Dict[str, Any]:
    """
    Apply one extras-MMDDYY.csv file.

    The file date comes from the filename; rows are matched to the Shipping
    charges of the previous day. Rows whose base + surcharge disagree with
    the provider amount are reported and left untouched.
    """
    filename = file.filename or ""
    if not filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Unsupported file format. Please upload a CSV file.")

    file_content = await file.read()
    try:
        content_str = file_content.decode("utf-8")
    except UnicodeDecodeError:
        content_str = file_content.decode("latin-1")

    return await CostNormalizerService(db).apply_extract_content(content_str, filename)


@router.post("/cost-extracts/load", summary="Apply extract files from the configured directory")
async def load_cost_extracts(db: DB) -> List[Dict[str, Any]]:
    return await CostNormalizerService(db).load_extract_files()


# ==================== Jobs ====================

@router.get("/jobs", summary="Scheduled job status")
async def job_status() -> List[Dict[str, Any]]:
    from billing_engine.jobs.scheduler import get_job_status

    return get_job_status()
