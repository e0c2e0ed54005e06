"""API endpoints for invoice assembly, lifecycle and reconciliation."""
from typing import Optional, Dict, Any
from uuid import UUID

from fastapi import APIRouter, Query, status

from billing_engine.api.deps import DB
from billing_engine.models.invoice import InvoiceStatus
from billing_engine.schemas.billing import (
    GenerateInvoiceRequest,
    InvoiceResponse,
    InvoiceDetailResponse,
    InvoiceListResponse,
    DiscardInvoiceResponse,
    RegenerateInvoiceResponse,
    PreflightResult,
)
from billing_engine.services.invoice_assembler_service import InvoiceAssemblerService


router = APIRouter()


# ==================== Assembly ====================

@router.post(
    "/generate",
    response_model=InvoiceDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Assemble a draft invoice for one client",
)
async def generate_invoice(data: GenerateInvoiceRequest, db: DB):
    """
    Assemble a DRAFT invoice from the client's eligible transactions.

    Scope, in order of precedence:
    - settlement_invoice_ids: provider settlement invoices to bill from
    - period_start / period_end: charge-date window
    - neither: settlement invoices dated in the previous Monday-Sunday week

    Returns 422 when nothing is eligible or the client fails validation.
    """
    service = InvoiceAssemblerService(db)
    return await service.assemble(
        client_id=data.client_id,
        settlement_invoice_ids=data.settlement_invoice_ids,
        period_start=data.period_start,
        period_end=data.period_end,
        invoice_date=data.invoice_date,
    )


@router.post("/preflight", response_model=PreflightResult, summary="Validate a client before assembly")
async def preflight_invoice(data: GenerateInvoiceRequest, db: DB):
    """Report what would block or shrink an assembly, without writing anything."""
    service = InvoiceAssemblerService(db)
    return await service.preflight(
        client_id=data.client_id,
        settlement_invoice_ids=data.settlement_invoice_ids,
        period_start=data.period_start,
        period_end=data.period_end,
        invoice_date=data.invoice_date,
    )


# ==================== Queries ====================

@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    db: DB,
    client_id: Optional[UUID] = None,
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List generated invoices, newest first."""
    service = InvoiceAssemblerService(db)
    items, total = await service.list_invoices(
        client_id=client_id,
        status=invoice_status.value if invoice_status else None,
        skip=skip,
        limit=limit,
    )
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(invoice) for invoice in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{invoice_id}", response_model=InvoiceDetailResponse)
async def get_invoice(invoice_id: UUID, db: DB):
    """Get an invoice with its line items."""
    return await InvoiceAssemblerService(db).get_invoice(invoice_id)


@router.get("/{invoice_id}/audit", summary="Reconcile provider totals against an invoice")
async def get_invoice_audit(
    invoice_id: UUID,
    db: DB,
    refresh: bool = Query(False, description="Recompute instead of returning the stored report"),
) -> Dict[str, Any]:
    """
    Audit report per settlement invoice (or period) and line category.

    The stored report reflects the data at assembly time; refresh=true
    recomputes it from the current transactions.
    """
    service = InvoiceAssemblerService(db)
    invoice = await service.get_invoice(invoice_id)
    if invoice.audit_report and not refresh:
        return invoice.audit_report
    return await service.build_audit_report(invoice)


# ==================== Lifecycle ====================

@router.delete("/{invoice_id}", response_model=DiscardInvoiceResponse)
async def discard_invoice(invoice_id: UUID, db: DB):
    """
    Discard a DRAFT invoice.

    Its transactions become eligible again, unless the draft replaced an
    approved version, in which case that version and its stamps come back.
    """
    return await InvoiceAssemblerService(db).discard(invoice_id)


@router.post("/{invoice_id}/approve", response_model=InvoiceResponse)
async def approve_invoice(invoice_id: UUID, db: DB):
    """Approve a DRAFT invoice."""
    return await InvoiceAssemblerService(db).approve(invoice_id)


@router.post("/{invoice_id}/send", response_model=InvoiceResponse)
async def send_invoice(invoice_id: UUID, db: DB):
    """Mark an APPROVED invoice as sent to the client."""
    return await InvoiceAssemblerService(db).mark_sent(invoice_id)


@router.post("/{invoice_id}/regenerate", response_model=RegenerateInvoiceResponse)
async def regenerate_invoice(invoice_id: UUID, db: DB):
    """
    Rebuild an invoice from current transaction data.

    Drafts are rebuilt in place. Approved or sent invoices are superseded by
    a new draft version with the same invoice number; their recorded totals
    are left untouched.
    """
    result = await InvoiceAssemblerService(db).regenerate(invoice_id)
    return RegenerateInvoiceResponse(
        invoice=InvoiceResponse.model_validate(result["invoice"]),
        previous_invoice_id=result["previous_invoice_id"],
        new_version=result["new_version"],
        reset_count=result["reset_count"],
    )
