"""
Billing API Schemas.

Pydantic schemas for invoice assembly, pipeline triggers and markup rules.
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from billing_engine.models.markup_rule import BillingCategory, MarkupType
from billing_engine.schemas.base import BaseResponseSchema, BaseCreateSchema


# ============================================================================
# INVOICE SCHEMAS
# ============================================================================

class GenerateInvoiceRequest(BaseCreateSchema):
    """Assemble a draft invoice for one client."""
    client_id: UUID
    settlement_invoice_ids: Optional[List[str]] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    invoice_date: Optional[date] = None

    @model_validator(mode='after')
    def check_period(self):
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be given together")
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


class InvoiceLineItemResponse(BaseResponseSchema):
    """Invoice line item response."""
    id: UUID
    transaction_id: UUID
    provider_transaction_id: str
    line_number: int
    line_category: str
    fee_type: Optional[str] = None
    description: Optional[str] = None
    reference_id: Optional[str] = None
    tracking_id: Optional[str] = None
    settlement_invoice_id: Optional[str] = None
    charge_date: date
    base_amount: Decimal
    surcharge: Decimal
    insurance_amount: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    markup_percentage: Decimal
    markup_rule_id: Optional[UUID] = None


class InvoiceResponse(BaseResponseSchema):
    """Generated invoice response."""
    id: UUID
    client_id: UUID
    invoice_number: str
    version: int
    status: str
    invoice_date: date
    period_start: date
    period_end: date
    subtotal: Decimal
    total_markup: Decimal
    total_amount: Decimal
    line_totals: Dict[str, Any]
    transaction_count: int
    settlement_invoice_ids: List[str]
    settlement_scoped: bool
    replaced_by: Optional[UUID] = None
    regeneration_count: int
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InvoiceDetailResponse(InvoiceResponse):
    """Invoice with its line items."""
    line_items: List[InvoiceLineItemResponse] = []


class InvoiceListResponse(BaseModel):
    """Paginated invoice list response."""
    items: List[InvoiceResponse]
    total: int
    skip: int = 0
    limit: int = 50


class DiscardInvoiceResponse(BaseModel):
    """Result of discarding a draft invoice."""
    invoice_id: UUID
    invoice_number: str
    reset_count: int
    restored_invoice_id: Optional[UUID] = None


class RegenerateInvoiceResponse(BaseModel):
    """Result of regenerating an invoice."""
    invoice: InvoiceResponse
    previous_invoice_id: UUID
    new_version: bool
    reset_count: int


class PreflightIssue(BaseModel):
    """A single preflight finding."""
    category: str
    severity: str  # critical, warning
    message: str
    count: int
    sample_ids: List[str] = []


class PreflightResult(BaseModel):
    """Preflight validation outcome for a client."""
    client_id: UUID
    passed: bool
    issues: List[PreflightIssue] = []
    warnings: List[PreflightIssue] = []
    summary: Dict[str, int] = {}


# ============================================================================
# PIPELINE SCHEMAS
# ============================================================================

class IngestWindowRequest(BaseCreateSchema):
    """Ingest provider transactions for an explicit date window."""
    start_date: date
    end_date: date
    include_settlements: bool = True

    @model_validator(mode='after')
    def check_window(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class UnattributedTransactionResponse(BaseResponseSchema):
    """Transaction awaiting manual attribution."""
    id: UUID
    transaction_id: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    fee_type: Optional[str] = None
    cost: Decimal
    charge_date: date
    invoice_id_sb: Optional[str] = None
    attribution_status: str
    additional_details: Dict[str, Any] = {}


class ManualAttributionRequest(BaseCreateSchema):
    """Assign a client to an unattributed transaction."""
    client_id: UUID


# ============================================================================
# MARKUP RULE SCHEMAS
# ============================================================================

class MarkupRuleCreate(BaseCreateSchema):
    """Schema for creating a markup rule."""
    client_id: Optional[UUID] = None
    name: str = Field(..., max_length=200)
    description: Optional[str] = None
    billing_category: Optional[BillingCategory] = None
    fee_type: Optional[str] = Field(None, max_length=100)
    order_category: Optional[str] = Field(None, max_length=30)
    ship_option_id: Optional[str] = Field(None, max_length=30)
    conditions: Optional[Dict[str, Any]] = None
    markup_type: MarkupType = MarkupType.PERCENTAGE
    markup_value: Decimal = Field(..., ge=0)
    priority: int = 0
    effective_from: date
    effective_to: Optional[date] = None


class MarkupRuleResponse(BaseResponseSchema):
    """Schema for markup rule response."""
    id: UUID
    client_id: Optional[UUID] = None
    name: str
    description: Optional[str] = None
    billing_category: Optional[str] = None
    fee_type: Optional[str] = None
    order_category: Optional[str] = None
    ship_option_id: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None
    markup_type: str
    markup_value: Decimal
    priority: int
    is_active: bool
    effective_from: date
    effective_to: Optional[date] = None
    created_at: datetime
