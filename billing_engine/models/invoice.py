"""
Generated Invoice Models.

- Invoice: tenant-facing invoice assembled from attributed transactions
- InvoiceLineItem: one billed transaction on an invoice

The line items are the authoritative record of which transactions an
invoice stamped; discard and regeneration reset exactly that set.
"""
import uuid
from datetime import datetime, timezone, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    String, Boolean, DateTime, ForeignKey, Integer, Date, Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.database import Base
from billing_engine.db_types import UUIDType, JSONType, Money, Rate
from billing_engine.core.enum_utils import enum_comment


# ============================================================================
# ENUMS
# ============================================================================

class InvoiceStatus(str, Enum):
    """Generated invoice status."""
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SENT = "SENT"
    REGENERATED = "REGENERATED"       # Superseded by the version in replaced_by


class LineCategory(str, Enum):
    """Invoice line categories."""
    SHIPPING = "Shipping"
    FULFILLMENT = "Fulfillment"
    PICK_FEES = "Pick Fees"
    B2B_FEES = "B2B Fees"
    STORAGE = "Storage"
    RETURNS = "Returns"
    RECEIVING = "Receiving"
    CREDITS = "Credits"
    ADDITIONAL_SERVICES = "Additional Services"


# ============================================================================
# MODELS
# ============================================================================

class Invoice(Base):
    """
    Generated invoice.

    invoice_number is assigned once and shared by every version of the same
    invoice. Totals of a non-draft version are never rewritten.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint('client_id', 'invoice_number', 'version', name='uq_invoice_number_version'),
        Index('ix_invoices_client_status', 'client_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(
        String(30),
        default=InvoiceStatus.DRAFT.value,
        nullable=False,
        comment=enum_comment(InvoiceStatus)
    )

    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_markup: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    line_totals: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Selection scope: settlement invoice ids, or the charge-date period
    settlement_scoped: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Provider settlement invoices the billed rows belong to
    settlement_invoice_ids: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Reconciliation of expected vs billed totals
    audit_report: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Versioning
    replaced_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True
    )
    regeneration_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    line_items: Mapped[List["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.line_number"
    )

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', version={self.version}, status='{self.status}')>"


class InvoiceLineItem(Base):
    """One transaction billed on a generated invoice."""
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        Index('ix_invoice_line_items_transaction', 'transaction_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False
    )
    provider_transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    line_category: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment=enum_comment(LineCategory)
    )
    fee_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    settlement_invoice_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    charge_date: Mapped[date] = mapped_column(Date, nullable=False)

    # base_amount + surcharge + insurance_amount is the provider cost;
    # billed_amount adds markup_amount on top
    base_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    surcharge: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    insurance_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    markup_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    billed_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    markup_percentage: Mapped[Decimal] = mapped_column(Rate, default=Decimal("0"), nullable=False)
    markup_rule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("markup_rules.id", ondelete="SET NULL"),
        nullable=True
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")
