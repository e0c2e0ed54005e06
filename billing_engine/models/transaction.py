"""
Transaction Store Models.

This module holds the normalized provider billing records:
- SettlementInvoice: provider-issued invoice grouping closed transactions
- Transaction: one provider billing row, attributed and normalized in place

Billing fields (client_id, cost decomposition, invoice_id_jp) are written
once and only reset by explicit invoice discard/regeneration.
"""
import uuid
from datetime import datetime, timezone, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    String, Boolean, DateTime, ForeignKey, Date, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.database import Base
from billing_engine.db_types import UUIDType, JSONType, Money, Rate
from billing_engine.core.enum_utils import enum_comment


# ============================================================================
# ENUMS
# ============================================================================

class ReferenceType(str, Enum):
    """How a provider reference_id must be interpreted (provider spelling)."""
    SHIPMENT = "Shipment"
    RETURN = "Return"
    WRO = "WRO"
    URO = "URO"
    FC = "FC"                         # Storage: "<facility>-<inventory>-<location>"
    TICKET = "TicketNumber"
    DEFAULT = "Default"               # Untyped, reference_id often "0"


class TransactionType(str, Enum):
    """Provider transaction type."""
    CHARGE = "Charge"
    REFUND = "Refund"
    CREDIT = "Credit"
    PAYMENT = "Payment"


class AttributionStatus(str, Enum):
    """Tenant attribution state of a transaction."""
    PENDING = "PENDING"               # Not yet attempted
    RESOLVED = "RESOLVED"
    UNRESOLVED = "UNRESOLVED"         # Flagged for manual review


class AttributionMethod(str, Enum):
    """Which resolution strategy assigned the client."""
    DIRECT_ANCHOR = "DIRECT_ANCHOR"
    SYSTEM_CLIENT = "SYSTEM_CLIENT"
    SIBLING_INVOICE = "SIBLING_INVOICE"
    FREE_TEXT = "FREE_TEXT"
    RETURN_BACKFILL = "RETURN_BACKFILL"
    MANUAL = "MANUAL"


# Well-known provider fee names
SHIPPING_FEE = "Shipping"
CREDIT_FEE = "Credit"
PAYMENT_FEE = "Payment"
CC_PROCESSING_FEE = "Credit Card Processing Fee"


# ============================================================================
# MODELS
# ============================================================================

class SettlementInvoice(Base):
    """
    Provider settlement invoice.

    Created when the provider closes billing for a period. One settlement
    invoice spans every merchant under the provider account, so several
    generated invoices may draw from it.
    """
    __tablename__ = "settlement_invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    provider_invoice_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True
    )
    invoice_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # Shipping, WarehouseStorage, Payment...
    invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

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


class Transaction(Base):
    """
    Normalized provider billing transaction.

    Upserted by transaction_id. A row with invoice_id_jp set is billed and
    never re-selected for assembly.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        Index('ix_transactions_client_unbilled', 'client_id', 'invoice_id_jp'),
        Index('ix_transactions_reference', 'reference_type', 'reference_id'),
        Index('ix_transactions_duplicate_key', 'reference_id', 'tracking_id', 'invoice_id_sb'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Provider identity (time-orderable ULID)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reference_type: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment=enum_comment(ReferenceType)
    )
    fee_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    transaction_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Amounts
    ingested_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # Raw provider amount
    cost: Mapped[Decimal] = mapped_column(Money, nullable=False)  # Pre-tax billable amount
    base_cost: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    surcharge: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    insurance_cost: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    taxes: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)
    tax_normalized: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    charge_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    fulfillment_center: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    additional_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    # Attribution
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    merchant_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    attribution_status: Mapped[str] = mapped_column(
        String(20),
        default=AttributionStatus.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(AttributionStatus)
    )
    attribution_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    attributed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provider settlement
    invoice_id_sb: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    invoiced_status_sb: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    invoice_date_sb: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Generated invoice stamp
    invoice_id_jp: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    invoiced_status_jp: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    invoice_date_jp: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    markup_applied: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    billed_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    markup_percentage: Mapped[Optional[Decimal]] = mapped_column(Rate, nullable=True)
    markup_rule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("markup_rules.id", ondelete="SET NULL"),
        nullable=True
    )

    # Exclusions
    dispute_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    is_voided: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

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

    @property
    def is_billed(self) -> bool:
        return self.invoice_id_jp is not None

    @property
    def tax_total(self) -> Decimal:
        """Sum of itemized taxes."""
        total = Decimal("0")
        for tax in self.taxes or []:
            amount = tax.get("amount") if isinstance(tax, dict) else None
            if amount is not None:
                total += Decimal(str(amount))
        return total

    def __repr__(self) -> str:
        return (
            f"<Transaction(transaction_id='{self.transaction_id}', "
            f"reference_type='{self.reference_type}', fee_type='{self.fee_type}', cost={self.cost})>"
        )
