"""
Markup Rule Models.

Rule selection is "most conditions wins": each rule is standalone, and when
several apply the most specific one is used.
"""
import uuid
from datetime import datetime, timezone, date
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any

from sqlalchemy import (
    String, Boolean, DateTime, ForeignKey, Integer, Text, Date, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.database import Base
from billing_engine.db_types import UUIDType, JSONType, Rate
from billing_engine.core.enum_utils import enum_comment


class BillingCategory(str, Enum):
    """Markup rule scope."""
    SHIPMENTS = "SHIPMENTS"
    SHIPMENT_FEES = "SHIPMENT_FEES"
    STORAGE = "STORAGE"
    CREDITS = "CREDITS"
    RETURNS = "RETURNS"
    RECEIVING = "RECEIVING"


class MarkupType(str, Enum):
    """How markup_value is applied."""
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class MarkupRule(Base):
    """
    Per-category markup rule.

    client_id NULL means the rule applies to every client. conditions may
    hold weight_min_oz, weight_max_oz, countries, states and ship_option_ids.
    """
    __tablename__ = "markup_rules"
    __table_args__ = (
        Index('ix_markup_rules_active', 'is_active', 'billing_category'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Matching
    billing_category: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment=enum_comment(BillingCategory)
    )
    fee_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    order_category: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ship_option_id: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Markup
    markup_type: Mapped[str] = mapped_column(
        String(20),
        default=MarkupType.PERCENTAGE.value,
        nullable=False,
        comment=enum_comment(MarkupType)
    )
    markup_value: Mapped[Decimal] = mapped_column(Rate, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

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

    def __repr__(self) -> str:
        return f"<MarkupRule(name='{self.name}', {self.markup_type} {self.markup_value})>"


class MarkupRuleHistory(Base):
    """Audit trail of markup rule changes."""
    __tablename__ = "markup_rule_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    markup_rule_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("markup_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    change_type: Mapped[str] = mapped_column(String(20), nullable=False)  # CREATED, DEACTIVATED
    previous_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    change_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
