"""
Client (tenant) model.

A client owns transactions and receives generated invoices. System clients
are internal pseudo-tenants that collect provider rows with no merchant
owner (payments, card processing fees).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.database import Base
from billing_engine.db_types import UUIDType


class Client(Base):
    """Tenant receiving generated invoices."""
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)

    # Invoice numbering prefix, e.g. "HS" -> JPHS-0001-120125
    short_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Provider merchant/user id
    merchant_id: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        unique=True
    )

    # Monotonic counter, read and advanced under SELECT ... FOR UPDATE
    next_invoice_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

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
        return f"<Client(name='{self.name}', short_code='{self.short_code}')>"
