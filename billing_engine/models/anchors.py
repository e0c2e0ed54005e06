"""
Anchor entity models.

Anchors are maintained by independent sync jobs and read by the attribution
resolver as join targets:
- Shipment: shipment_id -> client_id (plus shipping context for markup rules)
- Return: return_id -> client_id, original shipment link
- ReceivingOrder: warehouse receiving order (WRO) -> client_id
- Order: order_id -> client_id
- InventoryItem: inventory_id -> client_id (storage rows)
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.database import Base
from billing_engine.db_types import UUIDType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Shipment(Base):
    """Provider shipment owned by a client."""
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    shipment_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    order_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, index=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Markup rule context
    order_category: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)  # FBA, VAS, or NULL for standard
    ship_option_id: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    destination_country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    destination_state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    billable_weight_oz: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class Return(Base):
    """Provider return (RMA) owned by a client."""
    __tablename__ = "returns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    return_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )
    original_shipment_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    return_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class ReceivingOrder(Base):
    """Warehouse receiving order (WRO)."""
    __tablename__ = "receiving_orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    receiving_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class Order(Base):
    """Provider order owned by a client."""
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    store_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )


class InventoryItem(Base):
    """Inventory item (product variant) held in storage for a client."""
    __tablename__ = "inventory_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    inventory_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False
    )
