"""Shared fixtures: a throwaway SQLite database per test and row factories."""
import uuid
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine import models  # noqa: F401
from billing_engine.config import settings
from billing_engine.database import Base, build_engine
from billing_engine.models.anchors import Shipment
from billing_engine.models.client import Client
from billing_engine.models.markup_rule import MarkupRule
from billing_engine.models.transaction import (
    SettlementInvoice, Transaction, AttributionStatus, AttributionMethod
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_client(session):
    async def _make(name: str, short_code: str = None, merchant_id: str = None, **kwargs) -> Client:
        client = Client(name=name, short_code=short_code, merchant_id=merchant_id, **kwargs)
        session.add(client)
        await session.commit()
        return client
    return _make


@pytest.fixture
def make_system_clients(make_client):
    async def _make():
        payments = await make_client(settings.PAYMENTS_CLIENT_NAME, is_system=True)
        processing = await make_client(settings.PROCESSING_FEE_CLIENT_NAME, is_system=True)
        return payments, processing
    return _make


@pytest.fixture
def make_shipment(session):
    async def _make(shipment_id: str, client: Client, **kwargs) -> Shipment:
        shipment = Shipment(shipment_id=shipment_id, client_id=client.id, **kwargs)
        session.add(shipment)
        await session.commit()
        return shipment
    return _make


@pytest.fixture
def make_settlement_invoice(session):
    async def _make(provider_invoice_id: str, invoice_date: date, amount: str = "0", **kwargs) -> SettlementInvoice:
        invoice = SettlementInvoice(
            provider_invoice_id=provider_invoice_id,
            invoice_date=invoice_date,
            amount=Decimal(amount),
            **kwargs,
        )
        session.add(invoice)
        await session.commit()
        return invoice
    return _make


@pytest.fixture
def make_transaction(session):
    """
    Transaction factory.

    Passing client= creates a row that is already attributed and tax
    normalized, i.e. ready for assembly unless other fields say otherwise.
    """
    async def _make(amount: str, charge_date: date, client: Client = None, **kwargs) -> Transaction:
        values = {
            "transaction_id": f"01TX{uuid.uuid4().hex[:20].upper()}",
            "ingested_amount": Decimal(amount),
            "cost": Decimal(amount),
            "charge_date": charge_date,
            "taxes": [],
            "additional_details": {},
        }
        if client is not None:
            values.update({
                "client_id": client.id,
                "attribution_status": AttributionStatus.RESOLVED.value,
                "attribution_method": AttributionMethod.DIRECT_ANCHOR.value,
                "tax_normalized": True,
            })
        values.update(kwargs)
        tx = Transaction(**values)
        session.add(tx)
        await session.commit()
        return tx
    return _make


@pytest.fixture
def make_rule(session):
    async def _make(name: str, billing_category: str, markup_value: str, **kwargs) -> MarkupRule:
        values = {
            "name": name,
            "billing_category": billing_category,
            "markup_type": "PERCENTAGE",
            "markup_value": Decimal(markup_value),
            "priority": 0,
            "effective_from": date(2025, 1, 1),
        }
        values.update(kwargs)
        rule = MarkupRule(**values)
        session.add(rule)
        await session.commit()
        return rule
    return _make
