"""Tests for provider ingestion into the Transaction Store."""
from datetime import date
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select, func

from billing_engine.models.transaction import Transaction, SettlementInvoice, AttributionStatus
from billing_engine.services.ingestion_service import IngestionService
from billing_engine.services.provider_client import ProviderBillingClient, ProviderAPIError


async def _no_sleep(seconds: float) -> None:
    return None


def provider_row(transaction_id: str, amount: float, charge_date: str, **kwargs) -> dict:
    row = {
        "transaction_id": transaction_id,
        "amount": amount,
        "charge_date": charge_date,
        "transaction_fee": "Shipping",
        "reference_id": 1001,
        "reference_type": "Shipment",
        "transaction_type": "Charge",
        "invoice_id": None,
        "invoiced_status": False,
        "additional_details": {"TrackingId": "TRK-1"},
        "taxes": [],
    }
    row.update(kwargs)
    return row


class FakeProvider:
    """Serves a pending stream, settlement invoices and per-invoice streams."""

    def __init__(self, pending_pages, invoices=(), invoice_rows=None, fail_after_pages=None):
        self.pending_pages = pending_pages
        self.invoices = list(invoices)
        self.invoice_rows = invoice_rows or {}
        self.fail_after_pages = fail_after_pages
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path.endswith("/transactions:query"):
            index = int(request.url.params.get("Cursor") or 0)
            if self.fail_after_pages is not None and index >= self.fail_after_pages:
                return httpx.Response(400, json={"message": "provider failure"})
            next_cursor = str(index + 1) if index + 1 < len(self.pending_pages) else None
            return httpx.Response(200, json={"items": self.pending_pages[index], "next": next_cursor})
        if path.endswith("/invoices"):
            return httpx.Response(200, json={"items": self.invoices, "next": None})
        if "/invoices/" in path and path.endswith("/transactions"):
            invoice_id = path.split("/")[-2]
            return httpx.Response(200, json={"items": self.invoice_rows.get(invoice_id, []), "next": None})
        return httpx.Response(404)

    def client(self) -> ProviderBillingClient:
        return ProviderBillingClient(
            base_url="https://provider.test",
            token="test-token",
            request_delay=0,
            transport=httpx.MockTransport(self.handler),
            sleep=_no_sleep,
        )


async def count_transactions(session) -> int:
    return await session.scalar(select(func.count(Transaction.id)))


@pytest.mark.asyncio
async def test_reingesting_same_window_is_idempotent(session):
    provider = FakeProvider([
        [provider_row("T-1", 5.25, "2025-12-01"), provider_row("T-2", 3.10, "2025-12-02")],
        [provider_row("T-3", 7.00, "2025-12-03T14:22:01Z", additional_details={"TrackingId": "TRK-3"})],
    ])

    async with provider.client() as client:
        service = IngestionService(session, client)
        first = await service.ingest_window(date(2025, 12, 1), date(2025, 12, 7))
        second = await service.ingest_window(date(2025, 12, 1), date(2025, 12, 7))

    assert first["fetched"] == 3
    assert first["pages"] == 2
    assert second["inserted"] == 0
    assert second["unchanged"] == 3
    assert await count_transactions(session) == 3

    tx = await session.scalar(select(Transaction).where(Transaction.transaction_id == "T-3"))
    assert tx.charge_date == date(2025, 12, 3)
    assert tx.reference_id == "1001"
    assert tx.tracking_id == "TRK-3"
    assert tx.cost == Decimal("7.00")
    assert tx.ingested_amount == Decimal("7.00")
    assert tx.attribution_status == AttributionStatus.PENDING.value
    assert tx.tax_normalized is False


@pytest.mark.asyncio
async def test_settlement_stream_updates_settlement_fields_only(session):
    pending = provider_row("T-1", 5.25, "2025-12-01")
    settled = provider_row(
        "T-1", 5.25, "2025-12-01",
        invoice_id=8633612, invoiced_status=True, invoice_date="2025-12-08",
    )
    provider = FakeProvider(
        [[pending]],
        invoices=[{"invoice_id": 8633612, "invoice_date": "2025-12-08", "invoice_type": "Shipping", "amount": 5.25}],
        invoice_rows={"8633612": [settled]},
    )

    async with provider.client() as client:
        summary = await IngestionService(session, client).ingest_window(date(2025, 12, 1), date(2025, 12, 7))

    assert summary["settlement_invoices"] == 1
    assert summary["inserted"] == 1
    assert summary["updated"] == 1

    tx = await session.scalar(select(Transaction).where(Transaction.transaction_id == "T-1"))
    assert tx.invoice_id_sb == "8633612"
    assert tx.invoiced_status_sb is True
    assert tx.invoice_date_sb == date(2025, 12, 8)
    assert tx.client_id is None
    assert tx.invoice_id_jp is None

    settlement = await session.scalar(select(SettlementInvoice))
    assert settlement.provider_invoice_id == "8633612"
    assert settlement.amount == Decimal("5.25")


@pytest.mark.asyncio
async def test_voided_and_recreated_label_keeps_latest_charge(session):
    first_label = provider_row("T-1", 9.00, "2025-12-01", invoice_id=777)
    recreated = provider_row("T-2", 9.00, "2025-12-02", invoice_id=777)
    provider = FakeProvider([[first_label, recreated]])

    async with provider.client() as client:
        summary = await IngestionService(session, client).ingest_window(
            date(2025, 12, 1), date(2025, 12, 7), include_settlements=False
        )

    assert summary["voided"] == 1
    rows = (await session.execute(select(Transaction).order_by(Transaction.transaction_id))).scalars().all()
    assert [(tx.transaction_id, tx.is_voided) for tx in rows] == [("T-1", True), ("T-2", False)]


@pytest.mark.asyncio
async def test_malformed_rows_are_skipped(session):
    provider = FakeProvider([[
        provider_row("T-1", 5.25, "2025-12-01"),
        {"transaction_id": "T-BAD", "amount": "not-a-number", "charge_date": "2025-12-01"},
    ]])

    async with provider.client() as client:
        summary = await IngestionService(session, client).ingest_window(
            date(2025, 12, 1), date(2025, 12, 7), include_settlements=False
        )

    assert summary["skipped"] == 1
    assert await count_transactions(session) == 1


@pytest.mark.asyncio
async def test_provider_failure_keeps_committed_pages(session):
    provider = FakeProvider(
        [[provider_row("T-1", 5.25, "2025-12-01")], [provider_row("T-2", 1.00, "2025-12-02")]],
        fail_after_pages=1,
    )

    async with provider.client() as client:
        with pytest.raises(ProviderAPIError):
            await IngestionService(session, client).ingest_window(date(2025, 12, 1), date(2025, 12, 7))

    assert await count_transactions(session) == 1


@pytest.mark.asyncio
async def test_window_must_be_ordered(session):
    provider = FakeProvider([[]])
    async with provider.client() as client:
        with pytest.raises(ValueError):
            await IngestionService(session, client).ingest_window(date(2025, 12, 7), date(2025, 12, 1))
