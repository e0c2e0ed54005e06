"""HTTP-level tests for the billing API."""
import uuid
from datetime import date

import httpx
import pytest
import pytest_asyncio

from billing_engine.database import get_db
from billing_engine.main import app

CHARGE_DATE = date(2025, 12, 3)


@pytest_asyncio.fixture
async def api(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_unknown_invoice_returns_404(api):
    response = await api.get(f"/api/v1/invoices/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["type"] == "InvoiceNotFoundError"


@pytest.mark.asyncio
async def test_generate_then_list_and_discard(api, make_client, make_transaction):
    client = await make_client("Henson Shaving", "HS")
    await make_transaction("2.00", CHARGE_DATE, client=client, fee_type="Per Pick Fee",
                           reference_type="Shipment", reference_id="1001", invoice_id_sb="SB-1")

    response = await api.post("/api/v1/invoices/generate", json={
        "client_id": str(client.id),
        "settlement_invoice_ids": ["SB-1"],
        "invoice_date": "2025-12-15",
    })

    assert response.status_code == 201
    body = response.json()
    assert body["invoice_number"] == "JPHS-0001-121525"
    assert body["status"] == "DRAFT"
    assert len(body["line_items"]) == 1

    listing = await api.get("/api/v1/invoices", params={"client_id": str(client.id), "status": "DRAFT"})
    assert listing.json()["total"] == 1

    audit = await api.get(f"/api/v1/invoices/{body['id']}/audit")
    assert audit.status_code == 200
    assert audit.json()["balanced"] is True

    discarded = await api.delete(f"/api/v1/invoices/{body['id']}")
    assert discarded.status_code == 200
    assert discarded.json()["reset_count"] == 1


@pytest.mark.asyncio
async def test_generate_with_nothing_eligible_returns_422(api, make_client):
    client = await make_client("Henson Shaving", "HS")

    response = await api.post("/api/v1/invoices/generate", json={
        "client_id": str(client.id),
        "settlement_invoice_ids": ["SB-EMPTY"],
    })

    assert response.status_code == 422
    assert response.json()["type"] == "NothingToInvoiceError"


@pytest.mark.asyncio
async def test_generate_rejects_half_open_period(api):
    response = await api.post("/api/v1/invoices/generate", json={
        "client_id": str(uuid.uuid4()),
        "period_start": "2025-12-01",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_markup_rule_lifecycle(api, make_client):
    client = await make_client("Henson Shaving", "HS")

    created = await api.post("/api/v1/markup-rules", json={
        "client_id": str(client.id),
        "name": "HS shipping",
        "billing_category": "SHIPMENTS",
        "markup_value": "15",
        "effective_from": "2025-01-01",
    })
    assert created.status_code == 201
    rule = created.json()
    assert rule["markup_type"] == "PERCENTAGE"

    listed = await api.get("/api/v1/markup-rules", params={"client_id": str(client.id)})
    assert [r["id"] for r in listed.json()] == [rule["id"]]

    deactivated = await api.post(f"/api/v1/markup-rules/{rule['id']}/deactivate", params={"reason": "repriced"})
    assert deactivated.json()["is_active"] is False

    again = await api.post(f"/api/v1/markup-rules/{rule['id']}/deactivate")
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_markup_rule_for_unknown_client(api):
    response = await api.post("/api/v1/markup-rules", json={
        "client_id": str(uuid.uuid4()),
        "name": "Ghost",
        "markup_value": "10",
        "effective_from": "2025-01-01",
    })
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_manual_attribution(api, make_client, make_transaction):
    client = await make_client("Methyl-Life", "ML", merchant_id="392333")
    tx = await make_transaction("1.00", CHARGE_DATE, reference_type="Default", reference_id="0", fee_type="Credit")

    pending = await api.get("/api/v1/pipeline/unattributed")
    assert [row["transaction_id"] for row in pending.json()] == [tx.transaction_id]

    response = await api.post(
        f"/api/v1/pipeline/transactions/{tx.id}/attribution",
        json={"client_id": str(client.id)},
    )
    assert response.status_code == 200
    assert response.json()["attribution_status"] == "RESOLVED"

    assert (await api.get("/api/v1/pipeline/unattributed")).json() == []


@pytest.mark.asyncio
async def test_cost_extract_upload(api, make_client, make_transaction):
    client = await make_client("Henson Shaving", "HS")
    await make_transaction("10.00", date(2025, 12, 22), client=client, reference_type="Shipment",
                           reference_id="3001", fee_type="Shipping", tracking_id="TRK-A")
    content = (
        "OrderID,Tracking Number,Fulfillment without Surcharge,Surcharge Applied,Insurance Amount\n"
        "3001,TRK-A,8.00,2.00,0\n"
    )

    response = await api.post(
        "/api/v1/pipeline/cost-extracts",
        files={"file": ("extras-122325.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 200
    assert response.json()["updated"] == 1

    rejected = await api.post(
        "/api/v1/pipeline/cost-extracts",
        files={"file": ("extras-122325.xlsx", b"binary", "application/octet-stream")},
    )
    assert rejected.status_code == 400
