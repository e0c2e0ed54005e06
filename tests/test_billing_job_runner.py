"""Tests for the per-client job runner and the weekly invoice job."""
from datetime import date
from decimal import Decimal

import pytest

from billing_engine.jobs.billing_job_runner import TenantJobRunner, tenant_job


@pytest.mark.asyncio
async def test_weekly_invoices_run_per_client(
    session_factory, make_client, make_system_clients, make_settlement_invoice, make_transaction
):
    await make_system_clients()
    billed = await make_client("Henson Shaving", "HS")
    await make_client("Methyl-Life", "ML")
    await make_client("No Code Inc")
    await make_settlement_invoice("SB-1", date(2025, 12, 8))
    await make_transaction("2.00", date(2025, 12, 3), client=billed, fee_type="Per Pick Fee",
                           reference_type="Shipment", reference_id="1001", invoice_id_sb="SB-1")

    runner = TenantJobRunner(max_concurrent=1, session_factory=session_factory)
    summary = await runner.run_job("assemble_invoices", invoice_date=date(2025, 12, 15))

    assert summary["status"] == "completed"
    assert summary["tenant_count"] == 3
    assert summary["successful"] == 1
    assert summary["skipped"] == 1
    assert summary["failed"] == 1

    by_client = {r["client"]: r for r in summary["results"]}
    assert by_client["Henson Shaving"]["result"]["invoice_number"] == "JPHS-0001-121525"
    assert Decimal(by_client["Henson Shaving"]["result"]["total_amount"]) == Decimal("2.00")
    assert by_client["Methyl-Life"]["status"] == "skipped"
    assert by_client["No Code Inc"]["status"] == "failed"


@pytest.mark.asyncio
async def test_unknown_job_is_rejected(session_factory):
    with pytest.raises(ValueError):
        await TenantJobRunner(session_factory=session_factory).run_job("does_not_exist")


@pytest.mark.asyncio
async def test_no_clients_skips_job(session_factory):
    @tenant_job("noop_for_test")
    async def noop(session, client):
        return {"ok": True}

    summary = await TenantJobRunner(session_factory=session_factory).run_job("noop_for_test")
    assert summary["status"] == "skipped"
    assert summary["tenant_count"] == 0
