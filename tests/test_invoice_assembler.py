"""Tests for invoice assembly, numbering, lifecycle and reconciliation."""
import asyncio
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, func

from billing_engine.core.exceptions import (
    InvoiceStateError,
    NothingToInvoiceError,
    PreflightValidationError,
)
from billing_engine.models.client import Client
from billing_engine.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus
from billing_engine.models.transaction import Transaction
from billing_engine.services.invoice_assembler_service import (
    InvoiceAssemblerService,
    default_period,
    format_invoice_number,
)

INVOICE_DATE = date(2025, 12, 15)
CHARGE_DATE = date(2025, 12, 3)


@dataclass
class BillingWeek:
    client: Client
    shipping: Transaction
    pick: Transaction
    storage: Transaction


@pytest_asyncio.fixture
async def week(make_client, make_settlement_invoice, make_transaction, make_rule):
    """One client with a shipping charge, a pick fee and a storage fee on settlement invoice SB-1."""
    client = await make_client("Henson Shaving", "HS", merchant_id="386350")
    await make_settlement_invoice(
        "SB-1", date(2025, 12, 8), amount="100.00",
        period_start=date(2025, 12, 1), period_end=date(2025, 12, 7),
    )
    await make_rule("Global shipping", "SHIPMENTS", "20")
    await make_rule("Global storage", "STORAGE", "10")

    shipping = await make_transaction(
        "10.00", CHARGE_DATE, client=client, invoice_id_sb="SB-1",
        reference_type="Shipment", reference_id="1001", fee_type="Shipping", tracking_id="TRK-1",
        base_cost=Decimal("8.00"), surcharge=Decimal("2.00"),
    )
    pick = await make_transaction(
        "0.50", CHARGE_DATE, client=client, invoice_id_sb="SB-1",
        reference_type="Shipment", reference_id="1001", fee_type="Per Pick Fee",
    )
    storage = await make_transaction(
        "20.00", CHARGE_DATE, client=client, invoice_id_sb="SB-1",
        reference_type="FC", reference_id="183-1234567-Pallet", fee_type="Warehousing Fee",
    )
    return BillingWeek(client, shipping, pick, storage)


async def assemble_week(session, week: BillingWeek) -> Invoice:
    return await InvoiceAssemblerService(session).assemble(
        week.client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE
    )


async def next_number(session, client_id) -> int:
    return await session.scalar(select(Client.next_invoice_number).where(Client.id == client_id))


# ============================================================================
# HELPERS
# ============================================================================

def test_invoice_number_format():
    assert format_invoice_number("hs", 7, date(2025, 12, 15)) == "JPHS-0007-121525"


def test_default_period_is_previous_monday_to_sunday():
    assert default_period(date(2025, 12, 15)) == (date(2025, 12, 8), date(2025, 12, 14))
    assert default_period(date(2025, 12, 18)) == (date(2025, 12, 8), date(2025, 12, 14))


# ============================================================================
# ASSEMBLY
# ============================================================================

@pytest.mark.asyncio
async def test_assemble_prices_lines_and_stamps_transactions(session, week):
    invoice = await assemble_week(session, week)

    assert invoice.invoice_number == "JPHS-0001-121525"
    assert invoice.status == InvoiceStatus.DRAFT.value
    assert invoice.version == 1
    assert (invoice.period_start, invoice.period_end) == (date(2025, 12, 1), date(2025, 12, 7))
    assert invoice.subtotal == Decimal("30.50")
    assert invoice.total_markup == Decimal("3.60")
    assert invoice.total_amount == Decimal("34.10")
    assert invoice.transaction_count == 3
    assert invoice.settlement_invoice_ids == ["SB-1"]

    assert [line.line_category for line in invoice.line_items] == ["Shipping", "Pick Fees", "Storage"]
    shipping_line = invoice.line_items[0]
    assert (shipping_line.base_amount, shipping_line.surcharge) == (Decimal("8.00"), Decimal("2.00"))
    assert shipping_line.markup_amount == Decimal("1.60")
    assert shipping_line.billed_amount == Decimal("11.60")
    assert invoice.line_items[1].markup_amount == Decimal("0")
    assert invoice.line_items[2].billed_amount == Decimal("22.00")
    assert invoice.line_totals["Storage"] == {"count": 1, "subtotal": "20.00", "markup": "2.00", "total": "22.00"}

    for tx in (week.shipping, week.pick, week.storage):
        assert tx.invoice_id_jp == invoice.id
        assert tx.invoiced_status_jp is True
        assert tx.invoice_date_jp == INVOICE_DATE
    assert week.shipping.markup_applied == Decimal("1.60")
    assert week.shipping.markup_percentage == Decimal("20")

    assert await next_number(session, week.client.id) == 2


@pytest.mark.asyncio
async def test_insurance_is_marked_up_at_the_shipping_rate(session, week, make_transaction):
    insured = await make_transaction(
        "5.00", CHARGE_DATE, client=week.client, invoice_id_sb="SB-1",
        reference_type="Shipment", reference_id="1002", fee_type="Shipping",
        base_cost=Decimal("5.00"), surcharge=Decimal("0"), insurance_cost=Decimal("1.00"),
    )

    invoice = await assemble_week(session, week)

    line = next(line for line in invoice.line_items if line.transaction_id == insured.id)
    assert line.insurance_amount == Decimal("1.00")
    assert line.markup_amount == Decimal("1.20")
    assert line.billed_amount == Decimal("7.20")


@pytest.mark.asyncio
async def test_ineligible_rows_are_not_billed(session, week, make_client, make_transaction):
    other_client = await make_client("Methyl-Life", "ML")
    in_scope = {"invoice_id_sb": "SB-1", "reference_type": "Shipment", "reference_id": "1001"}
    disputed = await make_transaction("1.00", CHARGE_DATE, client=week.client, fee_type="Per Pick Fee",
                                      dispute_status="OPEN", **in_scope)
    voided = await make_transaction("7.00", CHARGE_DATE, client=week.client, fee_type="Shipping",
                                    base_cost=Decimal("7.00"), surcharge=Decimal("0"), is_voided=True, **in_scope)
    zero = await make_transaction("0.00", CHARGE_DATE, client=week.client, fee_type="Per Pick Fee", **in_scope)
    untaxed = await make_transaction("3.00", CHARGE_DATE, client=week.client, fee_type="Warehousing Fee",
                                     invoice_id_sb="SB-1", reference_type="FC", reference_id="183-555-Shelf",
                                     tax_normalized=False)
    undecomposed = await make_transaction("6.00", CHARGE_DATE, client=week.client, fee_type="Shipping", **in_scope)
    await make_transaction("4.00", CHARGE_DATE, client=other_client, fee_type="Shipping",
                           base_cost=Decimal("4.00"), surcharge=Decimal("0"),
                           invoice_id_sb="SB-1", reference_type="Shipment", reference_id="2001")
    await make_transaction("9.00", CHARGE_DATE, fee_type="Credit", invoice_id_sb="SB-1",
                           reference_type="Default", reference_id="0")

    invoice = await assemble_week(session, week)

    assert invoice.transaction_count == 3
    for tx in (disputed, voided, zero, untaxed, undecomposed):
        assert tx.invoice_id_jp is None

    report = invoice.audit_report
    assert report["balanced"] is True
    section = report["sections"][0]
    assert section["scope"] == "SB-1"
    assert section["provider_invoice_amount"] == "100.00"
    assert section["other_tenants"] == 1
    assert section["unattributed"] == 1
    assert section["unattributed_amount"] == "9.00"
    shipping = section["categories"]["Shipping"]
    assert shipping["billed"] == "10.00"
    assert shipping["excluded"] == "13.00"
    assert shipping["excluded_by_reason"] == {"voided": 1, "awaiting_decomposition": 1}
    assert section["categories"]["Pick Fees"]["excluded_by_reason"] == {"disputed": 1, "zero_amount": 1}
    assert section["categories"]["Storage"]["excluded_by_reason"] == {"awaiting_tax_normalization": 1}


@pytest.mark.asyncio
async def test_audit_reports_shortfall_between_provider_rows_and_line_items(session, week):
    service = InvoiceAssemblerService(session)
    assembled = await assemble_week(session, week)
    assert assembled.audit_report["balanced"] is True

    invoice = await service.get_invoice(assembled.id)
    shipping_line = next(line for line in invoice.line_items if line.line_category == "Shipping")
    shipping_line.base_amount = Decimal("0")
    shipping_line.surcharge = Decimal("0")
    await session.commit()

    report = await service.build_audit_report(await service.get_invoice(assembled.id))

    assert report["balanced"] is False
    categories = report["sections"][0]["categories"]
    assert categories["Shipping"]["expected"] == "10.00"
    assert categories["Shipping"]["billed"] == "0.00"
    assert categories["Shipping"]["balanced"] is False
    assert categories["Storage"]["balanced"] is True


@pytest.mark.asyncio
async def test_audit_uses_shipment_order_category(session, make_client, make_shipment, make_transaction):
    client = await make_client("Henson Shaving", "HS")
    await make_shipment("4001", client, order_category="FBA")
    await make_transaction("12.00", CHARGE_DATE, client=client, invoice_id_sb="SB-1", fee_type="Shipping",
                           reference_type="Shipment", reference_id="4001",
                           base_cost=Decimal("10.00"), surcharge=Decimal("2.00"))

    invoice = await InvoiceAssemblerService(session).assemble(
        client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE
    )

    assert [line.line_category for line in invoice.line_items] == ["Fulfillment"]
    report = invoice.audit_report
    assert report["balanced"] is True
    assert list(report["sections"][0]["categories"]) == ["Fulfillment"]
    assert report["sections"][0]["categories"]["Fulfillment"]["billed"] == "12.00"


@pytest.mark.asyncio
async def test_default_scope_is_previous_weeks_settlement_invoices(
    session, make_client, make_settlement_invoice, make_transaction
):
    client = await make_client("Henson Shaving", "HS")
    await make_settlement_invoice("SB-THIS-WEEK", date(2025, 12, 8))
    await make_settlement_invoice("SB-OLD", date(2025, 12, 1))
    current = await make_transaction("2.00", CHARGE_DATE, client=client, fee_type="Per Pick Fee",
                                     reference_type="Shipment", reference_id="1001", invoice_id_sb="SB-THIS-WEEK")
    older = await make_transaction("3.00", date(2025, 11, 26), client=client, fee_type="Per Pick Fee",
                                   reference_type="Shipment", reference_id="1000", invoice_id_sb="SB-OLD")

    invoice = await InvoiceAssemblerService(session).assemble(client.id, invoice_date=INVOICE_DATE)

    assert invoice.settlement_invoice_ids == ["SB-THIS-WEEK"]
    assert (invoice.period_start, invoice.period_end) == (date(2025, 12, 8), date(2025, 12, 14))
    assert current.invoice_id_jp == invoice.id
    assert older.invoice_id_jp is None


@pytest.mark.asyncio
async def test_charge_period_scope(session, make_client, make_transaction):
    client = await make_client("Henson Shaving", "HS")
    inside = await make_transaction("2.00", date(2025, 12, 7), client=client, fee_type="Per Pick Fee",
                                    reference_type="Shipment", reference_id="1001")
    outside = await make_transaction("2.00", date(2025, 12, 8), client=client, fee_type="Per Pick Fee",
                                     reference_type="Shipment", reference_id="1002")

    invoice = await InvoiceAssemblerService(session).assemble(
        client.id, period_start=date(2025, 12, 1), period_end=date(2025, 12, 7), invoice_date=INVOICE_DATE
    )

    assert invoice.settlement_scoped is False
    assert inside.invoice_id_jp == invoice.id
    assert outside.invoice_id_jp is None


@pytest.mark.asyncio
async def test_nothing_to_invoice_does_not_consume_a_number(session, week):
    client_id = week.client.id
    with pytest.raises(NothingToInvoiceError):
        await InvoiceAssemblerService(session).assemble(
            client_id, settlement_invoice_ids=["SB-EMPTY"], invoice_date=INVOICE_DATE
        )

    assert await next_number(session, client_id) == 1
    assert await session.scalar(select(func.count(Invoice.id))) == 0


@pytest.mark.asyncio
async def test_concurrent_assembly_bills_each_transaction_once(session_factory, week):
    async def assemble_in_own_session():
        async with session_factory() as other:
            return await InvoiceAssemblerService(other).assemble(
                week.client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE
            )

    results = await asyncio.gather(assemble_in_own_session(), assemble_in_own_session(), return_exceptions=True)

    invoices = [r for r in results if isinstance(r, Invoice)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(invoices) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], NothingToInvoiceError)

    async with session_factory() as check:
        stamps = (await check.execute(select(Transaction.invoice_id_jp))).scalars().all()
        assert set(stamps) == {invoices[0].id}
        assert await check.scalar(select(func.count(Invoice.id))) == 1


@pytest.mark.asyncio
async def test_client_without_short_code_fails_preflight(session, make_client, make_transaction):
    client = await make_client("No Code Inc")
    await make_transaction("2.00", CHARGE_DATE, client=client, fee_type="Per Pick Fee",
                           reference_type="Shipment", reference_id="1001", invoice_id_sb="SB-1")
    service = InvoiceAssemblerService(session)

    preflight = await service.preflight(client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE)
    assert preflight["passed"] is False
    assert preflight["issues"][0]["category"] == "client"
    assert preflight["summary"]["eligible"] == 1

    with pytest.raises(PreflightValidationError):
        await service.assemble(client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE)


@pytest.mark.asyncio
async def test_preflight_warns_about_rows_that_will_be_left_out(session, week, make_transaction):
    await make_transaction("6.00", CHARGE_DATE, client=week.client, fee_type="Shipping", invoice_id_sb="SB-1",
                           reference_type="Shipment", reference_id="1003")
    await make_transaction("9.00", CHARGE_DATE, fee_type="Credit", invoice_id_sb="SB-1",
                           reference_type="Default", reference_id="0")

    preflight = await InvoiceAssemblerService(session).preflight(
        week.client.id, settlement_invoice_ids=["SB-1"], invoice_date=INVOICE_DATE
    )

    assert preflight["passed"] is True
    assert {w["category"] for w in preflight["warnings"]} == {"unattributed", "decomposition"}
    assert preflight["summary"]["eligible"] == 3
    assert preflight["summary"]["in_scope"] == 5


# ============================================================================
# LIFECYCLE
# ============================================================================

@pytest.mark.asyncio
async def test_discard_releases_transactions_and_keeps_numbering_monotonic(session, week):
    service = InvoiceAssemblerService(session)
    invoice = await assemble_week(session, week)

    result = await service.discard(invoice.id)

    assert result["reset_count"] == 3
    assert result["restored_invoice_id"] is None
    for tx in (week.shipping, week.pick, week.storage):
        assert tx.invoice_id_jp is None
        assert tx.billed_amount is None
    assert await session.scalar(select(func.count(Invoice.id))) == 0

    again = await assemble_week(session, week)
    assert again.invoice_number == "JPHS-0002-121525"
    assert again.transaction_count == 3


@pytest.mark.asyncio
async def test_only_drafts_can_be_discarded_or_approved(session, week):
    service = InvoiceAssemblerService(session)
    invoice = await assemble_week(session, week)
    approved = await service.approve(invoice.id)
    assert approved.status == InvoiceStatus.APPROVED.value

    with pytest.raises(InvoiceStateError):
        await service.approve(invoice.id)

    sent = await service.mark_sent(invoice.id)
    assert sent.status == InvoiceStatus.SENT.value
    assert sent.sent_at is not None


@pytest.mark.asyncio
async def test_regenerating_approved_invoice_creates_new_version(session, week, make_transaction):
    service = InvoiceAssemblerService(session)
    original = await assemble_week(session, week)
    await service.approve(original.id)

    # A late fee lands on the same settlement invoice after approval
    late = await make_transaction("1.00", CHARGE_DATE, client=week.client, fee_type="Per Pick Fee",
                                  invoice_id_sb="SB-1", reference_type="Shipment", reference_id="1001")

    result = await service.regenerate(original.id)

    replacement = result["invoice"]
    original_id, replacement_id = original.id, replacement.id
    assert result["new_version"] is True
    assert result["reset_count"] == 3
    assert replacement.invoice_number == original.invoice_number
    assert replacement.version == 2
    assert replacement.status == InvoiceStatus.DRAFT.value
    assert replacement.total_amount == Decimal("35.10")
    assert late.invoice_id_jp == replacement.id

    previous = await service.get_invoice(original_id)
    assert previous.status == InvoiceStatus.REGENERATED.value
    assert previous.replaced_by == replacement_id
    assert previous.total_amount == Decimal("34.10")

    # Discarding the replacement brings the approved version back
    discarded = await service.discard(replacement_id)
    assert discarded["restored_invoice_id"] == original_id
    assert discarded["reset_count"] == 1

    restored = await service.get_invoice(original_id)
    assert restored.status == InvoiceStatus.APPROVED.value
    assert restored.replaced_by is None
    assert week.shipping.invoice_id_jp == original_id
    assert late.invoice_id_jp is None


@pytest.mark.asyncio
async def test_discarding_replacement_restamps_rows_it_left_out(session, week):
    service = InvoiceAssemblerService(session)
    original = await assemble_week(session, week)
    original_id, pick_id = original.id, week.pick.id
    await service.approve(original_id)

    week.pick.dispute_status = "OPEN"
    await session.commit()
    result = await service.regenerate(original_id)
    assert result["invoice"].transaction_count == 2
    assert week.pick.invoice_id_jp is None

    discarded = await service.discard(result["invoice"].id)
    assert discarded["reset_count"] == 0
    assert week.pick.invoice_id_jp == original_id

    # Settling the dispute must not make the row billable a second time
    week.pick.dispute_status = None
    await session.commit()
    with pytest.raises(NothingToInvoiceError):
        await assemble_week(session, week)

    lines = await session.scalar(
        select(func.count(InvoiceLineItem.id)).where(InvoiceLineItem.transaction_id == pick_id)
    )
    assert lines == 1


@pytest.mark.asyncio
async def test_replaced_version_cannot_be_regenerated_again(session, week):
    service = InvoiceAssemblerService(session)
    original = await assemble_week(session, week)
    original_id = original.id
    await service.approve(original_id)
    await service.regenerate(original_id)

    with pytest.raises(InvoiceStateError):
        await service.regenerate(original_id)


@pytest.mark.asyncio
async def test_regenerating_draft_rebuilds_in_place_and_credit_inherits_markup(session, week, make_transaction):
    service = InvoiceAssemblerService(session)
    draft = await assemble_week(session, week)

    credit = await make_transaction("-8.00", CHARGE_DATE, client=week.client, fee_type="Credit",
                                    invoice_id_sb="SB-1", reference_type="Default", reference_id="1001")

    result = await service.regenerate(draft.id)

    rebuilt = result["invoice"]
    assert result["new_version"] is False
    assert rebuilt.id == draft.id
    assert rebuilt.version == 2
    assert rebuilt.regeneration_count == 1
    assert rebuilt.transaction_count == 4

    credit_line = next(line for line in rebuilt.line_items if line.transaction_id == credit.id)
    assert credit_line.line_category == "Credits"
    assert credit_line.markup_amount == Decimal("-1.60")
    assert credit_line.billed_amount == Decimal("-9.60")
    assert rebuilt.total_amount == Decimal("24.50")
    assert credit.invoice_id_jp == draft.id
