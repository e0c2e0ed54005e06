"""
Invoice Assembler Service.

Builds tenant-facing invoices from attributed, normalized transactions:
- Eligible selection per tenant, by settlement invoice ids or charge period
- Line categorization and markup
- Invoice numbering JP{short_code}-{NNNN}-{MMDDYY}
- Stamping every billed transaction with the invoice id
- Discard, approval, regeneration with versioning
- Preflight validation and the reconciliation audit report

Assembly for one tenant is serialized by an in-process lock per tenant plus
a row lock on the client. Selection, invoice row, line items and stamps are
written in one DB transaction and rolled back together.
"""
import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Sequence, Set, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billing_engine.core.enum_utils import get_enum_value, status_in
from billing_engine.core.exceptions import (
    ClientNotFoundError,
    InvoiceNotFoundError,
    InvoiceStateError,
    NothingToInvoiceError,
    PreflightValidationError,
)
from billing_engine.models.anchors import Shipment
from billing_engine.models.client import Client
from billing_engine.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus, LineCategory
from billing_engine.models.markup_rule import MarkupRule, BillingCategory
from billing_engine.models.transaction import (
    Transaction, SettlementInvoice, ReferenceType, CREDIT_FEE, SHIPPING_FEE
)
from billing_engine.services.attribution_service import parse_storage_reference
from billing_engine.services.markup_engine import (
    MarkupContext,
    ZERO,
    CENT,
    apply_percentage,
    calculate_markup,
    find_matching_rule,
    load_rules,
    quantize_money,
    shipment_fee_type,
    weight_bracket,
)
from billing_engine.services.transaction_store import _chunks

logger = logging.getLogger(__name__)

FBA_ORDER_CATEGORY = "FBA"

# Line order on the invoice
LINE_ORDER = [
    LineCategory.SHIPPING,
    LineCategory.FULFILLMENT,
    LineCategory.PICK_FEES,
    LineCategory.B2B_FEES,
    LineCategory.STORAGE,
    LineCategory.RETURNS,
    LineCategory.RECEIVING,
    LineCategory.CREDITS,
    LineCategory.ADDITIONAL_SERVICES,
]

SAMPLE_SIZE = 10


# ============================================================================
# TENANT SERIALIZATION
# ============================================================================

_tenant_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[uuid.UUID, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def tenant_lock(client_id: uuid.UUID) -> asyncio.Lock:
    """Assembly lock for one tenant on the running event loop."""
    locks = _tenant_locks.setdefault(asyncio.get_running_loop(), {})
    lock = locks.get(client_id)
    if lock is None:
        lock = locks[client_id] = asyncio.Lock()
    return lock


# ============================================================================
# CATEGORIZATION & NUMBERING
# ============================================================================

@dataclass(frozen=True)
class LineClassification:
    line_category: LineCategory
    billing_category: BillingCategory


@dataclass
class LineAmounts:
    base_amount: Decimal
    surcharge: Decimal
    insurance_amount: Decimal
    markup_amount: Decimal
    billed_amount: Decimal
    markup_percentage: Decimal
    rule_id: Optional[uuid.UUID] = None

    @property
    def cost(self) -> Decimal:
        return self.base_amount + self.surcharge + self.insurance_amount


def _fee_line_category(fee_type: str) -> LineCategory:
    if fee_type.startswith("B2B"):
        return LineCategory.B2B_FEES
    if "Pick" in fee_type:
        return LineCategory.PICK_FEES
    return LineCategory.ADDITIONAL_SERVICES


def categorize(tx: Transaction, order_category: Optional[str] = None) -> LineClassification:
    """Invoice line category and markup billing category of a transaction."""
    fee_type = tx.fee_type or ""
    reference_type = tx.reference_type

    if fee_type == CREDIT_FEE:
        return LineClassification(LineCategory.CREDITS, BillingCategory.CREDITS)

    if reference_type == ReferenceType.SHIPMENT.value:
        if fee_type == SHIPPING_FEE:
            line = LineCategory.FULFILLMENT if order_category == FBA_ORDER_CATEGORY else LineCategory.SHIPPING
            return LineClassification(line, BillingCategory.SHIPMENTS)
        return LineClassification(_fee_line_category(fee_type), BillingCategory.SHIPMENT_FEES)

    if reference_type == ReferenceType.FC.value:
        return LineClassification(LineCategory.STORAGE, BillingCategory.STORAGE)

    if reference_type == ReferenceType.RETURN.value:
        return LineClassification(LineCategory.RETURNS, BillingCategory.RETURNS)

    if reference_type in (ReferenceType.WRO.value, ReferenceType.URO.value) or "Receiving" in fee_type:
        return LineClassification(LineCategory.RECEIVING, BillingCategory.RECEIVING)

    if reference_type == ReferenceType.TICKET.value:
        return LineClassification(_fee_line_category(fee_type), BillingCategory.SHIPMENT_FEES)

    return LineClassification(LineCategory.ADDITIONAL_SERVICES, BillingCategory.SHIPMENT_FEES)


def is_shipping_charge(tx: Transaction) -> bool:
    return tx.reference_type == ReferenceType.SHIPMENT.value and tx.fee_type == SHIPPING_FEE


def billable_cost(tx: Transaction) -> Decimal:
    """Provider cost a transaction contributes to an invoice."""
    if is_shipping_charge(tx) and tx.insurance_cost:
        return tx.cost + tx.insurance_cost
    return tx.cost


def format_invoice_number(short_code: str, sequence: int, invoice_date: date) -> str:
    return f"JP{short_code.upper()}-{sequence:04d}-{invoice_date.strftime('%m%d%y')}"


def default_period(invoice_date: date) -> Tuple[date, date]:
    """Monday to Sunday week before the invoice date's week."""
    week_start = invoice_date - timedelta(days=invoice_date.weekday()) - timedelta(days=7)
    return week_start, week_start + timedelta(days=6)


def _order_category(tx: Transaction, shipment: Optional[Shipment]) -> Optional[str]:
    category = (tx.additional_details or {}).get("OrderCategory")
    if category:
        return category
    return shipment.order_category if shipment is not None else None


def _describe(tx: Transaction, classification: LineClassification, shipment: Optional[Shipment]) -> str:
    fee = tx.fee_type or classification.line_category.value
    if classification.line_category == LineCategory.STORAGE:
        location = parse_storage_reference(tx.reference_id).location_type
        return f"{fee} - {location}" if location else fee
    if classification.billing_category == BillingCategory.SHIPMENTS:
        parts = [fee, f"Shipment {tx.reference_id}"]
        if shipment is not None and shipment.billable_weight_oz is not None:
            parts.append(weight_bracket(shipment.billable_weight_oz))
        return " - ".join(parts)
    if tx.reference_id and tx.reference_id != "0":
        return f"{fee} - {tx.reference_type} {tx.reference_id}"
    return fee


def _clear_stamp(tx: Transaction) -> None:
    tx.invoice_id_jp = None
    tx.invoiced_status_jp = False
    tx.invoice_date_jp = None
    tx.markup_applied = None
    tx.billed_amount = None
    tx.markup_percentage = None
    tx.markup_rule_id = None


def _stamp_from_line(tx: Transaction, invoice: Invoice, line: InvoiceLineItem) -> None:
    tx.invoice_id_jp = invoice.id
    tx.invoiced_status_jp = True
    tx.invoice_date_jp = invoice.invoice_date
    tx.markup_applied = line.markup_amount
    tx.billed_amount = line.billed_amount
    tx.markup_percentage = line.markup_percentage
    tx.markup_rule_id = line.markup_rule_id


def _money(value: Decimal) -> str:
    return str(quantize_money(value))


def _eligibility_conditions(client_id: uuid.UUID) -> list:
    """Row-level conditions every billed transaction must satisfy."""
    return [
        Transaction.client_id == client_id,
        Transaction.dispute_status.is_(None),
        Transaction.is_voided.is_(False),
        Transaction.invoice_id_jp.is_(None),
        Transaction.tax_normalized.is_(True),
        Transaction.cost != 0,
        # Shipping charges wait for their decomposition
        or_(
            Transaction.reference_type.is_(None),
            Transaction.reference_type != ReferenceType.SHIPMENT.value,
            Transaction.fee_type.is_(None),
            Transaction.fee_type != SHIPPING_FEE,
            Transaction.base_cost.is_not(None),
        ),
    ]


@dataclass
class Scope:
    """What an invoice selects from."""
    settlement_invoice_ids: Optional[List[str]]
    period_start: date
    period_end: date

    @property
    def settlement_scoped(self) -> bool:
        return self.settlement_invoice_ids is not None

    def condition(self):
        if self.settlement_scoped:
            return Transaction.invoice_id_sb.in_(self.settlement_invoice_ids)
        return and_(Transaction.charge_date >= self.period_start, Transaction.charge_date <= self.period_end)


# ============================================================================
# SERVICE
# ============================================================================

class InvoiceAssemblerService:
    """Service for generated invoice assembly and lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        """Invoice with line items loaded."""
        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.line_items))
            .where(Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    async def list_invoices(
        self,
        client_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[Invoice], int]:
        query = select(Invoice)
        count_query = select(func.count(Invoice.id))
        if client_id:
            query = query.where(Invoice.client_id == client_id)
            count_query = count_query.where(Invoice.client_id == client_id)
        if status:
            status = get_enum_value(status)
            query = query.where(Invoice.status == status)
            count_query = count_query.where(Invoice.status == status)

        total = await self.db.scalar(count_query) or 0
        query = query.order_by(Invoice.created_at.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def _lock_client(self, client_id: uuid.UUID) -> Client:
        """Load and row-lock the client; batch-level problems abort assembly."""
        client = await self.db.scalar(
            select(Client).where(Client.id == client_id).with_for_update()
        )
        if client is None:
            raise ClientNotFoundError(f"Client {client_id} not found")
        if not client.is_active:
            raise PreflightValidationError(f"Client {client.name} is inactive")
        if not client.short_code:
            raise PreflightValidationError(f"Client {client.name} has no short code for invoice numbering")
        return client

    async def _resolve_scope(
        self,
        settlement_invoice_ids: Optional[Sequence[str]],
        period_start: Optional[date],
        period_end: Optional[date],
        invoice_date: date
    ) -> Scope:
        if settlement_invoice_ids:
            ids = sorted({str(i) for i in settlement_invoice_ids})
            start, end = period_start, period_end
            if start is None or end is None:
                bounds = await self.db.execute(
                    select(
                        func.min(func.coalesce(SettlementInvoice.period_start, SettlementInvoice.invoice_date)),
                        func.max(func.coalesce(SettlementInvoice.period_end, SettlementInvoice.invoice_date)),
                    ).where(SettlementInvoice.provider_invoice_id.in_(ids))
                )
                start, end = bounds.one()
            if start is None or end is None:
                start, end = default_period(invoice_date)
            return Scope(ids, start, end)

        if period_start and period_end:
            return Scope(None, period_start, period_end)

        start, end = default_period(invoice_date)
        result = await self.db.execute(
            select(SettlementInvoice.provider_invoice_id)
            .where(and_(SettlementInvoice.invoice_date >= start, SettlementInvoice.invoice_date <= end))
            .order_by(SettlementInvoice.provider_invoice_id)
        )
        return Scope(list(result.scalars().all()), start, end)

    async def _select_eligible(
        self,
        client_id: uuid.UUID,
        scope_condition,
        extra_ids: Sequence[uuid.UUID] = ()
    ) -> List[Transaction]:
        condition = scope_condition
        if extra_ids:
            condition = or_(scope_condition, Transaction.id.in_(list(extra_ids)))
        result = await self.db.execute(
            select(Transaction)
            .where(and_(*_eligibility_conditions(client_id), condition))
            .order_by(Transaction.charge_date, Transaction.transaction_id)
        )
        return list(result.scalars().all())

    async def _next_version(self, client_id: uuid.UUID, invoice_number: str) -> int:
        current = await self.db.scalar(
            select(func.max(Invoice.version)).where(
                and_(Invoice.client_id == client_id, Invoice.invoice_number == invoice_number)
            )
        )
        return (current or 0) + 1

    # =========================================================================
    # PRICING
    # =========================================================================

    async def _load_shipments(self, transactions: Sequence[Transaction]) -> Dict[str, Shipment]:
        ids = sorted({
            tx.reference_id for tx in transactions
            if tx.reference_type == ReferenceType.SHIPMENT.value and tx.reference_id
        })
        shipments: Dict[str, Shipment] = {}
        for batch in _chunks(ids):
            result = await self.db.execute(select(Shipment).where(Shipment.shipment_id.in_(list(batch))))
            for shipment in result.scalars().all():
                shipments[shipment.shipment_id] = shipment
        return shipments

    async def _prior_shipping_markups(
        self,
        client_id: uuid.UUID,
        references: Set[str]
    ) -> Dict[str, Tuple[Decimal, Decimal, Optional[uuid.UUID]]]:
        """Base and markup of shipping charges billed earlier, for credit matching."""
        markups: Dict[str, Tuple[Decimal, Decimal, Optional[uuid.UUID]]] = {}
        for batch in _chunks(sorted(references)):
            result = await self.db.execute(
                select(Transaction).where(
                    and_(
                        Transaction.client_id == client_id,
                        Transaction.reference_type == ReferenceType.SHIPMENT.value,
                        Transaction.fee_type == SHIPPING_FEE,
                        Transaction.reference_id.in_(list(batch)),
                        Transaction.ingested_amount > 0,
                    )
                )
            )
            for tx in result.scalars().all():
                base = tx.base_cost if tx.base_cost is not None else tx.cost
                if tx.is_billed and tx.markup_percentage is not None:
                    markups[tx.reference_id] = (base, tx.markup_percentage, tx.markup_rule_id)
                else:
                    markups.setdefault(tx.reference_id, (base, ZERO, None))
        return markups

    @staticmethod
    def _price_shipment(
        tx: Transaction,
        shipment: Optional[Shipment],
        order_category: Optional[str],
        client_id: uuid.UUID,
        rules: Sequence[MarkupRule]
    ) -> LineAmounts:
        """Markup on base cost; surcharge passes through; insurance at the same rate."""
        base = tx.base_cost if tx.base_cost is not None else tx.cost
        surcharge = tx.surcharge or ZERO
        insurance = tx.insurance_cost or ZERO
        context = MarkupContext(
            client_id=client_id,
            billing_category=BillingCategory.SHIPMENTS,
            fee_type=shipment_fee_type(order_category),
            order_category=order_category,
            ship_option_id=shipment.ship_option_id if shipment else None,
            weight_oz=shipment.billable_weight_oz if shipment else None,
            state=shipment.destination_state if shipment else None,
            country=shipment.destination_country if shipment else None,
        )
        result = calculate_markup(base, find_matching_rule(rules, context))
        markup = result.markup_amount + apply_percentage(insurance, result.markup_percentage)
        return LineAmounts(
            base_amount=result.base_amount,
            surcharge=quantize_money(surcharge),
            insurance_amount=quantize_money(insurance),
            markup_amount=markup,
            billed_amount=quantize_money(result.base_amount + surcharge + insurance + markup),
            markup_percentage=result.markup_percentage,
            rule_id=result.rule_id,
        )

    @staticmethod
    def _price_fee(
        tx: Transaction,
        classification: LineClassification,
        client_id: uuid.UUID,
        rules: Sequence[MarkupRule],
        shipping_markups: Dict[str, Tuple[Decimal, Decimal, Optional[uuid.UUID]]]
    ) -> LineAmounts:
        if classification.line_category == LineCategory.CREDITS and tx.reference_id in shipping_markups:
            base, percentage, rule_id = shipping_markups[tx.reference_id]
            # A credit refunding a whole shipping charge carries that charge's markup
            if abs(abs(tx.cost) - base) <= CENT:
                markup = apply_percentage(tx.cost, percentage)
                return LineAmounts(
                    base_amount=quantize_money(tx.cost),
                    surcharge=ZERO,
                    insurance_amount=ZERO,
                    markup_amount=markup,
                    billed_amount=quantize_money(tx.cost + markup),
                    markup_percentage=percentage,
                    rule_id=rule_id,
                )

        context = MarkupContext(
            client_id=client_id,
            billing_category=classification.billing_category,
            fee_type=tx.fee_type,
        )
        result = calculate_markup(tx.cost, find_matching_rule(rules, context))
        return LineAmounts(
            base_amount=result.base_amount,
            surcharge=ZERO,
            insurance_amount=ZERO,
            markup_amount=result.markup_amount,
            billed_amount=result.billed_amount,
            markup_percentage=result.markup_percentage,
            rule_id=result.rule_id,
        )

    async def _bill(self, invoice: Invoice, transactions: List[Transaction]) -> None:
        """Create line items, stamp transactions and total the invoice."""
        rules = await load_rules(self.db, invoice.client_id, invoice.invoice_date)
        shipments = await self._load_shipments(transactions)

        classified = []
        for tx in transactions:
            shipment = shipments.get(tx.reference_id) if tx.reference_type == ReferenceType.SHIPMENT.value else None
            order_category = _order_category(tx, shipment)
            classified.append((tx, shipment, order_category, categorize(tx, order_category)))
        classified.sort(key=lambda item: (
            LINE_ORDER.index(item[3].line_category), item[0].charge_date, item[0].transaction_id
        ))

        credit_refs = {
            tx.reference_id for tx, _, _, c in classified
            if c.line_category == LineCategory.CREDITS and tx.reference_id and tx.reference_id != "0"
        }
        shipping_markups = await self._prior_shipping_markups(invoice.client_id, credit_refs) if credit_refs else {}

        # Shipments first so credits on the same invoice inherit their markup
        priced: Dict[uuid.UUID, LineAmounts] = {}
        for tx, shipment, order_category, classification in classified:
            if classification.billing_category != BillingCategory.SHIPMENTS:
                continue
            amounts = self._price_shipment(tx, shipment, order_category, invoice.client_id, rules)
            priced[tx.id] = amounts
            if tx.reference_id and amounts.base_amount > 0:
                shipping_markups[tx.reference_id] = (amounts.base_amount, amounts.markup_percentage, amounts.rule_id)
        for tx, shipment, order_category, classification in classified:
            if tx.id not in priced:
                priced[tx.id] = self._price_fee(tx, classification, invoice.client_id, rules, shipping_markups)

        totals: Dict[str, Dict[str, Any]] = {}
        subtotal = total_markup = total_amount = ZERO
        for line_number, (tx, shipment, order_category, classification) in enumerate(classified, start=1):
            amounts = priced[tx.id]
            line = InvoiceLineItem(
                invoice_id=invoice.id,
                transaction_id=tx.id,
                provider_transaction_id=tx.transaction_id,
                line_number=line_number,
                line_category=classification.line_category.value,
                fee_type=tx.fee_type,
                description=_describe(tx, classification, shipment)[:255],
                reference_id=tx.reference_id,
                tracking_id=tx.tracking_id,
                settlement_invoice_id=tx.invoice_id_sb,
                charge_date=tx.charge_date,
                base_amount=amounts.base_amount,
                surcharge=amounts.surcharge,
                insurance_amount=amounts.insurance_amount,
                markup_amount=amounts.markup_amount,
                billed_amount=amounts.billed_amount,
                markup_percentage=amounts.markup_percentage,
                markup_rule_id=amounts.rule_id,
            )
            invoice.line_items.append(line)
            _stamp_from_line(tx, invoice, line)

            bucket = totals.setdefault(
                classification.line_category.value,
                {"count": 0, "subtotal": ZERO, "markup": ZERO, "total": ZERO}
            )
            bucket["count"] += 1
            bucket["subtotal"] += amounts.cost
            bucket["markup"] += amounts.markup_amount
            bucket["total"] += amounts.billed_amount
            subtotal += amounts.cost
            total_markup += amounts.markup_amount
            total_amount += amounts.billed_amount

        invoice.subtotal = quantize_money(subtotal)
        invoice.total_markup = quantize_money(total_markup)
        invoice.total_amount = quantize_money(total_amount)
        invoice.line_totals = {
            category: {
                "count": bucket["count"],
                "subtotal": _money(bucket["subtotal"]),
                "markup": _money(bucket["markup"]),
                "total": _money(bucket["total"]),
            }
            for category, bucket in totals.items()
        }
        invoice.transaction_count = len(classified)
        invoice.settlement_invoice_ids = sorted({tx.invoice_id_sb for tx in transactions if tx.invoice_id_sb})
        await self.db.flush()

    # =========================================================================
    # ASSEMBLY
    # =========================================================================

    async def assemble(
        self,
        client_id: uuid.UUID,
        settlement_invoice_ids: Optional[Sequence[str]] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        invoice_date: Optional[date] = None
    ) -> Invoice:
        """
        Assemble a DRAFT invoice for one client.

        Scope is the given settlement invoice ids, else the given charge
        period, else the settlement invoices dated in the week before
        invoice_date. Raises NothingToInvoiceError when no transaction is
        eligible.
        """
        invoice_date = invoice_date or date.today()

        async with tenant_lock(client_id):
            try:
                client = await self._lock_client(client_id)
                scope = await self._resolve_scope(settlement_invoice_ids, period_start, period_end, invoice_date)
                if scope.settlement_scoped and not scope.settlement_invoice_ids:
                    raise NothingToInvoiceError(
                        f"No settlement invoices dated {scope.period_start} to {scope.period_end}"
                    )

                transactions = await self._select_eligible(client.id, scope.condition())
                if not transactions:
                    raise NothingToInvoiceError(f"Nothing to invoice for client {client.name}")

                invoice = Invoice(
                    client_id=client.id,
                    invoice_number=format_invoice_number(client.short_code, client.next_invoice_number, invoice_date),
                    version=1,
                    status=InvoiceStatus.DRAFT.value,
                    invoice_date=invoice_date,
                    period_start=scope.period_start,
                    period_end=scope.period_end,
                    settlement_scoped=scope.settlement_scoped,
                    line_items=[],
                )
                client.next_invoice_number += 1
                self.db.add(invoice)
                await self.db.flush()

                await self._bill(invoice, transactions)
                invoice.audit_report = await self.build_audit_report(invoice)
                await self.db.commit()
            except BaseException:
                # Includes cancellation: no invoice without stamps or stamps without invoice
                await self.db.rollback()
                raise

        logger.info(
            f"Assembled invoice {invoice.invoice_number} for {client.name}: "
            f"{invoice.transaction_count} transactions, total {invoice.total_amount}"
        )
        return await self.get_invoice(invoice.id)

    async def _reset_stamps(self, invoice: Invoice) -> List[Transaction]:
        """Unstamp exactly the transactions listed on the invoice and still stamped with it."""
        ids = [line.transaction_id for line in invoice.line_items]
        reset: List[Transaction] = []
        for batch in _chunks(ids):
            result = await self.db.execute(
                select(Transaction).where(
                    and_(Transaction.id.in_(list(batch)), Transaction.invoice_id_jp == invoice.id)
                )
            )
            for tx in result.scalars().all():
                _clear_stamp(tx)
                reset.append(tx)
        await self.db.flush()
        return reset

    async def _restore_stamps(self, invoice: Invoice) -> Set[uuid.UUID]:
        """
        Restamp every line of a superseded invoice whose transaction is unstamped.

        Covers rows the replacement billed and rows it left out (e.g. disputed
        after approval). Rows billed elsewhere in the meantime keep their stamp.
        """
        lines = {line.transaction_id: line for line in invoice.line_items}
        restored: Set[uuid.UUID] = set()
        for batch in _chunks(list(lines)):
            result = await self.db.execute(
                select(Transaction).where(
                    and_(Transaction.id.in_(list(batch)), Transaction.invoice_id_jp.is_(None))
                )
            )
            for tx in result.scalars().all():
                _stamp_from_line(tx, invoice, lines[tx.id])
                restored.add(tx.id)
        await self.db.flush()
        return restored

    async def discard(self, invoice_id: uuid.UUID) -> Dict[str, Any]:
        """
        Delete a DRAFT invoice and release the transactions it stamped.

        When the draft replaced an approved or sent version, that version is
        restored together with its stamps.
        """
        invoice = await self.get_invoice(invoice_id)
        async with tenant_lock(invoice.client_id):
            try:
                invoice = await self.get_invoice(invoice_id)
                if not status_in(invoice.status, InvoiceStatus.DRAFT):
                    raise InvoiceStateError(
                        f"Invoice {invoice.invoice_number} is {invoice.status}; only drafts can be discarded"
                    )

                reset = await self._reset_stamps(invoice)
                released = len(reset)

                previous = await self.db.scalar(
                    select(Invoice)
                    .options(selectinload(Invoice.line_items))
                    .where(Invoice.replaced_by == invoice.id)
                )
                if previous is not None:
                    restored = await self._restore_stamps(previous)
                    released -= len({tx.id for tx in reset} & restored)
                    previous.status = (
                        InvoiceStatus.SENT.value if previous.sent_at else InvoiceStatus.APPROVED.value
                    )
                    previous.replaced_by = None
                    await self.db.flush()

                result = {
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "reset_count": released,
                    "restored_invoice_id": previous.id if previous is not None else None,
                }
                await self.db.delete(invoice)
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

        logger.info(f"Discarded invoice {result['invoice_number']}: {result['reset_count']} transactions released")
        return result

    async def approve(self, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        if not status_in(invoice.status, InvoiceStatus.DRAFT):
            raise InvoiceStateError(f"Invoice {invoice.invoice_number} is {invoice.status}; only drafts can be approved")
        invoice.status = InvoiceStatus.APPROVED.value
        invoice.approved_at = datetime.now(timezone.utc)
        await self.db.commit()
        return await self.get_invoice(invoice_id)

    async def mark_sent(self, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.get_invoice(invoice_id)
        if not status_in(invoice.status, InvoiceStatus.APPROVED):
            raise InvoiceStateError(f"Invoice {invoice.invoice_number} must be approved before sending")
        invoice.status = InvoiceStatus.SENT.value
        invoice.sent_at = datetime.now(timezone.utc)
        await self.db.commit()
        return await self.get_invoice(invoice_id)

    async def regenerate(self, invoice_id: uuid.UUID) -> Dict[str, Any]:
        """
        Rebuild an invoice from current transaction data.

        A DRAFT is rebuilt in place with its version incremented. An
        APPROVED or SENT invoice keeps its recorded totals and is superseded
        by a new DRAFT version sharing its invoice number.
        """
        invoice = await self.get_invoice(invoice_id)
        async with tenant_lock(invoice.client_id):
            try:
                invoice = await self.get_invoice(invoice_id)
                if invoice.status == InvoiceStatus.REGENERATED.value:
                    raise InvoiceStateError(
                        f"Invoice {invoice.invoice_number} v{invoice.version} was already replaced"
                    )
                client = await self._lock_client(invoice.client_id)
                scope = Scope(
                    invoice.settlement_invoice_ids if invoice.settlement_scoped else None,
                    invoice.period_start,
                    invoice.period_end,
                )

                reset = await self._reset_stamps(invoice)
                previous_ids = [tx.id for tx in reset]

                if invoice.status == InvoiceStatus.DRAFT.value:
                    target = invoice
                    target.line_items.clear()
                    await self.db.flush()
                    target.version = await self._next_version(client.id, invoice.invoice_number)
                    target.regeneration_count += 1
                    new_version = False
                else:
                    target = Invoice(
                        client_id=client.id,
                        invoice_number=invoice.invoice_number,
                        version=await self._next_version(client.id, invoice.invoice_number),
                        status=InvoiceStatus.DRAFT.value,
                        invoice_date=invoice.invoice_date,
                        period_start=invoice.period_start,
                        period_end=invoice.period_end,
                        settlement_scoped=invoice.settlement_scoped,
                        regeneration_count=invoice.regeneration_count + 1,
                        line_items=[],
                    )
                    self.db.add(target)
                    await self.db.flush()
                    invoice.status = InvoiceStatus.REGENERATED.value
                    invoice.replaced_by = target.id
                    new_version = True

                transactions = await self._select_eligible(client.id, scope.condition(), previous_ids)
                if not transactions:
                    raise NothingToInvoiceError(f"Nothing left to invoice on {invoice.invoice_number}")

                await self._bill(target, transactions)
                target.audit_report = await self.build_audit_report(target)
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise

        logger.info(
            f"Regenerated invoice {target.invoice_number} as v{target.version}: "
            f"{len(previous_ids)} released, {target.transaction_count} billed"
        )
        return {
            "invoice": await self.get_invoice(target.id),
            "previous_invoice_id": invoice_id,
            "new_version": new_version,
            "reset_count": len(previous_ids),
        }

    # =========================================================================
    # PREFLIGHT
    # =========================================================================

    @staticmethod
    def _issue(category: str, severity: str, message: str, rows: Sequence[Transaction]) -> Dict[str, Any]:
        return {
            "category": category,
            "severity": severity,
            "message": message,
            "count": len(rows),
            "sample_ids": [tx.transaction_id for tx in rows[:SAMPLE_SIZE]],
        }

    async def preflight(
        self,
        client_id: uuid.UUID,
        settlement_invoice_ids: Optional[Sequence[str]] = None,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        invoice_date: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Report what would block or shrink an assembly.

        Only client-level problems fail the preflight; row-level findings
        are warnings, since those rows are simply excluded.
        """
        client = await self.db.get(Client, client_id)
        if client is None:
            raise ClientNotFoundError(f"Client {client_id} not found")

        issues: List[Dict[str, Any]] = []
        warnings: List[Dict[str, Any]] = []
        if not client.is_active:
            issues.append({"category": "client", "severity": "critical",
                           "message": f"Client {client.name} is inactive", "count": 1, "sample_ids": []})
        if not client.short_code:
            issues.append({"category": "client", "severity": "critical",
                           "message": f"Client {client.name} has no short code", "count": 1, "sample_ids": []})

        scope = await self._resolve_scope(
            settlement_invoice_ids, period_start, period_end, invoice_date or date.today()
        )
        result = await self.db.execute(
            select(Transaction)
            .where(
                and_(
                    scope.condition(),
                    Transaction.invoice_id_jp.is_(None),
                    or_(Transaction.client_id.is_(None), Transaction.client_id == client.id),
                )
            )
            .order_by(Transaction.transaction_id)
        )
        rows = list(result.scalars().all())
        own = [tx for tx in rows if tx.client_id == client.id]

        unattributed = [tx for tx in rows if tx.client_id is None]
        awaiting_decomposition = [tx for tx in own if is_shipping_charge(tx) and tx.base_cost is None]
        awaiting_tax = [tx for tx in own if not tx.tax_normalized]
        disputed = [tx for tx in own if tx.dispute_status is not None]
        voided = [tx for tx in own if tx.is_voided]

        if unattributed:
            warnings.append(self._issue(
                "unattributed", "warning",
                "Transactions in scope have no client and cannot be invoiced", unattributed))
        if awaiting_decomposition:
            warnings.append(self._issue(
                "decomposition", "warning",
                "Shipping charges are waiting for base cost / surcharge", awaiting_decomposition))
        if awaiting_tax:
            warnings.append(self._issue(
                "tax_normalization", "warning", "Transactions are waiting for tax normalization", awaiting_tax))
        if disputed:
            warnings.append(self._issue("disputed", "warning", "Disputed transactions are excluded", disputed))

        eligible = await self._select_eligible(client.id, scope.condition())
        if not eligible:
            warnings.append({"category": "empty", "severity": "warning",
                             "message": "No eligible transactions in scope", "count": 0, "sample_ids": []})

        return {
            "client_id": client.id,
            "passed": not issues,
            "issues": issues,
            "warnings": warnings,
            "summary": {
                "in_scope": len(rows),
                "eligible": len(eligible),
                "unattributed": len(unattributed),
                "awaiting_decomposition": len(awaiting_decomposition),
                "awaiting_tax_normalization": len(awaiting_tax),
                "disputed": len(disputed),
                "voided": len(voided),
            },
        }

    # =========================================================================
    # AUDIT
    # =========================================================================

    @staticmethod
    def _exclusion_reason(tx: Transaction, invoice: Invoice) -> Optional[str]:
        if tx.invoice_id_jp == invoice.id:
            return None
        if tx.is_voided:
            return "voided"
        if tx.dispute_status is not None:
            return "disputed"
        if tx.invoice_id_jp is not None:
            return "billed_elsewhere"
        if not tx.tax_normalized:
            return "awaiting_tax_normalization"
        if is_shipping_charge(tx) and tx.base_cost is None:
            return "awaiting_decomposition"
        if tx.cost == 0:
            return "zero_amount"
        return "not_selected"

    async def build_audit_report(self, invoice: Invoice) -> Dict[str, Any]:
        """
        Reconcile provider totals against the invoice.

        Per settlement invoice (or the charge period) and per line category:
        the tenant's expected provider cost, the cost actually carried by the
        invoice's line items, and what was left out and why. A section
        balances when expected == billed + excluded.
        """
        if invoice.settlement_scoped:
            sections = {sid: Transaction.invoice_id_sb == sid for sid in invoice.settlement_invoice_ids}
        else:
            sections = {
                f"{invoice.period_start}..{invoice.period_end}": and_(
                    Transaction.charge_date >= invoice.period_start,
                    Transaction.charge_date <= invoice.period_end,
                )
            }

        provider_amounts: Dict[str, Decimal] = {}
        if invoice.settlement_scoped and invoice.settlement_invoice_ids:
            result = await self.db.execute(
                select(SettlementInvoice.provider_invoice_id, SettlementInvoice.amount)
                .where(SettlementInvoice.provider_invoice_id.in_(list(invoice.settlement_invoice_ids)))
            )
            provider_amounts = dict(result.all())

        lines_by_transaction = {line.transaction_id: line for line in invoice.line_items}
        report_sections = []
        all_balanced = True
        for key, condition in sections.items():
            result = await self.db.execute(select(Transaction).where(condition))
            rows = list(result.scalars().all())

            categories: Dict[str, Dict[str, Any]] = defaultdict(lambda: {
                "expected": ZERO, "billed": ZERO, "excluded": ZERO, "excluded_by_reason": defaultdict(int)
            })
            unattributed = other_tenants = 0
            unattributed_amount = ZERO
            shipments = await self._load_shipments([tx for tx in rows if tx.client_id == invoice.client_id])
            for tx in rows:
                if tx.client_id is None:
                    unattributed += 1
                    unattributed_amount += tx.cost
                    continue
                if tx.client_id != invoice.client_id:
                    other_tenants += 1
                    continue
                shipment = shipments.get(tx.reference_id) if tx.reference_type == ReferenceType.SHIPMENT.value else None
                bucket = categories[categorize(tx, _order_category(tx, shipment)).line_category.value]
                bucket["expected"] += billable_cost(tx)

                # Actual side comes from the invoice's own line items
                line = lines_by_transaction.get(tx.id)
                if line is not None:
                    categories[line.line_category]["billed"] += (
                        (line.base_amount or ZERO) + (line.surcharge or ZERO) + (line.insurance_amount or ZERO)
                    )
                    continue
                reason = self._exclusion_reason(tx, invoice) or "missing_line_item"
                bucket["excluded"] += billable_cost(tx)
                bucket["excluded_by_reason"][reason] += 1

            section_balanced = True
            category_report = {}
            for category, bucket in sorted(categories.items()):
                balanced = bucket["expected"] == bucket["billed"] + bucket["excluded"]
                section_balanced = section_balanced and balanced
                category_report[category] = {
                    "expected": _money(bucket["expected"]),
                    "billed": _money(bucket["billed"]),
                    "excluded": _money(bucket["excluded"]),
                    "excluded_by_reason": dict(bucket["excluded_by_reason"]),
                    "balanced": balanced,
                }
            all_balanced = all_balanced and section_balanced

            provider_amount = provider_amounts.get(key)
            ingested_total = sum((tx.ingested_amount for tx in rows), ZERO)
            report_sections.append({
                "scope": key,
                "provider_invoice_amount": _money(provider_amount) if provider_amount is not None else None,
                "ingested_total": _money(ingested_total),
                "provider_difference": (
                    _money(provider_amount - ingested_total) if provider_amount is not None else None
                ),
                "transactions": len(rows),
                "unattributed": unattributed,
                "unattributed_amount": _money(unattributed_amount),
                "other_tenants": other_tenants,
                "categories": category_report,
                "balanced": section_balanced,
            })

        return {
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "version": invoice.version,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "sections": report_sections,
            "balanced": all_balanced,
        }
