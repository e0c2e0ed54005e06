"""
Transaction Store Service.

Persistence operations shared by every pipeline stage:
- Idempotent upsert of provider transactions keyed on transaction_id
- Settlement invoice upsert
- Duplicate shipping charge voiding
- Selection helpers for attribution, normalization and assembly
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Iterable, Sequence, Tuple

from sqlalchemy import select, and_, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.transaction import (
    Transaction, SettlementInvoice, AttributionStatus, TransactionType, SHIPPING_FEE
)
from billing_engine.schemas.provider import ProviderTransaction, ProviderInvoice

logger = logging.getLogger(__name__)

# Chunk size for IN (...) lookups
LOOKUP_BATCH_SIZE = 500

# Rows per multi-VALUES insert (keeps bound parameters under SQLite limits)
INSERT_BATCH_SIZE = 200


def _chunks(values: Sequence[Any], size: int = LOOKUP_BATCH_SIZE) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


class TransactionStore:
    """Service for Transaction Store reads and writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _insert(self, table):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(table)
        if dialect == "sqlite":
            return sqlite_insert(table)
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    # =========================================================================
    # UPSERT
    # =========================================================================

    async def upsert_transactions(self, records: Sequence[ProviderTransaction]) -> Dict[str, int]:
        """
        Insert new transactions and refresh settlement fields on known ones.

        Billing fields (client, cost decomposition, generated invoice stamp)
        are never touched here. A row that is already settled keeps its
        invoice_id_sb when a pending copy is seen again.

        Returns counts: inserted, updated, unchanged.
        """
        stats = {"inserted": 0, "updated": 0, "unchanged": 0}
        if not records:
            return stats

        # Last copy of a transaction_id in the batch wins, settled copies over pending
        incoming: Dict[str, ProviderTransaction] = {}
        for record in records:
            current = incoming.get(record.transaction_id)
            if current is None or record.is_settled or not current.is_settled:
                incoming[record.transaction_id] = record

        existing: Dict[str, Transaction] = {}
        ids = list(incoming.keys())
        for batch in _chunks(ids):
            result = await self.db.execute(
                select(Transaction).where(Transaction.transaction_id.in_(batch))
            )
            for tx in result.scalars().all():
                existing[tx.transaction_id] = tx

        now = datetime.now(timezone.utc)
        new_rows: List[Dict[str, Any]] = []
        for transaction_id, record in incoming.items():
            tx = existing.get(transaction_id)
            if tx is None:
                row = record.to_row()
                row.update({
                    "id": uuid.uuid4(),
                    "tax_normalized": False,
                    "attribution_status": AttributionStatus.PENDING.value,
                    "invoiced_status_jp": False,
                    "is_voided": False,
                    "created_at": now,
                    "updated_at": now,
                })
                new_rows.append(row)
            elif self._refresh_settlement(tx, record):
                stats["updated"] += 1
            else:
                stats["unchanged"] += 1

        for batch in _chunks(new_rows, INSERT_BATCH_SIZE):
            stmt = self._insert(Transaction.__table__).values(list(batch))
            stmt = stmt.on_conflict_do_nothing(index_elements=["transaction_id"])
            result = await self.db.execute(stmt)
            inserted = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else len(batch)
            stats["inserted"] += inserted
            if inserted < len(batch):
                # Another writer inserted some of these ids first
                stats["unchanged"] += len(batch) - inserted

        await self.db.flush()
        return stats

    def _refresh_settlement(self, tx: Transaction, record: ProviderTransaction) -> bool:
        """Apply settlement-side changes to a stored row. Returns True if anything changed."""
        changed = False

        if record.is_settled and tx.invoice_id_sb != record.invoice_id:
            if tx.invoice_id_sb is not None:
                logger.warning(
                    f"Transaction {tx.transaction_id} moved from settlement invoice "
                    f"{tx.invoice_id_sb} to {record.invoice_id}"
                )
            tx.invoice_id_sb = record.invoice_id
            changed = True

        if (record.invoiced_status or record.is_settled) and not tx.invoiced_status_sb:
            tx.invoiced_status_sb = True
            changed = True

        if record.invoice_date is not None and tx.invoice_date_sb != record.invoice_date:
            tx.invoice_date_sb = record.invoice_date
            changed = True

        if tx.tracking_id is None and record.tracking_id:
            tx.tracking_id = record.tracking_id
            changed = True

        if not tx.tax_normalized and not tx.is_billed:
            taxes = [tax.model_dump(mode="json") for tax in record.taxes]
            if taxes != (tx.taxes or []):
                tx.taxes = taxes
                changed = True

        return changed

    async def upsert_settlement_invoices(self, invoices: Sequence[ProviderInvoice]) -> int:
        """Insert or refresh provider settlement invoices. Returns rows written."""
        if not invoices:
            return 0

        written = 0
        for invoice in invoices:
            existing = await self.db.scalar(
                select(SettlementInvoice).where(SettlementInvoice.provider_invoice_id == invoice.invoice_id)
            )
            if existing is None:
                self.db.add(SettlementInvoice(
                    provider_invoice_id=invoice.invoice_id,
                    invoice_type=invoice.invoice_type,
                    invoice_date=invoice.invoice_date,
                    period_start=invoice.period_start,
                    period_end=invoice.period_end,
                    amount=invoice.amount,
                    currency_code=invoice.currency_code,
                ))
                written += 1
            elif (existing.amount, existing.invoice_date) != (invoice.amount, invoice.invoice_date):
                existing.amount = invoice.amount
                existing.invoice_date = invoice.invoice_date
                written += 1

        await self.db.flush()
        return written

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    async def void_duplicates(self, invoice_ids: Optional[Sequence[str]] = None) -> Dict[str, int]:
        """
        Void duplicate shipping charges.

        When the provider voids and recreates a label, the same shipment and
        tracking number are charged twice on one settlement invoice. Only the
        latest by charge_date is kept; older copies are marked is_voided.
        Billed rows are never voided.
        """
        query = select(Transaction).where(
            and_(
                Transaction.fee_type == SHIPPING_FEE,
                or_(
                    Transaction.transaction_type.is_(None),
                    Transaction.transaction_type == TransactionType.CHARGE.value,
                ),
                Transaction.reference_id.is_not(None),
                Transaction.tracking_id.is_not(None),
                Transaction.invoice_id_sb.is_not(None),
                Transaction.is_voided.is_(False),
            )
        )
        if invoice_ids is not None:
            if not invoice_ids:
                return {"duplicate_groups": 0, "voided": 0}
            query = query.where(Transaction.invoice_id_sb.in_(list(invoice_ids)))
        query = query.order_by(Transaction.charge_date.desc(), Transaction.transaction_id.desc())

        result = await self.db.execute(query)
        groups: Dict[Tuple[str, str, str], List[Transaction]] = defaultdict(list)
        for tx in result.scalars().all():
            groups[(tx.reference_id, tx.tracking_id, tx.invoice_id_sb)].append(tx)

        duplicate_groups = 0
        voided = 0
        for key, rows in groups.items():
            if len(rows) < 2:
                continue
            duplicate_groups += 1
            for tx in rows[1:]:
                if tx.is_billed:
                    logger.warning(
                        f"Duplicate shipping charge {tx.transaction_id} for shipment {key[0]} "
                        f"is already billed; left in place"
                    )
                    continue
                tx.is_voided = True
                voided += 1

        await self.db.flush()
        if voided:
            logger.info(f"Voided {voided} duplicate shipping charges in {duplicate_groups} groups")
        return {"duplicate_groups": duplicate_groups, "voided": voided}

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def list_unattributed(
        self,
        limit: Optional[int] = None,
        statuses: Sequence[AttributionStatus] = (AttributionStatus.PENDING, AttributionStatus.UNRESOLVED),
        after_transaction_id: Optional[str] = None
    ) -> List[Transaction]:
        """Transactions without a client, oldest first. Pages by key with `after_transaction_id`."""
        query = (
            select(Transaction)
            .where(
                and_(
                    Transaction.client_id.is_(None),
                    Transaction.attribution_status.in_([s.value for s in statuses]),
                )
            )
            .order_by(Transaction.transaction_id)
        )
        if after_transaction_id is not None:
            query = query.where(Transaction.transaction_id > after_transaction_id)
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())
