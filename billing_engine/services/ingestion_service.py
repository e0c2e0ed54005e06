"""
Ingestion Service.

Pulls provider transactions into the Transaction Store:
- Pending stream: every transaction charged inside the window
- Settlement streams: transactions of each provider invoice dated in the window

Each page is upserted and committed on its own, so a failed fetch leaves
earlier pages in place and a re-run converges on the same rows.
"""
import logging
from datetime import date
from typing import Optional, List, Dict, Any, AsyncIterator

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.schemas.provider import ProviderTransaction, ProviderInvoice
from billing_engine.services.provider_client import ProviderBillingClient
from billing_engine.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


def parse_transactions(items: List[Dict[str, Any]]) -> List[ProviderTransaction]:
    """Validate raw provider rows, skipping malformed ones."""
    parsed = []
    for item in items:
        try:
            parsed.append(ProviderTransaction.model_validate(item))
        except ValidationError as e:
            logger.warning(
                f"Skipping malformed provider transaction "
                f"{item.get('transaction_id', '<no id>') if isinstance(item, dict) else item!r}: "
                f"{e.error_count()} validation errors"
            )
    return parsed


def parse_invoices(items: List[Dict[str, Any]]) -> List[ProviderInvoice]:
    """Validate raw provider invoices, skipping malformed ones."""
    parsed = []
    for item in items:
        try:
            parsed.append(ProviderInvoice.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed provider invoice {item!r}: {e.error_count()} validation errors")
    return parsed


class IngestionService:
    """Service for provider transaction ingestion."""

    def __init__(self, db: AsyncSession, provider: ProviderBillingClient):
        self.db = db
        self.provider = provider
        self.store = TransactionStore(db)

    async def _ingest_pages(
        self,
        pages: AsyncIterator[List[Dict[str, Any]]],
        summary: Dict[str, Any],
        label: str
    ) -> None:
        async for items in pages:
            records = parse_transactions(items)
            summary["skipped"] += len(items) - len(records)
            try:
                stats = await self.store.upsert_transactions(records)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            summary["pages"] += 1
            summary["fetched"] += len(items)
            for key, value in stats.items():
                summary[key] += value
            logger.debug(f"{label}: page of {len(items)} -> {stats}")

    async def ingest_window(
        self,
        start_date: date,
        end_date: date,
        include_settlements: bool = True
    ) -> Dict[str, Any]:
        """
        Ingest every provider transaction touching [start_date, end_date].

        Returns a summary dict. Provider failures propagate after the pages
        already committed are kept.
        """
        if start_date > end_date:
            raise ValueError("start_date must not be after end_date")

        summary: Dict[str, Any] = {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "pages": 0,
            "fetched": 0,
            "skipped": 0,
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
            "settlement_invoices": 0,
            "duplicate_groups": 0,
            "voided": 0,
        }

        logger.info(f"Ingesting provider transactions {start_date} to {end_date}")
        await self._ingest_pages(
            self.provider.query_transactions(start_date, end_date),
            summary,
            "pending stream",
        )

        invoice_ids: List[str] = []
        if include_settlements:
            invoice_ids = await self.sync_settlement_invoices(start_date, end_date)
            summary["settlement_invoices"] = len(invoice_ids)
            for invoice_id in invoice_ids:
                await self._ingest_pages(
                    self.provider.get_invoice_transactions(invoice_id),
                    summary,
                    f"settlement invoice {invoice_id}",
                )

        void_stats = await self.store.void_duplicates(invoice_ids if include_settlements else None)
        await self.db.commit()
        summary.update(void_stats)

        logger.info(
            f"Ingestion {start_date} to {end_date} complete: {summary['fetched']} fetched, "
            f"{summary['inserted']} inserted, {summary['updated']} updated, "
            f"{summary['settlement_invoices']} settlement invoices"
        )
        return summary

    async def sync_settlement_invoices(self, start_date: date, end_date: date) -> List[str]:
        """Upsert provider invoices dated inside the window; return their ids."""
        invoice_ids: List[str] = []
        async for items in self.provider.list_invoices(start_date, end_date):
            invoices = parse_invoices(items)
            try:
                await self.store.upsert_settlement_invoices(invoices)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            invoice_ids.extend(invoice.invoice_id for invoice in invoices)
        return invoice_ids

    async def ingest_settlement_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Re-drain a single provider invoice's transaction stream."""
        summary: Dict[str, Any] = {
            "invoice_id": invoice_id,
            "pages": 0,
            "fetched": 0,
            "skipped": 0,
            "inserted": 0,
            "updated": 0,
            "unchanged": 0,
        }
        await self._ingest_pages(
            self.provider.get_invoice_transactions(invoice_id),
            summary,
            f"settlement invoice {invoice_id}",
        )
        summary.update(await self.store.void_duplicates([invoice_id]))
        await self.db.commit()
        return summary
