"""
Cost Normalizer Service.

Produces the two corrected values a transaction needs before invoicing:
- Pre-tax cost: per fee type, strip itemized taxes from tax-inclusive amounts
- Shipping decomposition: base_cost / surcharge / insurance from the daily
  cost extract, matched by (shipment id, tracking number)

The extract file extras-MMDDYY.csv carries the charges of the previous
calendar day. Both corrections are re-runnable: filled rows are skipped.
"""
import csv
import io
import logging
import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import settings
from billing_engine.core.exceptions import CostExtractError
from billing_engine.models.transaction import Transaction, ReferenceType, TransactionType, SHIPPING_FEE
from billing_engine.schemas.provider import CostExtractRow
from billing_engine.services.transaction_store import _chunks

logger = logging.getLogger(__name__)

# Tolerance for base + surcharge against the provider amount
DECOMPOSITION_TOLERANCE = Decimal("0.01")

# Extract column -> CostExtractRow field
EXTRACT_COLUMNS = {
    "OrderID": "shipment_id",
    "Tracking Number": "tracking_id",
    "User ID": "user_id",
    "Merchant Name": "merchant_name",
    "Invoice Number": "invoice_id_sb",
    "Fulfillment without Surcharge": "base_cost",
    "Surcharge Applied": "surcharge",
    "Insurance Amount": "insurance_cost",
    "Original Invoice": "total",
}


# ============================================================================
# EXTRACT PARSING
# ============================================================================

def file_date_from_name(filename: str, prefix: Optional[str] = None) -> Optional[date]:
    """Nominal date of an extract file named <prefix>MMDDYY.csv."""
    prefix = settings.COST_EXTRACT_FILE_PREFIX if prefix is None else prefix
    match = re.fullmatch(rf"{re.escape(prefix)}(\d{{6}})\.csv", Path(filename).name, re.IGNORECASE)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%m%d%y").date()
    except ValueError:
        return None


def extract_charge_date(file_date: date) -> date:
    """Charge date covered by an extract file."""
    return file_date - timedelta(days=1)


def parse_cost_extract(content: str) -> List[CostExtractRow]:
    """
    Parse cost extract CSV content.

    Header names are matched after trimming. Rows without a shipment id are
    skipped; a file without the OrderID column is rejected.
    """
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    if not reader.fieldnames:
        raise CostExtractError("Cost extract is empty")

    headers = {name.strip(): name for name in reader.fieldnames if name}
    if "OrderID" not in headers:
        raise CostExtractError(f"Cost extract missing OrderID column (found {sorted(headers)})")

    rows: List[CostExtractRow] = []
    for line_number, raw in enumerate(reader, start=2):
        values = {
            field_name: (raw.get(headers[column]) or "").strip()
            for column, field_name in EXTRACT_COLUMNS.items()
            if column in headers
        }
        if not values.get("shipment_id"):
            continue
        try:
            rows.append(CostExtractRow.model_validate(values))
        except ValidationError as e:
            logger.warning(f"Skipping cost extract line {line_number}: {e.error_count()} validation errors")
    return rows


def _read_extract(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise CostExtractError(f"{path.name} is not UTF-8 encoded (byte {e.start}: {e.reason})") from e


def is_tax_inclusive(fee_type: Optional[str], inclusive_fee_types: Iterable[str]) -> bool:
    return fee_type is not None and fee_type in set(inclusive_fee_types)


def pre_tax_cost(tx: Transaction, inclusive_fee_types: Iterable[str]) -> Decimal:
    """Pre-tax cost of a transaction under the configured per-fee-type policy."""
    if tx.taxes and is_tax_inclusive(tx.fee_type, inclusive_fee_types):
        return tx.ingested_amount - tx.tax_total
    return tx.ingested_amount


def _is_refund(tx: Transaction) -> bool:
    return tx.transaction_type == TransactionType.REFUND.value or tx.ingested_amount < 0


# ============================================================================
# SERVICE
# ============================================================================

class CostNormalizerService:
    """Service for tax correction and shipping cost decomposition."""

    def __init__(self, db: AsyncSession, tax_inclusive_fee_types: Optional[Iterable[str]] = None):
        self.db = db
        self.tax_inclusive_fee_types: Set[str] = set(
            settings.TAX_INCLUSIVE_FEE_TYPES if tax_inclusive_fee_types is None else tax_inclusive_fee_types
        )

    # =========================================================================
    # TAXES
    # =========================================================================

    async def normalize_taxes(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Converge cost to pre-tax for every unbilled row not yet normalized.

        cost is always recomputed from ingested_amount, so a row is never
        adjusted twice.
        """
        query = (
            select(Transaction)
            .where(
                and_(
                    Transaction.tax_normalized.is_(False),
                    Transaction.invoice_id_jp.is_(None),
                )
            )
            .order_by(Transaction.transaction_id)
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        rows = list(result.scalars().all())

        adjusted = 0
        for tx in rows:
            cost = pre_tax_cost(tx, self.tax_inclusive_fee_types)
            if cost != tx.cost:
                tx.cost = cost
                adjusted += 1
            tx.tax_normalized = True

        await self.db.commit()
        if rows:
            logger.info(f"Tax normalization: {len(rows)} rows processed, {adjusted} adjusted to pre-tax")
        return {"processed": len(rows), "adjusted": adjusted}

    # =========================================================================
    # SHIPPING DECOMPOSITION
    # =========================================================================

    async def _shipping_candidates(
        self,
        shipment_ids: List[str],
        charge_date: date
    ) -> Dict[Tuple[str, Optional[str]], List[Transaction]]:
        """Shipping charges of the given shipments on one charge date, keyed by (shipment, tracking)."""
        candidates: Dict[Tuple[str, Optional[str]], List[Transaction]] = {}
        for batch in _chunks(sorted(set(shipment_ids))):
            result = await self.db.execute(
                select(Transaction)
                .where(
                    and_(
                        Transaction.reference_type == ReferenceType.SHIPMENT.value,
                        Transaction.fee_type == SHIPPING_FEE,
                        Transaction.charge_date == charge_date,
                        Transaction.reference_id.in_(list(batch)),
                        Transaction.is_voided.is_(False),
                    )
                )
                .order_by(Transaction.transaction_id)
            )
            for tx in result.scalars().all():
                candidates.setdefault((tx.reference_id, tx.tracking_id), []).append(tx)
        return candidates

    @staticmethod
    def _match(
        row: CostExtractRow,
        candidates: Dict[Tuple[str, Optional[str]], List[Transaction]]
    ) -> List[Transaction]:
        if row.tracking_id:
            matches = candidates.get((row.shipment_id, row.tracking_id), [])
        else:
            # No tracking in the row: only unambiguous when the shipment has one label that day
            keys = [key for key in candidates if key[0] == row.shipment_id]
            matches = candidates[keys[0]] if len(keys) == 1 else []
        return [tx for tx in matches if _is_refund(tx) == row.is_refund]

    async def apply_cost_extract(self, rows: List[CostExtractRow], file_date: date) -> Dict[str, Any]:
        """
        Fill base_cost / surcharge / insurance_cost from one extract file.

        Rows are matched to Shipping charges on file_date - 1 by shipment id
        and tracking number. A row whose base + surcharge does not reproduce
        the ingested amount within one cent is reported and not applied.
        """
        charge_date = extract_charge_date(file_date)
        summary: Dict[str, Any] = {
            "file_date": file_date.isoformat(),
            "charge_date": charge_date.isoformat(),
            "rows": len(rows),
            "updated": 0,
            "skipped": 0,
            "not_found": 0,
            "mismatched": 0,
            "mismatches": [],
        }
        if not rows:
            return summary

        candidates = await self._shipping_candidates([row.shipment_id for row in rows], charge_date)

        for row in rows:
            matches = self._match(row, candidates)
            if not matches:
                summary["not_found"] += 1
                continue

            open_matches = [tx for tx in matches if tx.base_cost is None]
            if not open_matches:
                summary["skipped"] += 1
                continue
            tx = open_matches[0]

            decomposed = row.base_cost + row.surcharge
            if abs(decomposed - tx.ingested_amount) > DECOMPOSITION_TOLERANCE:
                logger.warning(
                    f"Cost extract mismatch for shipment {row.shipment_id} ({row.tracking_id}): "
                    f"base {row.base_cost} + surcharge {row.surcharge} != {tx.ingested_amount}"
                )
                summary["mismatched"] += 1
                summary["mismatches"].append({
                    "transaction_id": tx.transaction_id,
                    "shipment_id": row.shipment_id,
                    "tracking_id": row.tracking_id,
                    "expected": str(tx.ingested_amount),
                    "decomposed": str(decomposed),
                })
                continue

            tx.base_cost = row.base_cost
            tx.surcharge = row.surcharge
            tx.insurance_cost = row.insurance_cost
            summary["updated"] += 1

        await self.db.commit()
        logger.info(
            f"Cost extract {file_date}: {summary['updated']} decomposed, {summary['skipped']} already filled, "
            f"{summary['not_found']} not found, {summary['mismatched']} mismatched"
        )
        return summary

    async def apply_extract_content(self, content: str, filename: str) -> Dict[str, Any]:
        """Parse and apply one extract file's content."""
        file_date = file_date_from_name(filename)
        if file_date is None:
            raise CostExtractError(
                f"Cannot derive extract date from '{filename}' "
                f"(expected {settings.COST_EXTRACT_FILE_PREFIX}MMDDYY.csv)"
            )
        summary = await self.apply_cost_extract(parse_cost_extract(content), file_date)
        summary["filename"] = Path(filename).name
        return summary

    async def load_extract_files(
        self,
        directory: Optional[str] = None,
        since: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        """Apply every extract file in the directory, oldest first."""
        folder = Path(directory or settings.COST_EXTRACT_DIR)
        if not folder.is_dir():
            logger.warning(f"Cost extract directory {folder} does not exist")
            return []

        files = []
        for path in folder.glob("*.csv"):
            file_date = file_date_from_name(path.name)
            if file_date is None or (since is not None and file_date < since):
                continue
            files.append((file_date, path))

        summaries = []
        for file_date, path in sorted(files):
            try:
                summaries.append(await self.apply_extract_content(_read_extract(path), path.name))
            except CostExtractError as e:
                # One unreadable file must not hold back the rest of the directory
                logger.error(f"Skipping cost extract {path.name}: {e}")
                summaries.append({"filename": path.name, "error": str(e)})
        return summaries
