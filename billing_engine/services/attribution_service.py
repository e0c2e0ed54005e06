"""
Attribution Service.

Assigns a client to transactions the provider delivers without one.

Strategies run in a fixed order and the first hit wins:
1. direct_anchor   - interpret reference_id by reference_type, join the anchor
2. system_client   - provider payments / card fees go to internal tenants
3. sibling_invoice - adopt the single client already on the same settlement invoice
4. free_text       - order or shipment id embedded in the transaction comment

Each strategy is a pure function of (TransactionFacts, AnchorSnapshot) so a
fixed anchor snapshot always yields the same client. Rows no strategy can
resolve are flagged UNRESOLVED for manual review and never invoiced.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable, FrozenSet, Mapping, Sequence, Set, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import settings
from billing_engine.core.exceptions import ClientNotFoundError, InvoiceStateError, TransactionNotFoundError
from billing_engine.models.anchors import Shipment, Return, ReceivingOrder, Order, InventoryItem
from billing_engine.models.client import Client
from billing_engine.models.transaction import (
    Transaction, ReferenceType, AttributionStatus, AttributionMethod,
    PAYMENT_FEE, CC_PROCESSING_FEE, TransactionType
)
from billing_engine.services.provider_client import ProviderBillingClient, ProviderAPIError
from billing_engine.services.transaction_store import TransactionStore, _chunks

logger = logging.getLogger(__name__)


# ============================================================================
# PURE RESOLUTION
# ============================================================================

@dataclass(frozen=True)
class StorageReference:
    """Parsed storage reference "<facility>-<inventory>-<locationType>"."""
    facility_id: Optional[str]
    inventory_candidates: Tuple[str, ...]
    location_type: Optional[str]


def parse_storage_reference(reference_id: Optional[str]) -> StorageReference:
    """
    Split a composite storage reference.

    The first segment is always the facility and a trailing non-numeric
    segment is the location type. Inventory candidates are the numeric
    segments strictly between them, so the facility code is never used as an
    inventory id even when extra hyphenated segments are present.
    """
    if not reference_id:
        return StorageReference(None, (), None)

    parts = [part.strip() for part in str(reference_id).split("-")]
    facility_id = parts[0] or None
    if len(parts) < 2:
        return StorageReference(facility_id, (), None)

    rest = parts[1:]
    location_type = None
    if rest and not rest[-1].isdigit():
        location_type = rest[-1] or None
        rest = rest[:-1]
    # Location types may themselves contain hyphens ("Half-Pallet")
    while rest and not rest[-1].isdigit():
        location_type = f"{rest[-1]}-{location_type}" if location_type else rest[-1]
        rest = rest[:-1]

    candidates = tuple(part for part in rest if part.isdigit())
    return StorageReference(facility_id, candidates, location_type)


def _usable_reference(reference_id: Optional[str]) -> Optional[str]:
    if reference_id is None:
        return None
    value = str(reference_id).strip()
    if not value or value == "0":
        return None
    return value


ORDER_ID_PATTERN = re.compile(r"\border(?:[\s_]*id)?\s*[:#]?\s*#?\s*(\d{5,})", re.IGNORECASE)
SHIPMENT_ID_PATTERN = re.compile(r"\bshipment(?:[\s_]*id)?\s*[:#]?\s*#?\s*(\d{5,})", re.IGNORECASE)


def extract_comment_ids(comment: Optional[str]) -> Tuple[List[str], List[str]]:
    """Return (order_ids, shipment_ids) mentioned in a free-text comment."""
    if not comment:
        return [], []
    text = str(comment)
    return ORDER_ID_PATTERN.findall(text), SHIPMENT_ID_PATTERN.findall(text)


@dataclass(frozen=True)
class TransactionFacts:
    """The transaction fields attribution depends on."""
    transaction_id: str
    reference_type: Optional[str]
    reference_id: Optional[str]
    fee_type: Optional[str]
    transaction_type: Optional[str]
    invoice_id_sb: Optional[str]
    additional_details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, tx: Transaction) -> "TransactionFacts":
        return cls(
            transaction_id=tx.transaction_id,
            reference_type=tx.reference_type,
            reference_id=tx.reference_id,
            fee_type=tx.fee_type,
            transaction_type=tx.transaction_type,
            invoice_id_sb=tx.invoice_id_sb,
            additional_details=dict(tx.additional_details or {}),
        )

    @property
    def comment(self) -> Optional[str]:
        return self.additional_details.get("Comment")

    def storage_inventory_ids(self) -> List[str]:
        ids = list(parse_storage_reference(self.reference_id).inventory_candidates)
        fallback = self.additional_details.get("InventoryId")
        if not ids and fallback:
            ids.append(str(fallback))
        return ids

    def has_interpretable_reference(self) -> bool:
        """True when reference_id can be joined to an anchor table."""
        reference = _usable_reference(self.reference_id)
        if self.reference_type == ReferenceType.FC.value:
            return bool(self.storage_inventory_ids())
        if self.reference_type in (
            ReferenceType.SHIPMENT.value,
            ReferenceType.RETURN.value,
            ReferenceType.WRO.value,
            ReferenceType.URO.value,
        ):
            return reference is not None
        return False


@dataclass(frozen=True)
class AnchorSnapshot:
    """Read-only view of the anchor tables needed to resolve one batch."""
    shipments: Mapping[str, uuid.UUID] = field(default_factory=dict)
    returns: Mapping[str, Optional[uuid.UUID]] = field(default_factory=dict)
    return_shipments: Mapping[str, Optional[str]] = field(default_factory=dict)
    receiving_orders: Mapping[str, uuid.UUID] = field(default_factory=dict)
    orders: Mapping[str, uuid.UUID] = field(default_factory=dict)
    inventory: Mapping[str, uuid.UUID] = field(default_factory=dict)
    invoice_clients: Mapping[str, FrozenSet[uuid.UUID]] = field(default_factory=dict)
    payments_client_id: Optional[uuid.UUID] = None
    processing_fee_client_id: Optional[uuid.UUID] = None


def _return_client(return_id: str, snapshot: AnchorSnapshot) -> Optional[uuid.UUID]:
    client_id = snapshot.returns.get(return_id)
    if client_id is not None:
        return client_id
    original_shipment = snapshot.return_shipments.get(return_id)
    if original_shipment:
        return snapshot.shipments.get(original_shipment)
    return None


def direct_anchor(tx: TransactionFacts, snapshot: AnchorSnapshot) -> Optional[uuid.UUID]:
    """Join reference_id to the anchor table its reference_type names."""
    reference_type = tx.reference_type
    reference = _usable_reference(tx.reference_id)

    if reference_type == ReferenceType.FC.value:
        matches = {
            snapshot.inventory[inventory_id]
            for inventory_id in tx.storage_inventory_ids()
            if inventory_id in snapshot.inventory
        }
        return matches.pop() if len(matches) == 1 else None

    if reference is None:
        return None

    if reference_type == ReferenceType.SHIPMENT.value:
        return snapshot.shipments.get(reference)
    if reference_type == ReferenceType.RETURN.value:
        return _return_client(reference, snapshot)
    if reference_type in (ReferenceType.WRO.value, ReferenceType.URO.value):
        return snapshot.receiving_orders.get(reference)
    if reference_type == ReferenceType.DEFAULT.value:
        # Credits often carry the shipment they compensate
        return (
            snapshot.shipments.get(reference)
            or _return_client(reference, snapshot)
            or snapshot.receiving_orders.get(reference)
        )
    return None


def system_client(tx: TransactionFacts, snapshot: AnchorSnapshot) -> Optional[uuid.UUID]:
    """Route provider payments and card processing fees to internal tenants."""
    if tx.fee_type == PAYMENT_FEE or tx.transaction_type == TransactionType.PAYMENT.value:
        return snapshot.payments_client_id
    if tx.fee_type == CC_PROCESSING_FEE:
        return snapshot.processing_fee_client_id
    return None


def sibling_invoice(tx: TransactionFacts, snapshot: AnchorSnapshot) -> Optional[uuid.UUID]:
    """
    Adopt the client of other rows on the same settlement invoice.

    Only applies when the reference cannot be interpreted, and only when the
    settlement invoice carries exactly one resolved client.
    """
    if tx.has_interpretable_reference() or not tx.invoice_id_sb:
        return None
    clients = snapshot.invoice_clients.get(tx.invoice_id_sb, frozenset())
    if len(clients) == 1:
        return next(iter(clients))
    if len(clients) > 1:
        logger.warning(
            f"Settlement invoice {tx.invoice_id_sb} has {len(clients)} clients; "
            f"transaction {tx.transaction_id} left for manual review"
        )
    return None


def free_text(tx: TransactionFacts, snapshot: AnchorSnapshot) -> Optional[uuid.UUID]:
    """Resolve an order or shipment id mentioned in the comment field."""
    order_ids, shipment_ids = extract_comment_ids(tx.comment)
    matches: Set[uuid.UUID] = set()
    for order_id in order_ids:
        if order_id in snapshot.orders:
            matches.add(snapshot.orders[order_id])
    for shipment_id in shipment_ids:
        if shipment_id in snapshot.shipments:
            matches.add(snapshot.shipments[shipment_id])
    return matches.pop() if len(matches) == 1 else None


Strategy = Callable[[TransactionFacts, AnchorSnapshot], Optional[uuid.UUID]]

STRATEGIES: Tuple[Tuple[AttributionMethod, Strategy], ...] = (
    (AttributionMethod.DIRECT_ANCHOR, direct_anchor),
    (AttributionMethod.SYSTEM_CLIENT, system_client),
    (AttributionMethod.SIBLING_INVOICE, sibling_invoice),
    (AttributionMethod.FREE_TEXT, free_text),
)


def resolve(
    tx: TransactionFacts,
    snapshot: AnchorSnapshot,
    strategies: Sequence[Tuple[AttributionMethod, Strategy]] = STRATEGIES
) -> Tuple[Optional[uuid.UUID], Optional[AttributionMethod]]:
    """Run strategies in order; the first one returning a client wins."""
    for method, strategy in strategies:
        client_id = strategy(tx, snapshot)
        if client_id is not None:
            return client_id, method
    return None, None


# ============================================================================
# SERVICE
# ============================================================================

class AttributionService:
    """Service resolving clients for unattributed transactions."""

    def __init__(self, db: AsyncSession, provider: Optional[ProviderBillingClient] = None):
        self.db = db
        self.provider = provider
        self.store = TransactionStore(db)

    # =========================================================================
    # SNAPSHOT
    # =========================================================================

    async def _lookup(self, column, key_column, keys: Set[str]) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        values = sorted(keys)
        for batch in _chunks(values):
            result = await self.db.execute(select(key_column, column).where(key_column.in_(batch)))
            for key, value in result.all():
                found[key] = value
        return found

    async def _system_client_ids(self) -> Tuple[Optional[uuid.UUID], Optional[uuid.UUID]]:
        result = await self.db.execute(
            select(Client.name, Client.id).where(
                and_(
                    Client.is_system.is_(True),
                    Client.name.in_([settings.PAYMENTS_CLIENT_NAME, settings.PROCESSING_FEE_CLIENT_NAME]),
                )
            )
        )
        by_name = dict(result.all())
        return by_name.get(settings.PAYMENTS_CLIENT_NAME), by_name.get(settings.PROCESSING_FEE_CLIENT_NAME)

    async def _invoice_clients(self, invoice_ids: Set[str]) -> Dict[str, FrozenSet[uuid.UUID]]:
        """Distinct merchant clients already resolved per settlement invoice."""
        clients: Dict[str, Set[uuid.UUID]] = {}
        for batch in _chunks(sorted(invoice_ids)):
            result = await self.db.execute(
                select(Transaction.invoice_id_sb, Transaction.client_id)
                .join(Client, Client.id == Transaction.client_id)
                .where(
                    and_(
                        Transaction.invoice_id_sb.in_(batch),
                        Transaction.client_id.is_not(None),
                        Transaction.is_voided.is_(False),
                        Client.is_system.is_(False),
                    )
                )
                .distinct()
            )
            for invoice_id, client_id in result.all():
                clients.setdefault(invoice_id, set()).add(client_id)
        return {invoice_id: frozenset(ids) for invoice_id, ids in clients.items()}

    async def build_snapshot(self, facts: Sequence[TransactionFacts]) -> AnchorSnapshot:
        """Load the anchor rows the given transactions can join to."""
        shipment_keys: Set[str] = set()
        return_keys: Set[str] = set()
        receiving_keys: Set[str] = set()
        order_keys: Set[str] = set()
        inventory_keys: Set[str] = set()
        invoice_keys: Set[str] = set()

        for tx in facts:
            reference = _usable_reference(tx.reference_id)
            if tx.reference_type == ReferenceType.FC.value:
                inventory_keys.update(tx.storage_inventory_ids())
            elif reference is not None:
                if tx.reference_type == ReferenceType.SHIPMENT.value:
                    shipment_keys.add(reference)
                elif tx.reference_type == ReferenceType.RETURN.value:
                    return_keys.add(reference)
                elif tx.reference_type in (ReferenceType.WRO.value, ReferenceType.URO.value):
                    receiving_keys.add(reference)
                elif tx.reference_type == ReferenceType.DEFAULT.value:
                    shipment_keys.add(reference)
                    return_keys.add(reference)
                    receiving_keys.add(reference)
            order_ids, shipment_ids = extract_comment_ids(tx.comment)
            order_keys.update(order_ids)
            shipment_keys.update(shipment_ids)
            if tx.invoice_id_sb:
                invoice_keys.add(tx.invoice_id_sb)

        returns = await self._lookup(Return.client_id, Return.return_id, return_keys)
        return_shipments = await self._lookup(Return.original_shipment_id, Return.return_id, set(returns))
        shipment_keys.update(sid for sid in return_shipments.values() if sid)

        payments_client_id, processing_fee_client_id = await self._system_client_ids()

        return AnchorSnapshot(
            shipments=await self._lookup(Shipment.client_id, Shipment.shipment_id, shipment_keys),
            returns=returns,
            return_shipments=return_shipments,
            receiving_orders=await self._lookup(ReceivingOrder.client_id, ReceivingOrder.receiving_id, receiving_keys),
            orders=await self._lookup(Order.client_id, Order.order_id, order_keys),
            inventory=await self._lookup(InventoryItem.client_id, InventoryItem.inventory_id, inventory_keys),
            invoice_clients=await self._invoice_clients(invoice_keys),
            payments_client_id=payments_client_id,
            processing_fee_client_id=processing_fee_client_id,
        )

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def _merchant_ids(self, client_ids: Set[uuid.UUID]) -> Dict[uuid.UUID, Optional[str]]:
        if not client_ids:
            return {}
        result = await self.db.execute(select(Client.id, Client.merchant_id).where(Client.id.in_(list(client_ids))))
        return dict(result.all())

    def _apply(self, tx: Transaction, client_id: uuid.UUID, method: AttributionMethod) -> None:
        tx.client_id = client_id
        tx.attribution_status = AttributionStatus.RESOLVED.value
        tx.attribution_method = method.value
        tx.attributed_at = datetime.now(timezone.utc)

    def _run_pass(
        self,
        pending: List[Transaction],
        snapshot: AnchorSnapshot,
        strategies: Sequence[Tuple[AttributionMethod, Strategy]],
        summary: Dict[str, Any]
    ) -> List[Transaction]:
        """Resolve what the strategies can; return the rows still pending."""
        remaining = []
        for tx in pending:
            try:
                client_id, method = resolve(TransactionFacts.from_model(tx), snapshot, strategies)
            except Exception as e:
                logger.exception(f"Attribution failed for transaction {tx.transaction_id}: {e}")
                summary["errors"] += 1
                remaining.append(tx)
                continue
            if client_id is None:
                remaining.append(tx)
                continue
            self._apply(tx, client_id, method)
            summary["by_method"][method.value] = summary["by_method"].get(method.value, 0) + 1
            summary["resolved"] += 1
        return remaining

    async def resolve_pending(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Attribute every transaction with no client, one batch at a time.

        New (PENDING) rows are drained first so a backlog of rows awaiting
        manual review never holds them up. Previously unresolved rows are
        then retried once each, since anchors arrive independently. Every
        batch is committed on its own. Returns a summary of resolutions per
        method.
        """
        batch_size = limit or settings.ATTRIBUTION_BATCH_SIZE
        summary: Dict[str, Any] = {
            "candidates": 0,
            "resolved": 0,
            "unresolved": 0,
            "errors": 0,
            "returns_backfilled": 0,
            "by_method": {},
        }

        flagged_this_run: Set[uuid.UUID] = set()
        while True:
            batch = await self.store.list_unattributed(limit=batch_size, statuses=[AttributionStatus.PENDING])
            if not batch:
                break
            flagged_this_run.update(tx.id for tx in await self._resolve_batch(batch, summary))

        last_transaction_id = None
        while True:
            page = await self.store.list_unattributed(
                limit=batch_size,
                statuses=[AttributionStatus.UNRESOLVED],
                after_transaction_id=last_transaction_id,
            )
            if not page:
                break
            last_transaction_id = page[-1].transaction_id
            batch = [tx for tx in page if tx.id not in flagged_this_run]
            if batch:
                await self._resolve_batch(batch, summary)

        logger.info(
            f"Attribution: {summary['resolved']}/{summary['candidates']} resolved "
            f"{summary['by_method']}, {summary['unresolved']} unresolved"
        )
        return summary

    async def _resolve_batch(self, pending: List[Transaction], summary: Dict[str, Any]) -> List[Transaction]:
        """Run every strategy over one batch and commit it; returns the rows left unresolved."""
        summary["candidates"] += len(pending)
        facts = [TransactionFacts.from_model(tx) for tx in pending]
        snapshot = await self.build_snapshot(facts)

        # Anchor strategies first, so sibling sets include rows resolved in this batch
        remaining = self._run_pass(pending, snapshot, STRATEGIES[:2], summary)

        if self.provider is not None:
            remaining = await self._backfill_returns(remaining, snapshot, summary)

        await self.db.flush()
        invoice_ids = {tx.invoice_id_sb for tx in remaining if tx.invoice_id_sb}
        snapshot = AnchorSnapshot(
            shipments=snapshot.shipments,
            returns=snapshot.returns,
            return_shipments=snapshot.return_shipments,
            receiving_orders=snapshot.receiving_orders,
            orders=snapshot.orders,
            inventory=snapshot.inventory,
            invoice_clients=await self._invoice_clients(invoice_ids),
            payments_client_id=snapshot.payments_client_id,
            processing_fee_client_id=snapshot.processing_fee_client_id,
        )
        remaining = self._run_pass(remaining, snapshot, STRATEGIES[2:], summary)

        for tx in remaining:
            tx.attribution_status = AttributionStatus.UNRESOLVED.value
        summary["unresolved"] += len(remaining)

        merchants = await self._merchant_ids({tx.client_id for tx in pending if tx.client_id})
        for tx in pending:
            if tx.client_id is not None and tx.merchant_id is None:
                tx.merchant_id = merchants.get(tx.client_id)

        await self.db.commit()
        return remaining

        facts = [TransactionFacts.from_model(tx) for tx in pending]
        snapshot = await self.build_snapshot(facts)

        # Anchor strategies first, so sibling sets include rows resolved in this batch
        remaining = self._run_pass(pending, snapshot, STRATEGIES[:2], summary)

        if self.provider is not None:
            remaining = await self._backfill_returns(remaining, snapshot, summary)

        await self.db.flush()
        invoice_ids = {tx.invoice_id_sb for tx in remaining if tx.invoice_id_sb}
        snapshot = AnchorSnapshot(
            shipments=snapshot.shipments,
            returns=snapshot.returns,
            return_shipments=snapshot.return_shipments,
            receiving_orders=snapshot.receiving_orders,
            orders=snapshot.orders,
            inventory=snapshot.inventory,
            invoice_clients=await self._invoice_clients(invoice_ids),
            payments_client_id=snapshot.payments_client_id,
            processing_fee_client_id=snapshot.processing_fee_client_id,
        )
        remaining = self._run_pass(remaining, snapshot, STRATEGIES[2:], summary)

        for tx in remaining:
            tx.attribution_status = AttributionStatus.UNRESOLVED.value
        summary["unresolved"] = len(remaining)

        merchants = await self._merchant_ids({tx.client_id for tx in pending if tx.client_id})
        for tx in pending:
            if tx.client_id is not None and tx.merchant_id is None:
                tx.merchant_id = merchants.get(tx.client_id)

        await self.db.commit()
        logger.info(
            f"Attribution: {summary['resolved']}/{summary['candidates']} resolved "
            f"{summary['by_method']}, {summary['unresolved']} unresolved"
        )
        return summary

    async def _backfill_returns(
        self,
        remaining: List[Transaction],
        snapshot: AnchorSnapshot,
        summary: Dict[str, Any]
    ) -> List[Transaction]:
        """Fetch missing Return anchors from the provider and resolve through them."""
        missing = sorted({
            tx.reference_id for tx in remaining
            if tx.reference_type == ReferenceType.RETURN.value
            and _usable_reference(tx.reference_id)
            and tx.reference_id not in snapshot.returns
        })
        if not missing:
            return remaining

        fetched: Dict[str, Optional[uuid.UUID]] = {}
        for return_id in missing:
            try:
                provider_return = await self.provider.get_return(return_id)
            except ProviderAPIError as e:
                logger.warning(f"Return {return_id} back-fill failed: {e}")
                summary["errors"] += 1
                continue
            if provider_return is None:
                continue

            client_id = None
            if provider_return.original_shipment_id:
                client_id = await self.db.scalar(
                    select(Shipment.client_id).where(Shipment.shipment_id == provider_return.original_shipment_id)
                )
            if client_id is None and provider_return.user_id:
                client_id = await self.db.scalar(
                    select(Client.id).where(Client.merchant_id == provider_return.user_id)
                )

            self.db.add(Return(
                return_id=return_id,
                client_id=client_id,
                original_shipment_id=provider_return.original_shipment_id,
                tracking_id=provider_return.tracking_number,
                status=provider_return.status,
                return_type=provider_return.return_type,
            ))
            summary["returns_backfilled"] += 1
            fetched[return_id] = client_id

        still_pending = []
        for tx in remaining:
            client_id = fetched.get(tx.reference_id) if tx.reference_type == ReferenceType.RETURN.value else None
            if client_id is None:
                still_pending.append(tx)
                continue
            self._apply(tx, client_id, AttributionMethod.RETURN_BACKFILL)
            method = AttributionMethod.RETURN_BACKFILL.value
            summary["by_method"][method] = summary["by_method"].get(method, 0) + 1
            summary["resolved"] += 1
        return still_pending

    async def assign_manually(self, transaction_id: uuid.UUID, client_id: uuid.UUID) -> Transaction:
        """Resolve a transaction from the manual review queue."""
        tx = await self.db.get(Transaction, transaction_id)
        if tx is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        if tx.is_billed:
            raise InvoiceStateError(f"Transaction {tx.transaction_id} is already billed")
        client = await self.db.get(Client, client_id)
        if client is None or not client.is_active:
            raise ClientNotFoundError(f"Client {client_id} not found")

        self._apply(tx, client.id, AttributionMethod.MANUAL)
        tx.merchant_id = client.merchant_id
        await self.db.commit()
        await self.db.refresh(tx)
        return tx

    async def unattributed_report(self, sample_size: int = 20) -> Dict[str, Any]:
        """Counts of rows awaiting manual attribution, grouped for review."""
        rows = await self.store.list_unattributed()
        by_reference_type: Dict[str, int] = {}
        by_fee_type: Dict[str, int] = {}
        for tx in rows:
            by_reference_type[tx.reference_type or "None"] = by_reference_type.get(tx.reference_type or "None", 0) + 1
            by_fee_type[tx.fee_type or "None"] = by_fee_type.get(tx.fee_type or "None", 0) + 1
        return {
            "unattributed": len(rows),
            "unresolved": sum(1 for tx in rows if tx.attribution_status == AttributionStatus.UNRESOLVED.value),
            "by_reference_type": by_reference_type,
            "by_fee_type": by_fee_type,
            "sample_transaction_ids": [tx.transaction_id for tx in rows[:sample_size]],
        }
