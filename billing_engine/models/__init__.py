from billing_engine.models.client import Client
from billing_engine.models.anchors import Shipment, Return, ReceivingOrder, Order, InventoryItem
from billing_engine.models.transaction import (
    SettlementInvoice,
    Transaction,
    ReferenceType,
    TransactionType,
    AttributionStatus,
    AttributionMethod,
)
from billing_engine.models.invoice import Invoice, InvoiceLineItem, InvoiceStatus, LineCategory
from billing_engine.models.markup_rule import MarkupRule, MarkupRuleHistory, BillingCategory, MarkupType

__all__ = [
    "Client",
    # Anchors
    "Shipment",
    "Return",
    "ReceivingOrder",
    "Order",
    "InventoryItem",
    # Transaction store
    "SettlementInvoice",
    "Transaction",
    "ReferenceType",
    "TransactionType",
    "AttributionStatus",
    "AttributionMethod",
    # Invoices
    "Invoice",
    "InvoiceLineItem",
    "InvoiceStatus",
    "LineCategory",
    # Markup
    "MarkupRule",
    "MarkupRuleHistory",
    "BillingCategory",
    "MarkupType",
]
