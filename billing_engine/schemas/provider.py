"""
Provider Payload Schemas.

Pydantic models for the provider billing API payloads and the secondary
daily cost extract rows. Provider field names are kept as-is; mapping to
Transaction Store columns happens in to_row().
"""
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _coerce_date(value: Any) -> Any:
    """Accept provider ISO timestamps where a calendar date is expected."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


def _coerce_id(value: Any) -> Any:
    """Provider ids arrive as ints or strings; store them as strings."""
    if value is None or isinstance(value, str):
        return value
    return str(value)


def parse_currency(value: Any) -> Decimal:
    """Parse "$1,234.56" style amounts; blanks and garbage parse as zero."""
    if value is None:
        return Decimal("0")
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    cleaned = str(value).replace("$", "").replace(",", "").strip()
    if not cleaned:
        return Decimal("0")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")


class TaxItem(BaseModel):
    """Itemized tax on a provider transaction."""
    model_config = ConfigDict(extra='ignore')

    tax_type: Optional[str] = None
    amount: Decimal = Decimal("0")
    tax_rate: Optional[Decimal] = None


class ProviderTransaction(BaseModel):
    """Transaction record as returned by the provider billing API."""
    model_config = ConfigDict(extra='ignore')

    transaction_id: str
    amount: Decimal
    currency_code: str = "USD"
    charge_date: date
    invoiced_status: bool = False
    invoice_date: Optional[date] = None
    invoice_id: Optional[str] = None
    invoice_type: Optional[str] = None
    transaction_fee: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    transaction_type: Optional[str] = None
    fulfillment_center: Optional[str] = None
    taxes: List[TaxItem] = Field(default_factory=list)
    additional_details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('charge_date', 'invoice_date', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return _coerce_date(v)

    @field_validator('invoice_id', 'reference_id', mode='before')
    @classmethod
    def parse_ids(cls, v):
        return _coerce_id(v)

    @field_validator('taxes', 'additional_details', mode='before')
    @classmethod
    def none_to_empty(cls, v, info):
        if v is None:
            return [] if info.field_name == 'taxes' else {}
        return v

    @property
    def tracking_id(self) -> Optional[str]:
        tracking = self.additional_details.get("TrackingId")
        return str(tracking) if tracking else None

    @property
    def is_settled(self) -> bool:
        return self.invoice_id is not None and self.invoice_id not in ("", "0")

    def to_row(self) -> Dict[str, Any]:
        """Map to Transaction Store column values for an insert."""
        return {
            "transaction_id": self.transaction_id,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "fee_type": self.transaction_fee,
            "transaction_type": self.transaction_type,
            "ingested_amount": self.amount,
            "cost": self.amount,
            "taxes": [tax.model_dump(mode="json") for tax in self.taxes],
            "currency_code": self.currency_code,
            "charge_date": self.charge_date,
            "fulfillment_center": self.fulfillment_center,
            "tracking_id": self.tracking_id,
            "additional_details": self.additional_details,
            "invoice_id_sb": self.invoice_id if self.is_settled else None,
            "invoiced_status_sb": self.invoiced_status or self.is_settled,
            "invoice_date_sb": self.invoice_date,
        }


class ProviderInvoice(BaseModel):
    """Settlement invoice as returned by the provider billing API."""
    model_config = ConfigDict(extra='ignore')

    invoice_id: str
    invoice_date: Optional[date] = None
    invoice_type: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency_code: str = "USD"
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    @field_validator('invoice_id', mode='before')
    @classmethod
    def parse_id(cls, v):
        return _coerce_id(v)

    @field_validator('invoice_date', 'period_start', 'period_end', mode='before')
    @classmethod
    def parse_dates(cls, v):
        return _coerce_date(v)


class ProviderReturn(BaseModel):
    """Return record from the provider returns API (point lookup)."""
    model_config = ConfigDict(extra='ignore')

    id: str
    original_shipment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    status: Optional[str] = None
    return_type: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator('id', 'original_shipment_id', 'user_id', mode='before')
    @classmethod
    def parse_ids(cls, v):
        return _coerce_id(v)


class CostExtractRow(BaseModel):
    """
    One row of the daily cost extract.

    CSV columns: OrderID (the shipment id), Tracking Number, User ID,
    Merchant Name, Invoice Number, Fulfillment without Surcharge,
    Surcharge Applied, Original Invoice, Insurance Amount.
    """
    shipment_id: str
    tracking_id: Optional[str] = None
    user_id: Optional[str] = None
    merchant_name: Optional[str] = None
    invoice_id_sb: Optional[str] = None
    base_cost: Decimal = Decimal("0")
    surcharge: Decimal = Decimal("0")
    insurance_cost: Decimal = Decimal("0")
    total: Decimal = Decimal("0")  # base_cost + surcharge, excluding insurance

    @field_validator('base_cost', 'surcharge', 'insurance_cost', 'total', mode='before')
    @classmethod
    def parse_amounts(cls, v):
        return parse_currency(v)

    @field_validator('tracking_id', 'invoice_id_sb', 'user_id', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def is_refund(self) -> bool:
        return self.base_cost < 0 or self.total < 0
