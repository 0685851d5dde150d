"""Core canonical data models - ledger-neutral business records.

These models represent contacts, invoices and payments in a standardized
format that is independent of the remote ledger's wire format. Both the
local store and the ledger connectors exchange records in this shape.

Ledger-specific field mappings are handled in /connectors/.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers (handle the formats the ledger API and host app produce)
# =============================================================================

# Microsoft JSON date as emitted by some accounting APIs: /Date(1700000000000+0000)/
_MS_JSON_DATE = re.compile(r"^/Date\((-?\d+)([+-]\d{4})?\)/$")


def _parse_decimal(value):
    """Parse decimal from various formats (string with $ or commas, floats, etc.)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot parse decimal from bool: {value}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        s = s.replace("$", "").replace(",", "")
        if s.startswith("(") and s.endswith(")"):
            s = "-" + s[1:-1]
        return Decimal(s)
    return value


def _parse_datetime(value):
    """Parse a timestamp into a timezone-aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        match = _MS_JSON_DATE.match(s)
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        parsed = datetime.fromisoformat(s)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _parse_date(value):
    """Parse date from various string formats."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        if _MS_JSON_DATE.match(s):
            return _parse_datetime(s).date()
        if "T" in s:
            return _parse_datetime(s).date()
        for fmt in ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y"):
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse date: {s}")
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Public wrapper used by the sync engine for record timestamps."""
    return _parse_datetime(value)


# Annotated types for automatic parsing
DecimalValue = Annotated[Decimal, BeforeValidator(_parse_decimal)]
DateValue = Annotated[date, BeforeValidator(_parse_date)]
TimestampValue = Annotated[datetime, BeforeValidator(_parse_datetime)]


# =============================================================================
# Base Model
# =============================================================================

class CanonicalBase(BaseModel):
    """Base model for all canonical record structures."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RecordBase(CanonicalBase):
    """Fields every synchronized record carries."""
    id: Optional[str] = None
    remote_id: Optional[str] = None
    updated_at: Optional[TimestampValue] = None


# =============================================================================
# Contacts
# =============================================================================

class ContactRecord(RecordBase):
    """Customer or supplier contact."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    contact_person: Optional[str] = None
    website: Optional[str] = None
    is_customer: bool = False
    is_supplier: bool = False

    # External-system reference kept on the ledger contact
    contact_number: Optional[str] = None

    # Ledger-maintained
    tax_number: Optional[str] = None
    default_currency: Optional[str] = None
    receivable_tax_type: Optional[str] = None
    payable_tax_type: Optional[str] = None
    account_number: Optional[str] = None
    balance: Optional[DecimalValue] = None

    # Local-only
    notes: Optional[str] = None
    customer_number: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True


# =============================================================================
# Invoices
# =============================================================================

class InvoiceLine(CanonicalBase):
    """A single invoice line."""
    description: Optional[str] = None
    quantity: Optional[DecimalValue] = None
    unit_price: Optional[DecimalValue] = None
    account_code: Optional[str] = None
    tax_type: Optional[str] = None

    # Ledger-computed
    tax_amount: Optional[DecimalValue] = None
    line_amount: Optional[DecimalValue] = None


class InvoiceRecord(RecordBase):
    """Sales (receivable) or purchase (payable) invoice."""
    invoice_number: Optional[str] = None
    kind: str = "receivable"
    contact_id: Optional[str] = None
    status: Optional[str] = None
    issue_date: Optional[DateValue] = None
    due_date: Optional[DateValue] = None
    currency: Optional[str] = None
    reference: Optional[str] = None
    line_items: List[InvoiceLine] = Field(default_factory=list)

    # Ledger-computed
    subtotal: Optional[DecimalValue] = None
    tax_amount: Optional[DecimalValue] = None
    total_amount: Optional[DecimalValue] = None
    amount_due: Optional[DecimalValue] = None
    amount_paid: Optional[DecimalValue] = None
    fully_paid_at: Optional[TimestampValue] = None

    # Local-only
    notes: Optional[str] = None
    project_id: Optional[str] = None
    quotation_id: Optional[str] = None


# =============================================================================
# Payments
# =============================================================================

class PaymentRecord(RecordBase):
    """Payment applied against an invoice."""
    invoice_id: Optional[str] = None
    amount: Optional[DecimalValue] = None
    payment_date: Optional[DateValue] = None
    currency: Optional[str] = None
    reference: Optional[str] = None
    account_code: Optional[str] = None

    # Ledger-maintained
    status: Optional[str] = None
    is_reconciled: Optional[bool] = None
    bank_amount: Optional[DecimalValue] = None

    # Local-only
    notes: Optional[str] = None
    receipt_number: Optional[str] = None


RECORD_MODELS = {
    "contact": ContactRecord,
    "invoice": InvoiceRecord,
    "payment": PaymentRecord,
}


def canonical_record(entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a raw record and return its JSON-safe canonical dict.

    Decimals become strings, dates become ISO strings. Unknown keys are
    dropped.
    """
    model = RECORD_MODELS[getattr(entity_type, "value", entity_type)]
    return model.model_validate(data).model_dump(mode="json")
