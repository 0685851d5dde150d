"""Accounting API wire models.

These are ledger-specific models that map to the accounting API schema
(PascalCase fields, nested Phones/Addresses, /Date(...)/ timestamps).
They are separate from the canonical models in /core/models/.

Each model converts to and from the canonical dict shape used by the sync
engine.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_serializers import PlainSerializer
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated

from core.models.canonical import (
    DateValue,
    TimestampValue,
    _parse_decimal,
    canonical_record,
)

# Amounts go out as JSON numbers
WireDecimal = Annotated[
    Decimal,
    BeforeValidator(_parse_decimal),
    PlainSerializer(float, return_type=float, when_used="json"),
]


# =============================================================================
# Status Mapping
# =============================================================================

# Ledger invoice status -> canonical status
INVOICE_STATUS_FROM_LEDGER = {
    "DRAFT": "DRAFT",
    "SUBMITTED": "SENT",
    "AUTHORISED": "SENT",
    "PAID": "PAID",
    "VOIDED": "CANCELLED",
    "DELETED": "CANCELLED",
}

# Canonical invoice status -> ledger status
INVOICE_STATUS_TO_LEDGER = {
    "DRAFT": "DRAFT",
    "SENT": "AUTHORISED",
    "PAID": "AUTHORISED",
    "PARTIALLY_PAID": "AUTHORISED",
    "OVERDUE": "AUTHORISED",
    "CANCELLED": "VOIDED",
}

INVOICE_KIND_FROM_LEDGER = {"ACCREC": "receivable", "ACCPAY": "payable"}
INVOICE_KIND_TO_LEDGER = {v: k for k, v in INVOICE_KIND_FROM_LEDGER.items()}


# =============================================================================
# Accounting API Models
# =============================================================================

class LedgerWireModel(BaseModel):
    """Base model for accounting API entities."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class WirePhone(LedgerWireModel):
    PhoneType: str = "DEFAULT"
    PhoneNumber: Optional[str] = None
    PhoneAreaCode: Optional[str] = None
    PhoneCountryCode: Optional[str] = None


class WireAddress(LedgerWireModel):
    AddressType: str = "STREET"
    AddressLine1: Optional[str] = None
    City: Optional[str] = None
    Region: Optional[str] = None
    PostalCode: Optional[str] = None
    Country: Optional[str] = None


class WireContactRef(LedgerWireModel):
    ContactID: Optional[str] = None
    Name: Optional[str] = None


class WireContact(LedgerWireModel):
    """Ledger Contact entity.

    Maps to: /Contacts
    """
    ContactID: Optional[str] = None
    ContactNumber: Optional[str] = None
    ContactStatus: Optional[str] = None
    Name: Optional[str] = None
    FirstName: Optional[str] = None
    LastName: Optional[str] = None
    EmailAddress: Optional[str] = None
    Website: Optional[str] = None
    TaxNumber: Optional[str] = None
    AccountNumber: Optional[str] = None
    DefaultCurrency: Optional[str] = None
    AccountsReceivableTaxType: Optional[str] = None
    AccountsPayableTaxType: Optional[str] = None
    IsCustomer: Optional[bool] = None
    IsSupplier: Optional[bool] = None
    Phones: List[WirePhone] = Field(default_factory=list)
    Addresses: List[WireAddress] = Field(default_factory=list)
    Balances: Optional[Dict[str, Any]] = None
    UpdatedDateUTC: Optional[TimestampValue] = None

    def _phone(self) -> Optional[str]:
        for phone in self.Phones:
            if phone.PhoneType == "DEFAULT" and phone.PhoneNumber:
                parts = [phone.PhoneCountryCode, phone.PhoneAreaCode, phone.PhoneNumber]
                return " ".join(p for p in parts if p)
        return None

    def _address(self) -> Optional[WireAddress]:
        for preferred in ("STREET", "POBOX"):
            for address in self.Addresses:
                if address.AddressType == preferred and address.AddressLine1:
                    return address
        return None

    def to_canonical(self) -> Dict[str, Any]:
        address = self._address()
        person = " ".join(p for p in (self.FirstName, self.LastName) if p) or None
        receivable = (self.Balances or {}).get("AccountsReceivable") or {}
        return canonical_record("contact", {
            "remote_id": self.ContactID,
            "updated_at": self.UpdatedDateUTC,
            "name": self.Name,
            "email": self.EmailAddress,
            "phone": self._phone(),
            "address_line1": address.AddressLine1 if address else None,
            "city": address.City if address else None,
            "region": address.Region if address else None,
            "postal_code": address.PostalCode if address else None,
            "country": address.Country if address else None,
            "contact_person": person,
            "website": self.Website,
            "is_customer": bool(self.IsCustomer),
            "is_supplier": bool(self.IsSupplier),
            "contact_number": self.ContactNumber,
            "tax_number": self.TaxNumber,
            "default_currency": self.DefaultCurrency,
            "receivable_tax_type": self.AccountsReceivableTaxType,
            "payable_tax_type": self.AccountsPayableTaxType,
            "account_number": self.AccountNumber,
            "balance": receivable.get("Outstanding"),
        })

    @classmethod
    def from_canonical(cls, record: Dict[str, Any]) -> "WireContact":
        """Build an outbound contact. Only keys present in ``record`` are set."""
        data: Dict[str, Any] = {}
        simple = {
            "name": "Name",
            "email": "EmailAddress",
            "website": "Website",
            "contact_number": "ContactNumber",
        }
        for key, wire_key in simple.items():
            if key in record:
                data[wire_key] = record[key] or ""
        if "is_customer" in record:
            data["IsCustomer"] = bool(record["is_customer"])
        if "is_supplier" in record:
            data["IsSupplier"] = bool(record["is_supplier"])
        if "contact_person" in record:
            first, _, last = (record["contact_person"] or "").partition(" ")
            data["FirstName"] = first
            data["LastName"] = last
        if "phone" in record:
            data["Phones"] = [WirePhone(PhoneNumber=record["phone"] or "")]
        address_keys = ("address_line1", "city", "region", "postal_code", "country")
        if any(k in record for k in address_keys):
            data["Addresses"] = [WireAddress(
                AddressLine1=record.get("address_line1"),
                City=record.get("city"),
                Region=record.get("region"),
                PostalCode=record.get("postal_code"),
                Country=record.get("country"),
            )]
        return cls(**data)


class WireLineItem(LedgerWireModel):
    LineItemID: Optional[str] = None
    Description: Optional[str] = None
    Quantity: Optional[WireDecimal] = None
    UnitAmount: Optional[WireDecimal] = None
    AccountCode: Optional[str] = None
    TaxType: Optional[str] = None
    TaxAmount: Optional[WireDecimal] = None
    LineAmount: Optional[WireDecimal] = None

    def to_canonical(self) -> Dict[str, Any]:
        return {
            "description": self.Description,
            "quantity": self.Quantity,
            "unit_price": self.UnitAmount,
            "account_code": self.AccountCode,
            "tax_type": self.TaxType,
            "tax_amount": self.TaxAmount,
            "line_amount": self.LineAmount,
        }

    @classmethod
    def from_canonical(cls, line: Dict[str, Any]) -> "WireLineItem":
        return cls(
            Description=line.get("description"),
            Quantity=line.get("quantity"),
            UnitAmount=line.get("unit_price"),
            AccountCode=line.get("account_code"),
            TaxType=line.get("tax_type"),
        )


class WireInvoice(LedgerWireModel):
    """Ledger Invoice entity.

    Maps to: /Invoices
    """
    InvoiceID: Optional[str] = None
    InvoiceNumber: Optional[str] = None
    Type: Optional[str] = None
    Contact: Optional[WireContactRef] = None
    Status: Optional[str] = None
    Date: Optional[DateValue] = None
    DueDate: Optional[DateValue] = None
    CurrencyCode: Optional[str] = None
    Reference: Optional[str] = None
    LineAmountTypes: Optional[str] = None
    LineItems: List[WireLineItem] = Field(default_factory=list)
    SubTotal: Optional[WireDecimal] = None
    TotalTax: Optional[WireDecimal] = None
    Total: Optional[WireDecimal] = None
    AmountDue: Optional[WireDecimal] = None
    AmountPaid: Optional[WireDecimal] = None
    FullyPaidOnDate: Optional[DateValue] = None
    UpdatedDateUTC: Optional[TimestampValue] = None

    def to_canonical(self) -> Dict[str, Any]:
        return canonical_record("invoice", {
            "remote_id": self.InvoiceID,
            "updated_at": self.UpdatedDateUTC,
            "invoice_number": self.InvoiceNumber,
            "kind": INVOICE_KIND_FROM_LEDGER.get(self.Type or "ACCREC", "receivable"),
            "contact_id": self.Contact.ContactID if self.Contact else None,
            "status": INVOICE_STATUS_FROM_LEDGER.get(self.Status, self.Status),
            "issue_date": self.Date,
            "due_date": self.DueDate,
            "currency": self.CurrencyCode,
            "reference": self.Reference,
            "line_items": [line.to_canonical() for line in self.LineItems],
            "subtotal": self.SubTotal,
            "tax_amount": self.TotalTax,
            "total_amount": self.Total,
            "amount_due": self.AmountDue,
            "amount_paid": self.AmountPaid,
            "fully_paid_at": self.FullyPaidOnDate,
        })

    @classmethod
    def from_canonical(cls, record: Dict[str, Any]) -> "WireInvoice":
        """Build an outbound invoice. Only keys present in ``record`` are set."""
        data: Dict[str, Any] = {}
        if "invoice_number" in record:
            data["InvoiceNumber"] = record["invoice_number"]
        if "kind" in record:
            data["Type"] = INVOICE_KIND_TO_LEDGER.get(record["kind"] or "receivable", "ACCREC")
        if "contact_id" in record:
            data["Contact"] = WireContactRef(ContactID=record["contact_id"])
        if "status" in record and record["status"]:
            data["Status"] = INVOICE_STATUS_TO_LEDGER.get(record["status"], record["status"])
        if "issue_date" in record:
            data["Date"] = record["issue_date"]
        if "due_date" in record:
            data["DueDate"] = record["due_date"]
        if "currency" in record:
            data["CurrencyCode"] = record["currency"]
        if "reference" in record:
            data["Reference"] = record["reference"] or ""
        if "line_items" in record:
            data["LineItems"] = [WireLineItem.from_canonical(l) for l in record["line_items"] or []]
            data["LineAmountTypes"] = "Exclusive"
        return cls(**data)


class WireInvoiceRef(LedgerWireModel):
    InvoiceID: Optional[str] = None
    InvoiceNumber: Optional[str] = None
    CurrencyCode: Optional[str] = None


class WireAccountRef(LedgerWireModel):
    AccountID: Optional[str] = None
    Code: Optional[str] = None


class WirePayment(LedgerWireModel):
    """Ledger Payment entity.

    Maps to: /Payments
    """
    PaymentID: Optional[str] = None
    Invoice: Optional[WireInvoiceRef] = None
    Account: Optional[WireAccountRef] = None
    Date: Optional[DateValue] = None
    Amount: Optional[WireDecimal] = None
    Reference: Optional[str] = None
    Status: Optional[str] = None
    IsReconciled: Optional[bool] = None
    BankAmount: Optional[WireDecimal] = None
    UpdatedDateUTC: Optional[TimestampValue] = None

    def to_canonical(self) -> Dict[str, Any]:
        return canonical_record("payment", {
            "remote_id": self.PaymentID,
            "updated_at": self.UpdatedDateUTC,
            "invoice_id": self.Invoice.InvoiceID if self.Invoice else None,
            "amount": self.Amount,
            "payment_date": self.Date,
            "currency": self.Invoice.CurrencyCode if self.Invoice else None,
            "reference": self.Reference,
            "account_code": self.Account.Code if self.Account else None,
            "status": self.Status,
            "is_reconciled": self.IsReconciled,
            "bank_amount": self.BankAmount,
        })

    @classmethod
    def from_canonical(cls, record: Dict[str, Any]) -> "WirePayment":
        return cls(
            Invoice=WireInvoiceRef(InvoiceID=record.get("invoice_id")),
            Account=WireAccountRef(Code=record.get("account_code")),
            Date=record.get("payment_date"),
            Amount=record.get("amount"),
            Reference=record.get("reference"),
        )


WIRE_MODELS = {
    "contact": WireContact,
    "invoice": WireInvoice,
    "payment": WirePayment,
}


def parse_ledger_error(body: Dict[str, Any]) -> List[str]:
    """Collect validation messages from an error response body."""
    messages: List[str] = []
    for element in body.get("Elements") or []:
        for error in element.get("ValidationErrors") or []:
            if error.get("Message"):
                messages.append(error["Message"])
    if not messages and body.get("Message"):
        messages.append(body["Message"])
    if not messages and body.get("Detail"):
        messages.append(body["Detail"])
    return messages
