"""In-process ledger for development and tests.

Behaves like the HTTP ledger from the engine's point of view:
- records come back as canonical dicts with remote ids and update times
- invoice and payment totals are recomputed by the ledger on every write
- the reference field is stored and echoed back verbatim
- pages are ordered by update time, page size is configurable

Faults can be queued per operation to exercise error handling.
"""

import asyncio
import copy
import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional

from connectors.ledger_base import (
    AuthError,
    LedgerConfig,
    LedgerPage,
    LedgerValidationError,
    NotFoundError,
    RemoteLedgerClient,
    TokenSet,
    register_connector,
)
from core.models.canonical import canonical_record, parse_timestamp

# Tax rates applied when the ledger computes line tax
DEFAULT_TAX_RATES = {
    "OUTPUT": Decimal("0.10"),
    "INPUT": Decimal("0.10"),
    "NONE": Decimal("0"),
}

_CENT = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)


@register_connector("memory")
class InMemoryLedgerClient(RemoteLedgerClient):
    """Deterministic in-memory ledger.

    Usage:
        ledger = InMemoryLedgerClient()
        remote_id = ledger.seed("contact", {"name": "Acme", "email": "ap@acme.test"})
        ledger.edit("contact", remote_id, phone="555-0100")
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tax_rates: Optional[Dict[str, Decimal]] = None,
        token_lifetime: timedelta = timedelta(minutes=30),
    ):
        super().__init__(config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tax_rates = tax_rates or dict(DEFAULT_TAX_RATES)
        self.token_lifetime = token_lifetime
        self.page_size = self.config.page_size
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._faults: Dict[str, deque] = defaultdict(deque)

        # Observability for tests
        self.calls: List[tuple] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.valid_refresh_tokens: Optional[set] = None

    # =========================================================================
    # Test helpers
    # =========================================================================

    def seed(self, entity_type: str, record: Dict[str, Any], remote_id: Optional[str] = None) -> str:
        """Insert a record as if created directly in the ledger."""
        remote_id = remote_id or record.get("remote_id") or str(uuid.uuid4())
        stored = canonical_record(entity_type, record)
        stored["remote_id"] = remote_id
        stored.pop("id", None)
        if not record.get("updated_at"):
            stored["updated_at"] = self._clock().isoformat()
        self._records[entity_type][remote_id] = stored
        self._recompute(entity_type, remote_id)
        return remote_id

    def edit(self, entity_type: str, remote_id: str, updated_at: Optional[datetime] = None, **changes) -> None:
        """Change a record as if edited by a ledger user."""
        record = self._records[entity_type][remote_id]
        record.update(canonical_record(entity_type, {**record, **changes}))
        record["remote_id"] = remote_id
        record["updated_at"] = (updated_at or self._clock()).isoformat()
        self._recompute(entity_type, remote_id)

    def record(self, entity_type: str, remote_id: str) -> Dict[str, Any]:
        return copy.deepcopy(self._records[entity_type][remote_id])

    def records(self, entity_type: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._records[entity_type].values()]

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Queue an error for the next call(s) of an operation.

        Args:
            operation: "list", "get", "create", "update" or "refresh"
            error: Exception instance to raise
            times: How many consecutive calls fail
        """
        for _ in range(times):
            self._faults[operation].append(error)

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("create", "update")]

    def _maybe_fail(self, operation: str) -> None:
        if self._faults[operation]:
            raise self._faults[operation].popleft()

    # =========================================================================
    # Ledger-side computation
    # =========================================================================

    def _recompute(self, entity_type: str, remote_id: str) -> None:
        if entity_type == "invoice":
            self._recompute_invoice(remote_id)
        elif entity_type == "payment":
            payment = self._records["payment"][remote_id]
            if not payment.get("status"):
                payment["status"] = "AUTHORISED"
            payment["bank_amount"] = payment.get("amount")
            if payment.get("is_reconciled") is None:
                payment["is_reconciled"] = False
            if payment.get("invoice_id") in self._records["invoice"]:
                self._recompute_invoice(payment["invoice_id"])

    def _recompute_invoice(self, remote_id: str) -> None:
        invoice = self._records["invoice"][remote_id]
        subtotal = Decimal("0")
        tax_total = Decimal("0")
        for line in invoice.get("line_items") or []:
            line_amount = _money(Decimal(str(line.get("quantity") or 0)) * Decimal(str(line.get("unit_price") or 0)))
            rate = self.tax_rates.get(line.get("tax_type") or "NONE", Decimal("0"))
            line_tax = _money(line_amount * rate)
            line["line_amount"] = str(line_amount)
            line["tax_amount"] = str(line_tax)
            subtotal += line_amount
            tax_total += line_tax

        paid = sum(
            (_money(p.get("amount")) for p in self._records["payment"].values()
             if p.get("invoice_id") == remote_id and p.get("status") != "DELETED"),
            Decimal("0"),
        )
        total = subtotal + tax_total
        invoice["subtotal"] = str(_money(subtotal))
        invoice["tax_amount"] = str(_money(tax_total))
        invoice["total_amount"] = str(_money(total))
        invoice["amount_paid"] = str(_money(paid))
        invoice["amount_due"] = str(_money(total - paid))
        if total > 0 and paid >= total:
            invoice["status"] = "PAID"
            invoice["fully_paid_at"] = invoice.get("fully_paid_at") or self._clock().isoformat()

    # =========================================================================
    # RemoteLedgerClient
    # =========================================================================

    async def list_entities(
        self,
        entity_type: str,
        cursor: Optional[str] = None,
        modified_since: Optional[datetime] = None,
    ) -> LedgerPage:
        self.calls.append(("list", entity_type, cursor))
        self._maybe_fail("list")
        await asyncio.sleep(0)

        records = list(self._records[entity_type].values())
        if modified_since is not None:
            since = parse_timestamp(modified_since)
            records = [r for r in records if parse_timestamp(r["updated_at"]) >= since]
        records.sort(key=lambda r: (parse_timestamp(r["updated_at"]), r["remote_id"]))

        offset = int(cursor or 0)
        page = records[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return LedgerPage(
            items=[copy.deepcopy(r) for r in page],
            next_cursor=str(next_offset) if next_offset < len(records) else None,
            total=len(records),
        )

    async def get_entity(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get", entity_type, remote_id))
        self._maybe_fail("get")
        await asyncio.sleep(0)
        record = self._records[entity_type].get(remote_id)
        return copy.deepcopy(record) if record else None

    async def create_entity(self, entity_type: str, payload: Dict[str, Any]) -> str:
        self.calls.append(("create", entity_type, None))
        self._maybe_fail("create")
        await asyncio.sleep(0)
        self._validate(entity_type, payload)
        remote_id = str(uuid.uuid4())
        stored = canonical_record(entity_type, payload)
        stored.pop("id", None)
        stored["remote_id"] = remote_id
        stored["updated_at"] = self._clock().isoformat()
        self._records[entity_type][remote_id] = stored
        self._recompute(entity_type, remote_id)
        return remote_id

    async def update_entity(self, entity_type: str, remote_id: str, payload: Dict[str, Any]) -> None:
        self.calls.append(("update", entity_type, remote_id))
        self._maybe_fail("update")
        await asyncio.sleep(0)
        existing = self._records[entity_type].get(remote_id)
        if existing is None:
            raise NotFoundError(f"{entity_type} {remote_id} not found", 404)
        merged = {**existing, **payload}
        self._validate(entity_type, merged)
        existing.update(canonical_record(entity_type, merged))
        existing.pop("id", None)
        existing["remote_id"] = remote_id
        existing["updated_at"] = self._clock().isoformat()
        self._recompute(entity_type, remote_id)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self.refresh_calls += 1
        self._maybe_fail("refresh")
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.valid_refresh_tokens is not None and refresh_token not in self.valid_refresh_tokens:
            raise AuthError("invalid_grant", 400)
        return TokenSet(
            access_token=f"access-{uuid.uuid4().hex}",
            refresh_token=f"refresh-{uuid.uuid4().hex}",
            expires_at=self._clock() + self.token_lifetime,
        )

    def _validate(self, entity_type: str, payload: Dict[str, Any]) -> None:
        if entity_type == "contact" and not (payload.get("name") or "").strip():
            raise LedgerValidationError("Contact name is required", messages=["Name is required"])
        if entity_type == "payment":
            invoice_id = payload.get("invoice_id")
            if invoice_id not in self._records["invoice"]:
                raise LedgerValidationError(
                    f"Invoice {invoice_id} does not exist", messages=["Invoice not found"]
                )
            invoice = self._records["invoice"][invoice_id]
            if invoice.get("status") in (None, "DRAFT", "CANCELLED"):
                raise LedgerValidationError(
                    "Payments can only be applied to approved invoices",
                    messages=[f"Invoice status is {invoice.get('status')}"],
                )
