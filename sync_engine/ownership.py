"""Field ownership and reference translation.

Every synchronized field has exactly one owner:
- remote-owned: computed or maintained by the ledger (totals, tax settings).
  Never pushed; pulled values overwrite local copies.
- local-owned: exists only in the local system (notes, project links).
  Never pushed; never overwritten by a pull.
- shared: edited on both sides. Last writer wins on the record's
  ``updated_at`` unless the write is forced.

References between records (invoice -> contact, payment -> invoice) hold
local ids locally and remote ids in the ledger. LinkResolver translates
them through the records' remote_id links.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from core.models.canonical import parse_timestamp
from core.models.sync import EntityType, SyncDirection, SyncOrigin
from sync_engine.errors import UnresolvedReferenceError


class FieldOwner(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"
    SHARED = "shared"


@dataclass(frozen=True)
class OwnershipRule:
    """Ownership of every synchronized field of one record type."""
    remote_owned: FrozenSet[str]
    local_owned: FrozenSet[str]
    shared: FrozenSet[str]
    marker_field: Optional[str] = None
    line_items: Optional["OwnershipRule"] = None

    def fields_for(self, side: SyncOrigin) -> FrozenSet[str]:
        """Fields whose changes on ``side`` have to reach the other side.

        Local-owned fields never leave the local system, so only shared
        fields count as a local change.
        """
        if SyncOrigin(side) == SyncOrigin.LOCAL:
            return self.shared
        return self.shared | self.remote_owned

    def owner(self, field: str) -> Optional[FieldOwner]:
        if field in self.shared:
            return FieldOwner.SHARED
        if field in self.remote_owned:
            return FieldOwner.REMOTE
        if field in self.local_owned:
            return FieldOwner.LOCAL
        return None


LINE_ITEM_RULE = OwnershipRule(
    remote_owned=frozenset({"tax_amount", "line_amount"}),
    local_owned=frozenset(),
    shared=frozenset({"description", "quantity", "unit_price", "account_code", "tax_type"}),
)

OWNERSHIP_TABLE: Dict[EntityType, OwnershipRule] = {
    EntityType.CONTACT: OwnershipRule(
        remote_owned=frozenset({
            "tax_number", "default_currency", "receivable_tax_type",
            "payable_tax_type", "account_number", "balance",
        }),
        local_owned=frozenset({"notes", "customer_number", "category", "is_active"}),
        shared=frozenset({
            "name", "email", "phone", "address_line1", "city", "region",
            "postal_code", "country", "contact_person", "website",
            "is_customer", "is_supplier",
        }),
        marker_field="contact_number",
    ),
    EntityType.INVOICE: OwnershipRule(
        remote_owned=frozenset({
            "subtotal", "tax_amount", "total_amount", "amount_due",
            "amount_paid", "fully_paid_at",
        }),
        local_owned=frozenset({"notes", "project_id", "quotation_id"}),
        shared=frozenset({
            "invoice_number", "kind", "contact_id", "status", "issue_date",
            "due_date", "currency", "reference", "line_items",
        }),
        marker_field="reference",
        line_items=LINE_ITEM_RULE,
    ),
    EntityType.PAYMENT: OwnershipRule(
        remote_owned=frozenset({"status", "is_reconciled", "bank_amount"}),
        local_owned=frozenset({"notes", "receipt_number"}),
        shared=frozenset({
            "invoice_id", "amount", "payment_date", "currency", "reference",
            "account_code",
        }),
        marker_field="reference",
    ),
}

# entity type -> {reference field: referenced entity type}
REFERENCE_FIELDS: Dict[EntityType, Dict[str, EntityType]] = {
    EntityType.CONTACT: {},
    EntityType.INVOICE: {"contact_id": EntityType.CONTACT},
    EntityType.PAYMENT: {"invoice_id": EntityType.INVOICE},
}

# Keys used to link records that exist on both sides but were never synced,
# tried in order
NATURAL_KEYS: Dict[EntityType, List[Tuple[str, ...]]] = {
    EntityType.CONTACT: [("email",), ("name",)],
    EntityType.INVOICE: [("invoice_number", "kind")],
    EntityType.PAYMENT: [],
}


def is_newer(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> bool:
    """True when ``a`` was modified strictly after ``b``."""
    if not a or not b:
        return False
    a_ts = parse_timestamp(a.get("updated_at"))
    b_ts = parse_timestamp(b.get("updated_at"))
    if a_ts is None or b_ts is None:
        return False
    return a_ts > b_ts


class FieldOwnershipResolver:
    """Applies the ownership table to outbound and inbound payloads."""

    def __init__(self, table: Optional[Dict[EntityType, OwnershipRule]] = None):
        self.table = table or OWNERSHIP_TABLE

    def rule(self, entity_type) -> OwnershipRule:
        return self.table[EntityType(entity_type)]

    def owner(self, entity_type, field: str) -> Optional[FieldOwner]:
        return self.rule(entity_type).owner(field)

    def marker_field(self, entity_type) -> Optional[str]:
        return self.rule(entity_type).marker_field

    def mask_for_direction(
        self,
        entity_type,
        direction,
        full_payload: Dict[str, Any],
        counterpart: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> Dict[str, Any]:
        """Filter a record down to the fields that may flow in ``direction``.

        Args:
            entity_type: Record type
            direction: PUSH (local -> ledger) or PULL (ledger -> local)
            full_payload: Source record
            counterpart: Current copy on the receiving side. When it was
                modified more recently than the source, its shared fields
                are kept (last writer wins)
            force: Ignore last-writer-wins and send all shared fields

        Returns:
            New dict containing only transferable fields
        """
        rule = self.rule(entity_type)
        direction = SyncDirection(direction)
        if direction == SyncDirection.PUSH:
            allowed = rule.shared
        elif direction == SyncDirection.PULL:
            allowed = rule.shared | rule.remote_owned
        else:
            raise ValueError(f"Cannot mask for direction {direction.value}")

        counterpart_wins = not force and is_newer(counterpart, full_payload)

        masked: Dict[str, Any] = {}
        for field in sorted(allowed):
            if field not in full_payload:
                continue
            if counterpart_wins and field in rule.shared:
                continue
            value = full_payload[field]
            if field == "line_items" and rule.line_items is not None:
                value = [self._mask_line(rule.line_items, line, direction) for line in value or []]
            masked[field] = value
        return masked

    @staticmethod
    def _mask_line(rule: OwnershipRule, line: Dict[str, Any], direction: SyncDirection) -> Dict[str, Any]:
        allowed = rule.shared if direction == SyncDirection.PUSH else rule.shared | rule.remote_owned
        return {k: v for k, v in line.items() if k in allowed}


class LinkResolver:
    """Translates reference fields between local and remote ids.

    During a dry run nothing is written, so records that would be created
    get provisional ids; later records in the same run can still resolve
    references to them.
    """

    def __init__(self, store):
        self.store = store
        self._provisional_local: Dict[Tuple[str, str], str] = {}
        self._provisional_remote: Dict[Tuple[str, str], str] = {}

    def reset(self) -> None:
        self._provisional_local.clear()
        self._provisional_remote.clear()

    def remember_provisional(self, entity_type, local_id: str, remote_id: str) -> None:
        et = EntityType(entity_type).value
        self._provisional_local[(et, remote_id)] = local_id
        self._provisional_remote[(et, local_id)] = remote_id

    def remote_id_for(self, entity_type, local_id: str) -> Optional[str]:
        et = EntityType(entity_type).value
        local = self.store.get_local(et, local_id)
        if local and local.get("remote_id"):
            return local["remote_id"]
        state = self.store.get_state(et, local_id)
        if state and state.remote_id:
            return state.remote_id
        return self._provisional_remote.get((et, local_id))

    def local_id_for(self, entity_type, remote_id: str) -> Optional[str]:
        et = EntityType(entity_type).value
        local = self.store.find_local_by_remote_id(et, remote_id)
        if local:
            return local["id"]
        state = self.store.get_state_by_remote_id(et, remote_id)
        if state:
            return state.entity_id
        return self._provisional_local.get((et, remote_id))

    def _translate(self, entity_type, payload: Dict[str, Any], lookup, strict: bool) -> Dict[str, Any]:
        et = EntityType(entity_type)
        translated = dict(payload)
        for field, target in REFERENCE_FIELDS[et].items():
            value = translated.get(field)
            if not value:
                continue
            resolved = lookup(target, value)
            if resolved is None and strict:
                raise UnresolvedReferenceError(et.value, field, value, target.value)
            translated[field] = resolved
        return translated

    def to_remote(self, entity_type, payload: Dict[str, Any], strict: bool = True) -> Dict[str, Any]:
        """Replace local reference ids with remote ids."""
        return self._translate(entity_type, payload, self.remote_id_for, strict)

    def to_local(self, entity_type, payload: Dict[str, Any], strict: bool = True) -> Dict[str, Any]:
        """Replace remote reference ids with local ids."""
        return self._translate(entity_type, payload, self.local_id_for, strict)

    def match_unlinked_local(self, entity_type, remote_as_local: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Find a never-synced local record that is the same business record.

        Tries each natural key in order and accepts only an unambiguous
        match among local records that have no remote link yet.
        """
        et = EntityType(entity_type)
        for keys in NATURAL_KEYS[et]:
            values = {k: remote_as_local.get(k) for k in keys}
            if any(v in (None, "") for v in values.values()):
                continue
            candidates = [
                r for r in self.store.find_local(et.value, **values)
                if not r.get("remote_id") and self.store.get_state(et.value, r["id"]) is None
            ]
            if len(candidates) == 1:
                return candidates[0]
            if len(candidates) > 1:
                return None
        return None
