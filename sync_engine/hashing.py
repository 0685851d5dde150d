"""Change fingerprints and action classification.

A record's hash is the SHA-256 of a canonical JSON rendering of the fields
that side can change. Canonicalization makes values that mean the same
thing hash the same way regardless of which side produced them:

- field selection from the ownership table
- None and empty string are equivalent, strings are trimmed
- decimals fixed to 2 dp (quantities and unit prices to 4 dp)
- dates and timestamps as UTC ISO strings
- line items canonicalized one by one, empty lines dropped
- the correlation marker removed from the marker field
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from pydantic import BaseModel

from core.models.canonical import RECORD_MODELS
from core.models.sync import (
    ConflictDetail,
    ConflictType,
    EntityType,
    FieldDiff,
    ResolutionChoice,
    SyncAction,
    SyncOrigin,
)
from sync_engine.ownership import FieldOwnershipResolver, is_newer


# =============================================================================
# Correlation Markers
# =============================================================================

MARKER_PATTERN = re.compile(r"\s*\[sync:([A-Za-z0-9-]+)\]")


def extract_marker(value: Optional[str]) -> Optional[str]:
    """Correlation id embedded in a text field, if any."""
    if not value:
        return None
    match = MARKER_PATTERN.search(value)
    return match.group(1) if match else None


def strip_marker(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = MARKER_PATTERN.sub("", value).strip()
    return stripped or None


def apply_marker(value: Optional[str], correlation_id: str) -> str:
    """Replace any existing marker in ``value`` with the given run's marker."""
    base = strip_marker(value)
    marker = f"[sync:{correlation_id}]"
    return f"{base} {marker}" if base else marker


# =============================================================================
# Hasher
# =============================================================================

TWO_PLACES = Decimal("0.01")
FOUR_PLACES = Decimal("0.0001")
PRECISE_FIELDS = {"quantity", "unit_price"}


def _normalize(field: str, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        places = FOUR_PLACES if field in PRECISE_FIELDS else TWO_PLACES
        value = value.quantize(places, rounding=ROUND_HALF_UP)
        if value == 0:
            value = abs(value)
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


class ChangeHasher:
    """Canonicalizes records and fingerprints them."""

    def __init__(self, ownership: Optional[FieldOwnershipResolver] = None):
        self.ownership = ownership or FieldOwnershipResolver()

    def canonicalize(self, entity_type, record: Dict[str, Any], side) -> Dict[str, Any]:
        """Canonical view of the fields ``side`` can change."""
        et = EntityType(entity_type)
        rule = self.ownership.rule(et)
        return self._canonical_view(et, record, rule.fields_for(SyncOrigin(side)), SyncOrigin(side))

    def shared_view(self, entity_type, record: Dict[str, Any]) -> Dict[str, Any]:
        """Canonical view of the shared fields only."""
        et = EntityType(entity_type)
        return self._canonical_view(et, record, self.ownership.rule(et).shared, SyncOrigin.LOCAL)

    def _canonical_view(self, et: EntityType, record: Dict[str, Any], fields, side: SyncOrigin) -> Dict[str, Any]:
        rule = self.ownership.rule(et)
        model = RECORD_MODELS[et.value].model_validate(record)

        view: Dict[str, Any] = {}
        for field in sorted(fields):
            value = getattr(model, field, None)
            if field == "line_items" and rule.line_items is not None:
                line_fields = rule.line_items.fields_for(side)
                lines = []
                for line in value or []:
                    canonical_line = {
                        f: _normalize(f, getattr(line, f, None)) for f in sorted(line_fields)
                    }
                    if any(v is not None for v in canonical_line.values()):
                        lines.append(canonical_line)
                view[field] = lines
                continue
            if field == rule.marker_field:
                value = strip_marker(value)
            view[field] = _normalize(field, value)
        return view

    def hash(self, entity_type, record: Dict[str, Any], side) -> str:
        canonical = self.canonicalize(entity_type, record, side)
        encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# =============================================================================
# Conflict Detection
# =============================================================================

@dataclass
class Classification:
    """Decision for one local/remote pair."""
    action: SyncAction
    local_hash: Optional[str] = None
    remote_hash: Optional[str] = None
    needs_baseline: bool = False
    detail: Optional[ConflictDetail] = None
    reason: str = ""


class ConflictDetector:
    """Decides which way a record has to flow.

    With a baseline (hashes from the last successful sync):
        both unchanged -> NO_OP
        only local changed -> PUSH
        only remote changed -> PULL
        both changed -> CONFLICT, even when both landed on the same values

    Without a baseline the pair has never been reconciled: a record that
    exists on one side only is created on the other; when both exist the
    shared fields are compared and the newer record wins.
    """

    def __init__(self, hasher: Optional[ChangeHasher] = None):
        self.hasher = hasher or ChangeHasher()

    def classify(
        self,
        entity_type,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        last_local_hash: Optional[str] = None,
        last_remote_hash: Optional[str] = None,
        remote_as_local: Optional[Dict[str, Any]] = None,
    ) -> Classification:
        """Classify a pair.

        Args:
            entity_type: Record type
            local: Local record, or None when it does not exist locally
            remote: Remote record in canonical shape, or None
            last_local_hash: Local hash recorded at the last sync
            last_remote_hash: Remote hash recorded at the last sync
            remote_as_local: ``remote`` with references translated to local
                ids, used when comparing field values

        Returns:
            Classification with both current hashes
        """
        et = EntityType(entity_type)
        local_hash = self.hasher.hash(et, local, SyncOrigin.LOCAL) if local else None
        remote_hash = self.hasher.hash(et, remote, SyncOrigin.REMOTE) if remote else None
        comparable_remote = remote_as_local if remote_as_local is not None else remote

        def result(action: SyncAction, **kwargs) -> Classification:
            return Classification(action, local_hash=local_hash, remote_hash=remote_hash, **kwargs)

        if local is None and remote is None:
            return result(SyncAction.NO_OP, reason="missing on both sides")

        has_baseline = last_local_hash is not None or last_remote_hash is not None
        if not has_baseline:
            if remote is None:
                return result(SyncAction.PUSH, reason="new local record")
            if local is None:
                return result(SyncAction.PULL, reason="new remote record")
            if self.hasher.shared_view(et, local) == self.hasher.shared_view(et, comparable_remote):
                return result(SyncAction.NO_OP, needs_baseline=True, reason="already in agreement")
            if is_newer(local, remote):
                return result(SyncAction.PUSH, reason="local is newer")
            return result(SyncAction.PULL, reason="remote is newer or same age")

        # Deletions are not propagated
        if local is None:
            return result(SyncAction.NO_OP, reason="local record missing")
        if remote is None:
            return result(SyncAction.NO_OP, reason="remote record missing")

        local_changed = local_hash != last_local_hash
        remote_changed = remote_hash != last_remote_hash

        if not local_changed and not remote_changed:
            return result(SyncAction.NO_OP, reason="unchanged")
        if local_changed and not remote_changed:
            return result(SyncAction.PUSH, reason="local changed")
        if remote_changed and not local_changed:
            return result(SyncAction.PULL, reason="remote changed")

        return result(
            SyncAction.CONFLICT,
            detail=self.build_detail(et, local, remote, comparable_remote),
            reason="both changed",
        )

    def build_detail(
        self,
        entity_type,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        comparable_remote: Optional[Dict[str, Any]] = None,
        conflict_type: ConflictType = ConflictType.BOTH_MODIFIED,
    ) -> ConflictDetail:
        et = EntityType(entity_type)
        local_view = self.hasher.shared_view(et, local)
        remote_view = self.hasher.shared_view(et, comparable_remote or remote)
        diffs = [
            FieldDiff(field=field, local_value=local_view.get(field), remote_value=remote_view.get(field))
            for field in sorted(set(local_view) | set(remote_view))
            if local_view.get(field) != remote_view.get(field)
        ]

        if is_newer(local, remote):
            recommendation = ResolutionChoice.USE_LOCAL.value
        elif is_newer(remote, local):
            recommendation = ResolutionChoice.USE_REMOTE.value
        else:
            recommendation = None

        return ConflictDetail(
            entity_type=et,
            entity_id=local.get("id"),
            remote_id=remote.get("remote_id") or local.get("remote_id"),
            conflict_type=conflict_type,
            local_snapshot=snapshot_record(local),
            remote_snapshot=snapshot_record(remote),
            fields=diffs,
            recommendation=recommendation,
        )


def snapshot_record(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-safe copy of a record for storage in conflict data and logs."""
    if record is None:
        return None
    return json.loads(json.dumps(record, default=_json_default))


def _json_default(value: Any):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
