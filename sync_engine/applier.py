"""Applies classified changes to the ledger or the local store.

Each apply is one unit:
1. Filter the source record through the ownership table
2. Translate references to the receiving side's ids
3. Write (remote writes carry the run's correlation marker)
4. Update SyncState and append the audit entry in one store transaction
   (for pulls the local write is part of that transaction too)

In dry-run mode steps 3 and 4 are replaced by an application-log preview;
nothing is written anywhere.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from connectors.ledger_base import RateLimitError, RemoteLedgerClient, TransientNetworkError
from core.models.sync import (
    ConflictDetail,
    EntityType,
    SyncAction,
    SyncDirection,
    SyncOperation,
    SyncOrigin,
    SyncState,
    SyncStatus,
    new_id,
    utcnow,
)
from core.observability.logging import get_logger
from storage.base import SyncStore
from sync_engine.audit import AuditLogger, create_log_entry
from sync_engine.errors import SyncValidationError
from sync_engine.hashing import ChangeHasher, Classification, apply_marker, snapshot_record, strip_marker
from sync_engine.ownership import FieldOwnershipResolver, LinkResolver

logger = get_logger(__name__)

DRY_RUN_PREFIX = "dry-run:"
UNPAYABLE_INVOICE_STATUSES = {"DRAFT", "CANCELLED"}


@dataclass
class SyncContext:
    """Per-run settings every apply needs."""
    correlation_id: str
    integration_id: str = "default"
    dry_run: bool = False
    user_id: Optional[str] = None


@dataclass
class Candidate:
    """A local/remote pair under consideration.

    ``phase`` is the run phase that produced the pair; its origin side is
    what the audit trail records for skips and conflicts.
    """
    entity_type: EntityType
    phase: SyncDirection
    local: Optional[Dict[str, Any]] = None
    remote: Optional[Dict[str, Any]] = None
    state: Optional[SyncState] = None

    @property
    def entity_id(self) -> Optional[str]:
        if self.local:
            return self.local.get("id")
        return self.state.entity_id if self.state else None

    @property
    def remote_id(self) -> Optional[str]:
        if self.state and self.state.remote_id:
            return self.state.remote_id
        if self.local and self.local.get("remote_id"):
            return self.local["remote_id"]
        return self.remote.get("remote_id") if self.remote else None

    @property
    def origin(self) -> SyncOrigin:
        return SyncOrigin.REMOTE if self.phase == SyncDirection.PULL else SyncOrigin.LOCAL


class ApplyOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    entity_id: Optional[str] = None
    remote_id: Optional[str] = None
    local_hash: Optional[str] = None
    remote_hash: Optional[str] = None
    preview: Optional[Dict[str, Any]] = None


class ChangeApplier:
    """Writes PUSH/PULL decisions and records every other decision."""

    def __init__(
        self,
        store: SyncStore,
        client: RemoteLedgerClient,
        audit: AuditLogger,
        hasher: Optional[ChangeHasher] = None,
        ownership: Optional[FieldOwnershipResolver] = None,
        links: Optional[LinkResolver] = None,
    ):
        self.store = store
        self.client = client
        self.audit = audit
        self.ownership = ownership or FieldOwnershipResolver()
        self.hasher = hasher or ChangeHasher(self.ownership)
        self.links = links or LinkResolver(store)
        # provisional invoice id -> payment total previewed against it
        self._provisional_paid: Dict[str, Decimal] = {}

    async def apply(
        self,
        candidate: Candidate,
        action: SyncAction,
        ctx: SyncContext,
        force: bool = False,
        resolution: Optional[Dict[str, Any]] = None,
    ) -> ApplyResult:
        """Carry out a PUSH or PULL.

        Args:
            candidate: Pair to apply
            action: PUSH or PULL; anything else is a skip
            ctx: Run context
            force: Send every shared field regardless of modification times
            resolution: Set when applying an operator's conflict resolution;
                stored on the state and logged as CONFLICT_RESOLVED

        Returns:
            ApplyResult describing what was (or in dry-run would be) done
        """
        if action == SyncAction.PUSH:
            return await self._push(candidate, ctx, force, resolution)
        if action == SyncAction.PULL:
            return await self._pull(candidate, ctx, force, resolution)
        return ApplyResult(ApplyOutcome.SKIPPED, candidate.entity_id, candidate.remote_id)

    # =========================================================================
    # Push (local -> ledger)
    # =========================================================================

    async def _push(
        self,
        candidate: Candidate,
        ctx: SyncContext,
        force: bool,
        resolution: Optional[Dict[str, Any]],
    ) -> ApplyResult:
        et = candidate.entity_type
        local = candidate.local
        if local is None:
            raise ValueError(f"Cannot push {et.value} without a local record")

        remote = candidate.remote
        remote_id = candidate.remote_id
        has_baseline = candidate.state is not None and candidate.state.has_baseline
        counterpart = None if (force or has_baseline) else remote

        payload = self.ownership.mask_for_direction(et, SyncDirection.PUSH, local, counterpart=counterpart, force=force)
        payload = self.links.to_remote(et, payload)

        marker_field = self.ownership.marker_field(et)
        if marker_field:
            source = payload if marker_field in payload else (remote or {})
            payload[marker_field] = apply_marker(source.get(marker_field), ctx.correlation_id)

        creating = not remote_id
        if et == EntityType.PAYMENT:
            await self._validate_payment(payload, creating)

        outcome = ApplyOutcome.CREATED if creating else ApplyOutcome.UPDATED
        operation = self._operation(outcome, resolution)

        if ctx.dry_run:
            if creating:
                self.links.remember_provisional(et, local["id"], DRY_RUN_PREFIX + local["id"])
            self.audit.preview(create_log_entry(
                ctx.correlation_id, et, operation, SyncOrigin.LOCAL,
                entity_id=local["id"], remote_id=remote_id, before=snapshot_record(remote), after=payload,
            ))
            return ApplyResult(outcome, local["id"], remote_id, preview=payload)

        if creating:
            remote_id = await self.client.create_entity(et.value, payload)
        else:
            await self.client.update_entity(et.value, remote_id, payload)

        # The write already happened; a failed read-back must not turn it into a retry.
        # Without the stored version the remote hash stays unknown and the
        # next pull of the marked record is accepted as the baseline.
        try:
            after = await self.client.get_entity(et.value, remote_id)
        except (RateLimitError, TransientNetworkError) as e:
            logger.warning(f"Could not read back {et.value} {remote_id} after write: {e}")
            after = None

        local_hash = self.hasher.hash(et, local, SyncOrigin.LOCAL)
        if after is None:
            after = {**payload, "remote_id": remote_id}
            remote_hash = None
        else:
            remote_hash = self.hasher.hash(et, after, SyncOrigin.REMOTE)

        with self.store.transaction():
            if local.get("remote_id") != remote_id:
                self.store.set_remote_id(et.value, local["id"], remote_id)
            self.store.upsert_state(self._next_state(
                candidate, local["id"], remote_id, local_hash, remote_hash, ctx, SyncOrigin.LOCAL, resolution,
            ))
            self.audit.record(create_log_entry(
                ctx.correlation_id, et, operation, SyncOrigin.LOCAL,
                entity_id=local["id"], remote_id=remote_id,
                before=snapshot_record(remote), after=snapshot_record(after),
                change_hash=remote_hash, user_id=ctx.user_id,
            ))

        return ApplyResult(outcome, local["id"], remote_id, local_hash, remote_hash)

    async def _validate_payment(self, payload: Dict[str, Any], creating: bool) -> None:
        """Reject payments the ledger would refuse, before sending them."""
        try:
            amount = Decimal(str(payload.get("amount")))
        except (InvalidOperation, ValueError):
            raise SyncValidationError(f"Payment amount is not a number: {payload.get('amount')!r}")
        if amount <= 0:
            raise SyncValidationError("Payment amount must be positive")

        invoice_id = payload.get("invoice_id")
        if not invoice_id:
            raise SyncValidationError("Payment is not linked to an invoice")
        if invoice_id.startswith(DRY_RUN_PREFIX):
            invoice = self._provisional_invoice(invoice_id)
        else:
            invoice = await self.client.get_entity(EntityType.INVOICE.value, invoice_id)
        if invoice is None:
            raise SyncValidationError(f"Invoice {invoice_id} does not exist in the ledger")
        if invoice.get("status") in UNPAYABLE_INVOICE_STATUSES or not invoice.get("status"):
            raise SyncValidationError(
                f"Cannot apply a payment to an invoice in status {invoice.get('status')}"
            )
        currency = payload.get("currency")
        if currency and invoice.get("currency") and currency != invoice["currency"]:
            raise SyncValidationError(
                f"Payment currency {currency} does not match invoice currency {invoice['currency']}"
            )
        amount_due = invoice.get("amount_due")
        if creating and amount_due is not None and amount > Decimal(str(amount_due)):
            raise SyncValidationError(f"Payment amount {amount} exceeds amount due {amount_due}")
        if creating and invoice_id.startswith(DRY_RUN_PREFIX):
            self._provisional_paid[invoice_id] = self._provisional_paid.get(invoice_id, Decimal("0")) + amount

    def _provisional_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        """The local invoice a dry run would have created, priced like the ledger would."""
        local_id = self.links.local_id_for(EntityType.INVOICE, invoice_id)
        invoice = self.store.get_local(EntityType.INVOICE.value, local_id) if local_id else None
        if invoice is None:
            return None

        total = Decimal("0")
        for line in invoice.get("line_items") or []:
            total += Decimal(str(line.get("quantity") or 0)) * Decimal(str(line.get("unit_price") or 0))
            total += Decimal(str(line.get("tax_amount") or 0))
        paid = self._provisional_paid.get(invoice_id, Decimal("0"))
        return {**invoice, "amount_due": str((total - paid).quantize(Decimal("0.01")))}

    # =========================================================================
    # Pull (ledger -> local)
    # =========================================================================

    async def _pull(
        self,
        candidate: Candidate,
        ctx: SyncContext,
        force: bool,
        resolution: Optional[Dict[str, Any]],
    ) -> ApplyResult:
        et = candidate.entity_type
        remote = candidate.remote
        if remote is None:
            raise ValueError(f"Cannot pull {et.value} without a remote record")

        local = candidate.local
        remote_id = remote["remote_id"]
        has_baseline = candidate.state is not None and candidate.state.has_baseline
        counterpart = None if (force or has_baseline) else local

        inbound = self.ownership.mask_for_direction(et, SyncDirection.PULL, remote, counterpart=counterpart, force=force)
        inbound = self.links.to_local(et, inbound)
        marker_field = self.ownership.marker_field(et)
        if marker_field in inbound:
            inbound[marker_field] = strip_marker(inbound[marker_field])
        inbound["remote_id"] = remote_id

        outcome = ApplyOutcome.UPDATED if local else ApplyOutcome.CREATED
        operation = self._operation(outcome, resolution)
        remote_hash = self.hasher.hash(et, remote, SyncOrigin.REMOTE)

        if ctx.dry_run:
            entity_id = local["id"] if local else None
            if local is None:
                self.links.remember_provisional(et, DRY_RUN_PREFIX + remote_id, remote_id)
            self.audit.preview(create_log_entry(
                ctx.correlation_id, et, operation, SyncOrigin.REMOTE,
                entity_id=entity_id, remote_id=remote_id, before=snapshot_record(local), after=inbound,
            ))
            return ApplyResult(outcome, entity_id, remote_id, remote_hash=remote_hash, preview=inbound)

        with self.store.transaction():
            if local:
                after = self.store.update_local(et.value, local["id"], inbound)
            else:
                after = self.store.create_local(et.value, inbound)
            local_hash = self.hasher.hash(et, after, SyncOrigin.LOCAL)
            self.store.upsert_state(self._next_state(
                candidate, after["id"], remote_id, local_hash, remote_hash, ctx, SyncOrigin.REMOTE, resolution,
            ))
            self.audit.record(create_log_entry(
                ctx.correlation_id, et, operation, SyncOrigin.REMOTE,
                entity_id=after["id"], remote_id=remote_id,
                before=snapshot_record(local), after=snapshot_record(after),
                change_hash=local_hash, user_id=ctx.user_id,
            ))

        return ApplyResult(outcome, after["id"], remote_id, local_hash, remote_hash)

    # =========================================================================
    # Decisions without a data write
    # =========================================================================

    def record_conflict(self, candidate: Candidate, classification: Classification, ctx: SyncContext) -> ConflictDetail:
        """Flag a pair as conflicting; its baseline hashes are left untouched."""
        et = candidate.entity_type
        state = candidate.state or SyncState(
            entity_type=et, entity_id=candidate.entity_id, remote_id=candidate.remote_id,
        )
        detail = classification.detail.model_copy(update={"state_id": state.id})

        entry = create_log_entry(
            ctx.correlation_id, et, SyncOperation.CONFLICT_DETECTED, candidate.origin,
            entity_id=state.entity_id, remote_id=state.remote_id,
            before=detail.local_snapshot, after=detail.remote_snapshot, user_id=ctx.user_id,
        )
        if ctx.dry_run:
            self.audit.preview(entry)
            return detail

        with self.store.transaction():
            self.store.upsert_state(state.model_copy(update={
                "status": SyncStatus.CONFLICT,
                "conflict_data": detail.model_dump(mode="json"),
                "correlation_id": ctx.correlation_id,
                "last_error": None,
            }))
            self.audit.record(entry)
        return detail

    def record_baseline(self, candidate: Candidate, classification: Classification, ctx: SyncContext) -> None:
        """Link a pair that already agrees and store its hashes."""
        et = candidate.entity_type
        entity_id = candidate.entity_id
        remote_id = candidate.remote_id
        entry = create_log_entry(
            ctx.correlation_id, et, SyncOperation.SKIP, candidate.origin,
            entity_id=entity_id, remote_id=remote_id, change_hash=classification.remote_hash,
            user_id=ctx.user_id,
        )
        if ctx.dry_run:
            self.audit.preview(entry)
            return

        with self.store.transaction():
            if candidate.local and candidate.local.get("remote_id") != remote_id:
                self.store.set_remote_id(et.value, entity_id, remote_id)
            self.store.upsert_state(self._next_state(
                candidate, entity_id, remote_id,
                classification.local_hash, classification.remote_hash,
                ctx, candidate.origin, None,
            ))
            self.audit.record(entry)

    def record_echo(self, candidate: Candidate, remote_hash: str, ctx: SyncContext) -> None:
        """Accept an echo of our own write as the new remote baseline."""
        state = candidate.state
        if state is None or ctx.dry_run:
            return
        with self.store.transaction():
            self.store.upsert_state(state.model_copy(update={
                "last_remote_hash": remote_hash,
                "last_synced_at": utcnow(),
            }))
            self.audit.record(create_log_entry(
                ctx.correlation_id, candidate.entity_type, SyncOperation.SKIP, SyncOrigin.REMOTE,
                entity_id=state.entity_id, remote_id=state.remote_id, change_hash=remote_hash,
                user_id=ctx.user_id,
            ))

    def record_failure(self, candidate: Candidate, error: Exception, ctx: SyncContext) -> None:
        """Mark the pair as failed and append a FAILED audit entry."""
        et = candidate.entity_type
        message = f"{type(error).__name__}: {error}"[:2000]
        if ctx.dry_run:
            logger.warning(
                f"[dry run] {et.value} would fail: {message}",
                extra_fields={"entity_id": candidate.entity_id, "remote_id": candidate.remote_id},
            )
            return

        operation = SyncOperation.UPDATE if candidate.remote_id and candidate.entity_id else SyncOperation.CREATE
        with self.store.transaction():
            if candidate.state is not None:
                status = candidate.state.status
                if status != SyncStatus.CONFLICT:
                    status = SyncStatus.ERROR
                self.store.upsert_state(candidate.state.model_copy(update={
                    "status": status,
                    "last_error": message,
                    "correlation_id": ctx.correlation_id,
                }))
            self.audit.record_failure(
                ctx.correlation_id, et, operation, candidate.origin, message,
                entity_id=candidate.entity_id, remote_id=candidate.remote_id, user_id=ctx.user_id,
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _operation(outcome: ApplyOutcome, resolution: Optional[Dict[str, Any]]) -> SyncOperation:
        if resolution is not None:
            return SyncOperation.CONFLICT_RESOLVED
        return SyncOperation.CREATE if outcome == ApplyOutcome.CREATED else SyncOperation.UPDATE

    @staticmethod
    def _next_state(
        candidate: Candidate,
        entity_id: str,
        remote_id: Optional[str],
        local_hash: Optional[str],
        remote_hash: Optional[str],
        ctx: SyncContext,
        origin: SyncOrigin,
        resolution: Optional[Dict[str, Any]],
    ) -> SyncState:
        previous = candidate.state
        return SyncState(
            id=previous.id if previous else new_id(),
            entity_type=candidate.entity_type,
            entity_id=entity_id,
            remote_id=remote_id,
            status=SyncStatus.ACTIVE,
            last_local_hash=local_hash,
            last_remote_hash=remote_hash,
            correlation_id=ctx.correlation_id,
            sync_origin=origin,
            conflict_data=None,
            last_error=None,
            resolution=resolution if resolution is not None else (previous.resolution if previous else None),
            last_synced_at=utcnow(),
            created_at=previous.created_at if previous else utcnow(),
        )
