"""Operator resolution of sync conflicts.

A record in CONFLICT is skipped by every run until someone decides:
- use_local: push the local version to the ledger, overwriting shared fields
- use_remote: pull the ledger version, overwriting local shared fields
- manual: the operator reconciled both sides by hand; accept the current
  versions as the new baseline

Every resolution appends a CONFLICT_RESOLVED audit entry in the same
transaction as the state change.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from connectors.ledger_base import AuthError
from core.models.sync import (
    ConflictDetail,
    EntityType,
    ResolutionChoice,
    SyncAction,
    SyncDirection,
    SyncOperation,
    SyncOrigin,
    SyncState,
    SyncStatus,
    new_id,
    utcnow,
)
from core.observability.logging import get_logger, with_correlation
from sync_engine.applier import Candidate, SyncContext
from sync_engine.audit import create_log_entry
from sync_engine.errors import ConflictNotFoundError, ConflictResolutionError, SyncConnectionError
from sync_engine.hashing import snapshot_record
from sync_engine.orchestrator import SyncOrchestrator

logger = get_logger(__name__)

RESOLUTION_DIRECTION = {
    ResolutionChoice.USE_LOCAL: SyncDirection.PUSH,
    ResolutionChoice.USE_REMOTE: SyncDirection.PULL,
    ResolutionChoice.MANUAL: SyncDirection.BOTH,
}


class ConflictResolution(BaseModel):
    """Outcome of resolving one conflict."""
    state_id: str
    entity_type: EntityType
    entity_id: Optional[str] = None
    remote_id: Optional[str] = None
    resolution: ResolutionChoice
    correlation_id: str
    outcome: str
    state: Optional[SyncState] = None


class ConflictResolver:
    """Applies operator decisions to conflicted records.

    Shares the orchestrator's store, ledger client and scope locks so a
    resolution never interleaves with a run over the same records.
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.client = orchestrator.client

    def list_open(self, entity_type: Optional[str] = None, limit: int = 100) -> List[ConflictDetail]:
        details = []
        for state in self.store.list_states(status=SyncStatus.CONFLICT, entity_type=entity_type, limit=limit):
            if state.conflict_data:
                detail = ConflictDetail.model_validate(state.conflict_data)
            else:
                detail = ConflictDetail(
                    entity_type=state.entity_type, entity_id=state.entity_id, remote_id=state.remote_id,
                )
            details.append(detail.model_copy(update={"state_id": state.id}))
        return details

    async def resolve(
        self,
        state_id: str,
        resolution: ResolutionChoice,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ConflictResolution:
        """Resolve the conflict recorded on sync state ``state_id``.

        Raises:
            ConflictNotFoundError: Unknown state id
            ConflictResolutionError: Not in conflict, or the chosen side
                cannot be applied
            SyncAlreadyRunningError: A run over the same scope is active
            SyncConnectionError: The ledger credential could not be refreshed
        """
        resolution = ResolutionChoice(resolution)
        state = self.store.get_state_by_id(state_id)
        if state is None:
            raise ConflictNotFoundError(f"Sync state {state_id} not found")
        if state.status != SyncStatus.CONFLICT:
            raise ConflictResolutionError(f"Sync state {state_id} is not in conflict (status {state.status.value})")

        integration_id = self.orchestrator.integration_id
        keys = self.orchestrator.scope_keys(integration_id, [state.entity_type], RESOLUTION_DIRECTION[resolution])
        self.orchestrator.acquire_scope(keys)
        correlation_id = new_id()
        try:
            with with_correlation(
                correlation_id=correlation_id,
                integration_id=integration_id,
                entity_type=state.entity_type.value,
                entity_id=state.entity_id,
                remote_id=state.remote_id,
            ):
                return await self._resolve(state, resolution, notes, user_id, integration_id, correlation_id)
        finally:
            self.orchestrator.release_scope(keys)

    async def _resolve(
        self,
        state: SyncState,
        resolution: ResolutionChoice,
        notes: Optional[str],
        user_id: Optional[str],
        integration_id: str,
        correlation_id: str,
    ) -> ConflictResolution:
        try:
            await self.orchestrator.token_service.ensure_valid(integration_id)
        except AuthError as e:
            raise SyncConnectionError(f"Cannot connect to the ledger: {e}") from e

        et = state.entity_type
        local = self.store.get_local(et.value, state.entity_id)
        remote = await self.client.get_entity(et.value, state.remote_id) if state.remote_id else None

        ctx = SyncContext(correlation_id=correlation_id, integration_id=integration_id, user_id=user_id)
        document: Dict[str, Any] = {
            "choice": resolution.value,
            "notes": notes,
            "user_id": user_id,
            "correlation_id": correlation_id,
            "resolved_at": utcnow().isoformat(),
        }
        logger.info(f"Resolving {et.value} conflict with {resolution.value}")

        if resolution == ResolutionChoice.MANUAL:
            updated = self._accept_current(state, local, remote, ctx, document)
            return self._result(updated, resolution, correlation_id, "baseline")

        if resolution == ResolutionChoice.USE_LOCAL:
            if local is None:
                raise ConflictResolutionError(f"Local {et.value} {state.entity_id} no longer exists")
            candidate = Candidate(et, SyncDirection.PUSH, local=local, remote=remote, state=state)
        else:
            if remote is None:
                raise ConflictResolutionError(f"Remote {et.value} {state.remote_id} no longer exists")
            candidate = Candidate(et, SyncDirection.PULL, local=local, remote=remote, state=state)

        applier = self.orchestrator.new_applier()
        action = SyncAction.PUSH if resolution == ResolutionChoice.USE_LOCAL else SyncAction.PULL
        try:
            applied = await applier.apply(candidate, action, ctx, force=True, resolution=document)
        except AuthError as e:
            raise SyncConnectionError(f"Ledger rejected the credentials: {e}") from e
        except Exception as e:
            applier.record_failure(candidate, e, ctx)
            raise ConflictResolutionError(f"Could not apply {resolution.value}: {e}") from e

        return self._result(self.store.get_state_by_id(state.id), resolution, correlation_id, applied.outcome.value)

    def _accept_current(
        self,
        state: SyncState,
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        ctx: SyncContext,
        document: Dict[str, Any],
    ) -> SyncState:
        hasher = self.orchestrator.hasher
        et = state.entity_type
        local_hash = hasher.hash(et, local, SyncOrigin.LOCAL) if local else state.last_local_hash
        remote_hash = hasher.hash(et, remote, SyncOrigin.REMOTE) if remote else state.last_remote_hash

        with self.store.transaction():
            updated = self.store.upsert_state(state.model_copy(update={
                "status": SyncStatus.ACTIVE,
                "last_local_hash": local_hash,
                "last_remote_hash": remote_hash,
                "correlation_id": ctx.correlation_id,
                "sync_origin": SyncOrigin.LOCAL,
                "conflict_data": None,
                "last_error": None,
                "resolution": document,
                "last_synced_at": utcnow(),
            }))
            self.orchestrator.audit.record(create_log_entry(
                ctx.correlation_id, et, SyncOperation.CONFLICT_RESOLVED, SyncOrigin.LOCAL,
                entity_id=state.entity_id, remote_id=state.remote_id,
                before=state.conflict_data, after=snapshot_record(local),
                change_hash=local_hash, user_id=ctx.user_id,
            ))
        return updated

    @staticmethod
    def _result(state: SyncState, resolution: ResolutionChoice, correlation_id: str, outcome: str) -> ConflictResolution:
        return ConflictResolution(
            state_id=state.id,
            entity_type=state.entity_type,
            entity_id=state.entity_id,
            remote_id=state.remote_id,
            resolution=resolution,
            correlation_id=correlation_id,
            outcome=outcome,
            state=state,
        )
