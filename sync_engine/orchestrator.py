"""Sync run orchestration.

State machine per run:

    INITIALIZING -> RUNNING -> COMPLETED | PARTIALLY_FAILED | ABORTED

INITIALIZING takes the single-flight lock for every
(integration, entity type, direction) in scope and makes sure the ledger
credential is valid. RUNNING walks entity types in dependency order
(contact, invoice, payment). For each type the pull phase pages through
the ledger listing with the next page prefetched, and the push phase pages
through local records the pull phase did not already handle.

Per-record failures are recorded and counted. The run stops early only on an
AuthError, an abort signal, or a ledger that keeps rate limiting after the
run has spent its pause budget.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from connectors.ledger_base import AuthError, LedgerPage, RateLimitError, RemoteLedgerClient
from core.models.sync import (
    ENTITY_ORDER,
    ConflictDetail,
    ConflictType,
    EntityType,
    ProgressStatus,
    RunState,
    SyncAction,
    SyncDirection,
    SyncErrorDetail,
    SyncOperation,
    SyncOrigin,
    SyncRequest,
    SyncResult,
    SyncStatus,
    new_id,
    utcnow,
)
from core.observability.logging import get_logger, with_correlation
from storage.base import SyncStore
from sync_engine.applier import ApplyOutcome, Candidate, ChangeApplier, SyncContext
from sync_engine.audit import AuditLogger, RepositoryAuditBackend
from sync_engine.errors import RateLimitBudgetExceeded, SyncAlreadyRunningError, SyncConnectionError
from sync_engine.hashing import ChangeHasher, ConflictDetector
from sync_engine.loop_guard import LoopGuard
from sync_engine.ownership import FieldOwnershipResolver, LinkResolver
from sync_engine.progress import ProgressBus
from sync_engine.token_refresh import TokenRefreshService

logger = get_logger(__name__)

ACTION_DIRECTION = {
    SyncAction.PUSH: SyncDirection.PUSH,
    SyncAction.PULL: SyncDirection.PULL,
}

ScopeKey = Tuple[str, str, str]


@dataclass
class _Run:
    """Mutable state of one run in progress."""
    request: SyncRequest
    ctx: SyncContext
    result: SyncResult
    applier: ChangeApplier
    abort_event: asyncio.Event
    phases: List[SyncDirection]
    seen: Dict[EntityType, Set[str]] = field(default_factory=dict)
    rate_limit_pauses: int = 0

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def add_conflict(self, phase: SyncDirection, detail: ConflictDetail) -> None:
        self.result.conflicts.append(detail)
        self.result.counts_for(phase).conflicts += 1


class SyncOrchestrator:
    """Runs sync requests against one ledger client and one local store.

    Usage:
        orchestrator = SyncOrchestrator(store, client, token_service)
        result = await orchestrator.run(SyncRequest(direction="both"))
    """

    def __init__(
        self,
        store: SyncStore,
        client: RemoteLedgerClient,
        token_service: TokenRefreshService,
        progress: Optional[ProgressBus] = None,
        audit: Optional[AuditLogger] = None,
        loop_guard: Optional[LoopGuard] = None,
        ownership: Optional[FieldOwnershipResolver] = None,
        integration_id: str = "default",
        page_size: int = 100,
        rate_limit_budget: int = 20,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.client = client
        self.token_service = token_service
        self.progress = progress or ProgressBus()
        self.audit = audit or AuditLogger(RepositoryAuditBackend(store))
        self.ownership = ownership or FieldOwnershipResolver()
        self.hasher = ChangeHasher(self.ownership)
        self.detector = ConflictDetector(self.hasher)
        self.loop_guard = loop_guard or LoopGuard(store, ownership=self.ownership)
        self.integration_id = integration_id
        self.page_size = page_size
        self.rate_limit_budget = rate_limit_budget
        self._sleep = sleep

        self._locks: Set[ScopeKey] = set()
        self._abort_events: Dict[str, asyncio.Event] = {}
        self.last_result: Optional[SyncResult] = None

    # =========================================================================
    # Locks and abort
    # =========================================================================

    @staticmethod
    def scope_keys(
        integration_id: str,
        entity_types: List[EntityType],
        direction: SyncDirection,
    ) -> List[ScopeKey]:
        return [
            (integration_id, et.value, phase.value)
            for et in entity_types
            for phase in SyncDirection(direction).phases()
        ]

    def acquire_scope(self, keys: List[ScopeKey]) -> None:
        """Take every lock in ``keys`` or none of them."""
        busy = [k for k in keys if k in self._locks]
        if busy:
            raise SyncAlreadyRunningError(busy)
        self._locks.update(keys)

    def release_scope(self, keys: List[ScopeKey]) -> None:
        self._locks.difference_update(keys)

    def is_running(self) -> bool:
        return bool(self._locks)

    def abort(self, correlation_id: Optional[str] = None) -> bool:
        """Ask running runs (or one run) to stop after the current record."""
        targets = [correlation_id] if correlation_id else list(self._abort_events)
        signalled = False
        for cid in targets:
            event = self._abort_events.get(cid)
            if event is not None:
                event.set()
                signalled = True
        return signalled

    def new_applier(self) -> ChangeApplier:
        """Applier with its own link resolver (provisional dry-run ids stay per run)."""
        return ChangeApplier(
            self.store,
            self.client,
            self.audit,
            hasher=self.hasher,
            ownership=self.ownership,
            links=LinkResolver(self.store),
        )

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self, request: SyncRequest) -> SyncResult:
        """Execute one sync run.

        Raises:
            SyncAlreadyRunningError: An overlapping run holds part of the scope
        """
        integration_id = request.integration_id or self.integration_id
        requested = set(request.entity_types or ENTITY_ORDER)
        entity_types = [et for et in ENTITY_ORDER if et in requested]
        keys = self.scope_keys(integration_id, entity_types, request.direction)
        self.acquire_scope(keys)

        correlation_id = new_id()
        abort_event = asyncio.Event()
        self._abort_events[correlation_id] = abort_event
        result = SyncResult(correlation_id=correlation_id, dry_run=request.dry_run)
        run = _Run(
            request=request,
            ctx=SyncContext(
                correlation_id=correlation_id,
                integration_id=integration_id,
                dry_run=request.dry_run,
                user_id=request.user_id,
            ),
            result=result,
            applier=self.new_applier(),
            abort_event=abort_event,
            phases=request.direction.phases(),
        )

        try:
            with with_correlation(
                correlation_id=correlation_id,
                integration_id=integration_id,
                dry_run=True if request.dry_run else None,
            ):
                logger.info(
                    "Sync run started",
                    extra_fields={
                        "direction": request.direction.value,
                        "entity_types": [et.value for et in entity_types],
                    },
                )
                await self._execute(run, entity_types)
                self._log_summary(result)
        finally:
            self.release_scope(keys)
            self._abort_events.pop(correlation_id, None)

        self.last_result = result
        return result

    async def _execute(self, run: _Run, entity_types: List[EntityType]) -> None:
        result = run.result
        try:
            await self._connect(run.ctx.integration_id)
        except SyncConnectionError as e:
            self._finish_aborted(run, entity_types, str(e))
            return

        result.state = RunState.RUNNING
        try:
            for et in entity_types:
                if run.aborted:
                    break
                await self._sync_entity_type(run, et)
        except AuthError as e:
            self._finish_aborted(run, entity_types, f"Ledger rejected the credentials: {e}")
            return
        except RateLimitBudgetExceeded as e:
            self._finish_aborted(run, entity_types, str(e))
            return

        if run.aborted:
            result.cancelled = True
            self._finish_aborted(run, entity_types, "Sync aborted on request")
            return

        self._tally(result)
        result.state = RunState.PARTIALLY_FAILED if result.errors else RunState.COMPLETED
        result.success = result.state == RunState.COMPLETED and not result.conflicts
        result.message = self._describe(result)
        result.completed_at = utcnow()

    async def _connect(self, integration_id: str) -> None:
        try:
            await self.token_service.ensure_valid(integration_id)
        except AuthError as e:
            raise SyncConnectionError(f"Cannot connect to the ledger: {e}") from e

    def _finish_aborted(self, run: _Run, entity_types: List[EntityType], message: str) -> None:
        result = run.result
        self._tally(result)
        result.state = RunState.ABORTED
        result.success = False
        result.message = message
        result.completed_at = utcnow()
        for et in entity_types:
            if self.progress.state(et).status == ProgressStatus.SYNCING:
                self.progress.fail(et, message)
        logger.error(f"Sync run aborted: {message}")

    @staticmethod
    def _tally(result: SyncResult) -> None:
        result.created = result.pull.created + result.push.created
        result.updated = result.pull.updated + result.push.updated
        result.skipped = result.pull.skipped + result.push.skipped

    @staticmethod
    def _describe(result: SyncResult) -> str:
        prefix = "Dry run: " if result.dry_run else ""
        return (
            f"{prefix}{result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {len(result.conflicts)} conflicts, {len(result.errors)} errors"
        )

    def _log_summary(self, result: SyncResult) -> None:
        logger.info(
            f"Sync run finished: {result.state.value}",
            extra_fields={
                "created": result.created,
                "updated": result.updated,
                "skipped": result.skipped,
                "conflicts": len(result.conflicts),
                "errors": len(result.errors),
            },
        )

    # =========================================================================
    # Per entity type
    # =========================================================================

    async def _sync_entity_type(self, run: _Run, et: EntityType) -> None:
        run.seen[et] = set()
        self.progress.start(et, correlation_id=run.ctx.correlation_id, message=f"Syncing {et.value}s")
        errors_before = len(run.result.errors)

        with with_correlation(entity_type=et.value):
            for phase in run.phases:
                if run.aborted:
                    return
                with with_correlation(direction=phase.value):
                    if phase == SyncDirection.PULL:
                        await self._pull_phase(run, et)
                    else:
                        await self._push_phase(run, et)

        if run.aborted:
            return
        failures = len(run.result.errors) - errors_before
        if failures:
            self.progress.fail(et, f"{failures} {et.value} record(s) failed")
        else:
            self.progress.complete(et)

    async def _pull_phase(self, run: _Run, et: EntityType) -> None:
        request = run.request
        since = None if request.force_refresh else request.modified_since
        first = True

        next_page: Optional[asyncio.Future] = asyncio.ensure_future(self._fetch_page(run, et, None, since))
        try:
            while next_page is not None:
                try:
                    page = await next_page
                except (AuthError, RateLimitBudgetExceeded):
                    raise
                except Exception as e:
                    next_page = None
                    self._record_phase_error(run, et, SyncDirection.PULL, e)
                    return
                next_page = None
                if page.next_cursor:
                    next_page = asyncio.ensure_future(self._fetch_page(run, et, page.next_cursor, since))

                if first:
                    self.progress.advance(et, increment=0, total=page.total if page.total is not None else len(page.items))
                    first = False

                for remote in page.items:
                    if run.aborted:
                        return
                    await self._process_remote(run, et, remote)
        finally:
            if next_page is not None and not next_page.done():
                next_page.cancel()

    async def _fetch_page(self, run: _Run, et: EntityType, cursor: Optional[str], since) -> LedgerPage:
        return await self._with_rate_limit(
            run,
            lambda: self.client.list_entities(et.value, cursor=cursor, modified_since=since)
        )

    async def _process_remote(self, run: _Run, et: EntityType, remote: Dict[str, Any]) -> None:
        remote_id = remote.get("remote_id")
        state = self.store.get_state_by_remote_id(et.value, remote_id)
        local = self.store.get_local(et.value, state.entity_id) if state else None
        if local is None:
            local = self.store.find_local_by_remote_id(et.value, remote_id)
            if local is not None and state is None:
                state = self.store.get_state(et.value, local["id"])

        links = run.applier.links
        remote_as_local = links.to_local(et, remote, strict=False)
        if local is None and state is None:
            local = links.match_unlinked_local(et, remote_as_local)

        entity_ids = run.request.entity_ids
        if entity_ids is not None and (local is None or local["id"] not in entity_ids):
            return

        if local is not None:
            run.seen[et].add(local["id"])
        candidate = Candidate(et, SyncDirection.PULL, local=local, remote=remote, state=state)
        await self._reconcile(run, candidate, remote_as_local)

    async def _push_phase(self, run: _Run, et: EntityType) -> None:
        request = run.request
        since = None if request.force_refresh else request.modified_since
        if request.entity_ids is not None:
            total = len(request.entity_ids)
        else:
            total = self.store.count_local(et.value, modified_since=since)
        current = self.progress.state(et)
        unseen = max(0, total - len(run.seen[et]))
        self.progress.advance(et, increment=0, total=(current.total or 0) + unseen)

        offset = 0
        while True:
            batch = self.store.list_local(
                et.value,
                modified_since=since,
                entity_ids=request.entity_ids,
                offset=offset,
                limit=self.page_size,
            )
            if not batch:
                return
            offset += len(batch)
            for local in batch:
                if run.aborted:
                    return
                if local["id"] in run.seen[et]:
                    continue
                run.seen[et].add(local["id"])
                state = self.store.get_state(et.value, local["id"])
                candidate = Candidate(et, SyncDirection.PUSH, local=local, state=state)
                await self._reconcile(run, candidate, None)
            if len(batch) < self.page_size:
                return

    # =========================================================================
    # Per record
    # =========================================================================

    async def _reconcile(self, run: _Run, candidate: Candidate, remote_as_local: Optional[Dict[str, Any]]) -> None:
        et = candidate.entity_type
        try:
            with with_correlation(entity_id=candidate.entity_id, remote_id=candidate.remote_id):
                await self._with_rate_limit(run, lambda: self._decide(run, candidate, remote_as_local))
        except (AuthError, RateLimitBudgetExceeded):
            raise
        except Exception as e:
            self._record_error(run, candidate, e)
        finally:
            self.progress.advance(et)

    async def _decide(self, run: _Run, candidate: Candidate, remote_as_local: Optional[Dict[str, Any]]) -> None:
        et = candidate.entity_type
        state = candidate.state
        request = run.request
        counts = run.result.counts_for(candidate.phase)

        if state is not None and state.status == SyncStatus.CONFLICT:
            run.add_conflict(candidate.phase, self._open_conflict(candidate))
            return

        if candidate.phase == SyncDirection.PUSH and candidate.remote is None and candidate.remote_id:
            if self._unchanged_locally(candidate, request):
                counts.skipped += 1
                return
            candidate.remote = await self.client.get_entity(et.value, candidate.remote_id)
            if candidate.remote is not None:
                remote_as_local = run.applier.links.to_local(et, candidate.remote, strict=False)

        last_remote_hash = state.last_remote_hash if state else None
        echo = False
        if candidate.phase == SyncDirection.PULL and state is not None and state.has_baseline:
            incoming_hash = self.hasher.hash(et, candidate.remote, SyncOrigin.REMOTE)
            if incoming_hash != last_remote_hash and self.loop_guard.should_skip(et, candidate.remote, incoming_hash):
                echo = True
                last_remote_hash = incoming_hash

        classification = self.detector.classify(
            et,
            candidate.local,
            candidate.remote,
            last_local_hash=state.last_local_hash if state else None,
            last_remote_hash=last_remote_hash,
            remote_as_local=remote_as_local,
        )
        action = classification.action

        if (
            action == SyncAction.NO_OP
            and request.force_refresh
            and state is not None
            and state.has_baseline
            and candidate.local is not None
            and candidate.remote is not None
        ):
            action = SyncAction.PULL if candidate.phase == SyncDirection.PULL else SyncAction.PUSH

        if action == SyncAction.CONFLICT:
            detail = run.applier.record_conflict(candidate, classification, run.ctx)
            run.add_conflict(candidate.phase, detail)
            return

        if action in ACTION_DIRECTION and ACTION_DIRECTION[action] not in run.phases:
            logger.debug(f"{action.value} needed but not in this run's direction; skipping")
            counts.skipped += 1
            return

        if action == SyncAction.NO_OP:
            if echo:
                run.applier.record_echo(candidate, classification.remote_hash, run.ctx)
            elif classification.needs_baseline or (state is not None and state.status == SyncStatus.ERROR):
                run.applier.record_baseline(candidate, classification, run.ctx)
            elif classification.reason.endswith("missing"):
                logger.warning(f"{et.value} not synchronized: {classification.reason}")
            counts.skipped += 1
            return

        applied = await run.applier.apply(candidate, action, run.ctx, force=request.force_refresh)
        target = run.result.counts_for(ACTION_DIRECTION[action])
        if applied.outcome == ApplyOutcome.CREATED:
            target.created += 1
        elif applied.outcome == ApplyOutcome.UPDATED:
            target.updated += 1
        else:
            target.skipped += 1
        if applied.entity_id:
            run.seen[et].add(applied.entity_id)

    def _unchanged_locally(self, candidate: Candidate, request: SyncRequest) -> bool:
        """Push phase shortcut: a linked record whose local hash matches its baseline."""
        state = candidate.state
        if request.force_refresh or state is None or state.last_local_hash is None:
            return False
        if state.status == SyncStatus.ERROR:
            return False
        return self.hasher.hash(candidate.entity_type, candidate.local, SyncOrigin.LOCAL) == state.last_local_hash

    def _open_conflict(self, candidate: Candidate) -> ConflictDetail:
        state = candidate.state
        if state.conflict_data:
            detail = ConflictDetail.model_validate(state.conflict_data)
        else:
            detail = ConflictDetail(entity_type=candidate.entity_type, entity_id=state.entity_id, remote_id=state.remote_id)
        return detail.model_copy(update={"state_id": state.id, "conflict_type": ConflictType.UNRESOLVED})

    async def _with_rate_limit(self, run: _Run, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a ledger call, pausing for retry_after whenever it is rate limited.

        Pauses are counted across the whole run; once ``rate_limit_budget``
        is spent the run stops with RateLimitBudgetExceeded.
        """
        while True:
            try:
                return await call()
            except RateLimitError as e:
                if run.rate_limit_pauses >= self.rate_limit_budget:
                    raise RateLimitBudgetExceeded(run.rate_limit_pauses, e) from e
                run.rate_limit_pauses += 1
                logger.warning(
                    f"Ledger rate limit hit; pausing {e.retry_after}s "
                    f"(pause {run.rate_limit_pauses}/{self.rate_limit_budget} for this run)"
                )
                await self._sleep(e.retry_after)

    # =========================================================================
    # Errors
    # =========================================================================

    def _record_error(self, run: _Run, candidate: Candidate, error: Exception) -> None:
        run.result.counts_for(candidate.phase).errors += 1
        run.result.errors.append(SyncErrorDetail(
            entity_type=candidate.entity_type,
            entity_id=candidate.entity_id,
            remote_id=candidate.remote_id,
            operation=candidate.phase,
            error_type=type(error).__name__,
            message=str(error),
        ))
        logger.error(
            f"Failed to sync {candidate.entity_type.value}: {error}",
            extra_fields={"entity_id": candidate.entity_id, "remote_id": candidate.remote_id},
        )
        try:
            run.applier.record_failure(candidate, error, run.ctx)
        except Exception:
            logger.exception("Could not record sync failure")

    def _record_phase_error(self, run: _Run, et: EntityType, phase: SyncDirection, error: Exception) -> None:
        run.result.counts_for(phase).errors += 1
        run.result.errors.append(SyncErrorDetail(
            entity_type=et,
            operation=phase,
            error_type=type(error).__name__,
            message=f"Listing failed: {error}",
        ))
        logger.error(f"Failed to list {et.value} records: {error}")
        if run.ctx.dry_run:
            return
        try:
            with self.store.transaction():
                self.audit.record_failure(
                    run.ctx.correlation_id, et, SyncOperation.SKIP,
                    SyncOrigin.REMOTE if phase == SyncDirection.PULL else SyncOrigin.LOCAL,
                    f"Listing failed: {type(error).__name__}: {error}",
                    user_id=run.ctx.user_id,
                )
        except Exception:
            logger.exception("Could not record listing failure")
