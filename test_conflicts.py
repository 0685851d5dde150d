"""Operator resolution of conflicts."""

import asyncio

import pytest

from conftest import INTEGRATION_ID
from core.models.sync import (
    EntityType,
    ResolutionChoice,
    SyncDirection,
    SyncOperation,
    SyncOrigin,
    SyncStatus,
)
from sync_engine.errors import ConflictNotFoundError, ConflictResolutionError, SyncAlreadyRunningError


@pytest.fixture
def conflicted(store, ledger, run_sync):
    """A contact edited on both sides after its first sync."""
    store.create_local("contact", {"id": "c-1", "name": "Acme", "email": "ap@acme.test", "phone": "555-0100"})
    run_sync(direction="both")
    remote_id = store.get_local("contact", "c-1")["remote_id"]
    store.update_local("contact", "c-1", {"phone": "555-1111"})
    ledger.edit("contact", remote_id, phone="555-2222")
    result = run_sync(direction="both")
    return result.conflicts[0].state_id, remote_id


def _resolve(resolver, state_id, choice, **kwargs):
    return asyncio.run(resolver.resolve(state_id, choice, **kwargs))


class TestListing:

    def test_open_conflicts_are_listed(self, resolver, conflicted):
        state_id, remote_id = conflicted
        [detail] = resolver.list_open()
        assert detail.state_id == state_id
        assert detail.remote_id == remote_id
        assert detail.local_snapshot["phone"] == "555-1111"
        assert detail.remote_snapshot["phone"] == "555-2222"
        assert resolver.list_open(entity_type="invoice") == []


class TestResolve:

    def test_use_local(self, store, ledger, resolver, run_sync, conflicted):
        state_id, remote_id = conflicted

        resolved = _resolve(resolver, state_id, "use_local", notes="customer confirmed by phone", user_id="alice")

        assert resolved.outcome == "updated"
        assert resolved.resolution == ResolutionChoice.USE_LOCAL
        assert ledger.record("contact", remote_id)["phone"] == "555-1111"
        assert ledger.record("contact", remote_id)["contact_number"] == f"[sync:{resolved.correlation_id}]"

        state = store.get_state_by_id(state_id)
        assert state.status == SyncStatus.ACTIVE
        assert state.sync_origin == SyncOrigin.LOCAL
        assert state.conflict_data is None
        assert state.resolution["choice"] == "use_local"
        assert state.resolution["notes"] == "customer confirmed by phone"

        [entry] = store.list_logs(correlation_id=resolved.correlation_id)
        assert entry.operation == SyncOperation.CONFLICT_RESOLVED
        assert entry.sync_origin == SyncOrigin.LOCAL
        assert entry.user_id == "alice"

        after = run_sync(direction="both")
        assert after.conflicts == []
        assert after.created == 0
        assert after.updated == 0

    def test_use_remote(self, store, ledger, resolver, run_sync, conflicted):
        state_id, _ = conflicted
        calls_before = len(ledger.mutating_calls())

        resolved = _resolve(resolver, state_id, ResolutionChoice.USE_REMOTE)

        assert store.get_local("contact", "c-1")["phone"] == "555-2222"
        assert len(ledger.mutating_calls()) == calls_before
        state = store.get_state_by_id(state_id)
        assert state.status == SyncStatus.ACTIVE
        assert state.sync_origin == SyncOrigin.REMOTE
        [entry] = store.list_logs(correlation_id=resolved.correlation_id)
        assert entry.operation == SyncOperation.CONFLICT_RESOLVED
        assert entry.sync_origin == SyncOrigin.REMOTE

        assert run_sync(direction="both").updated == 0

    def test_manual(self, store, ledger, resolver, run_sync, conflicted):
        state_id, remote_id = conflicted
        # The operator fixed the ledger copy by hand
        ledger.edit("contact", remote_id, phone="555-1111")
        calls_before = len(ledger.mutating_calls())

        resolved = _resolve(resolver, state_id, "manual", notes="fixed in the ledger UI")

        assert resolved.outcome == "baseline"
        assert len(ledger.mutating_calls()) == calls_before
        state = store.get_state_by_id(state_id)
        assert state.status == SyncStatus.ACTIVE
        assert state.resolution["choice"] == "manual"

        after = run_sync(direction="both")
        assert after.conflicts == []
        assert after.updated == 0

    def test_failed_apply_keeps_the_conflict(self, store, ledger, resolver, conflicted):
        state_id, remote_id = conflicted
        store.update_local("contact", "c-1", {"name": ""})

        with pytest.raises(ConflictResolutionError, match="use_local"):
            _resolve(resolver, state_id, "use_local")

        state = store.get_state_by_id(state_id)
        assert state.status == SyncStatus.CONFLICT
        assert "Contact name is required" in state.last_error
        assert ledger.record("contact", remote_id)["name"] == "Acme"


class TestRefusals:

    def test_unknown_state(self, resolver):
        with pytest.raises(ConflictNotFoundError):
            _resolve(resolver, "no-such-state", "use_local")

    def test_state_not_in_conflict(self, store, resolver, run_sync):
        store.create_local("contact", {"id": "c-1", "name": "Acme"})
        run_sync(direction="push")
        state = store.get_state("contact", "c-1")

        with pytest.raises(ConflictResolutionError, match="not in conflict"):
            _resolve(resolver, state.id, "use_remote")

    def test_running_sync_blocks_resolution(self, orchestrator, resolver, conflicted):
        state_id, _ = conflicted
        keys = orchestrator.scope_keys(INTEGRATION_ID, [EntityType.CONTACT], SyncDirection.PUSH)
        orchestrator.acquire_scope(keys)

        with pytest.raises(SyncAlreadyRunningError):
            _resolve(resolver, state_id, "use_local")

        orchestrator.release_scope(keys)
        assert _resolve(resolver, state_id, "use_local").state.status == SyncStatus.ACTIVE
