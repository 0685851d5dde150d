"""Echo suppression through correlation markers."""

from datetime import datetime, timedelta, timezone

from connectors.ledger_base import TransientNetworkError
from core.models.sync import EntityType, LogStatus, SyncLogEntry, SyncOperation, SyncOrigin
from sync_engine.loop_guard import LoopGuard


def _write(store, **overrides):
    data = {
        "correlation_id": "run-1",
        "entity_type": EntityType.INVOICE,
        "entity_id": "i-1",
        "remote_id": "r-1",
        "operation": SyncOperation.UPDATE,
        "sync_origin": SyncOrigin.LOCAL,
        "change_hash": "hash-after-write",
    }
    data.update(overrides)
    return store.append_log(SyncLogEntry(**data))


def _incoming(reference="PO 42 [sync:run-1]", updated_at=None):
    record = {"remote_id": "r-1", "invoice_number": "INV-1", "reference": reference}
    if updated_at is not None:
        record["updated_at"] = updated_at.isoformat()
    return record


class TestLoopGuard:

    def test_own_write_is_skipped(self, store):
        _write(store)
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(), "hash-after-write") is True

    def test_unmarked_record_is_not_skipped(self, store):
        _write(store)
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(reference="PO 42"), "hash-after-write") is False

    def test_different_content_is_not_skipped(self, store):
        _write(store)
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(), "hash-of-a-later-edit") is False

    def test_write_without_known_hash_matches_versions_up_to_the_write(self, store):
        written_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        _write(store, change_hash=None, timestamp=written_at)
        guard = LoopGuard(store)
        echoed = _incoming(updated_at=written_at - timedelta(seconds=1))
        assert guard.should_skip("invoice", echoed, "anything") is True

    def test_later_edit_after_write_without_known_hash_is_not_skipped(self, store):
        written_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        _write(store, change_hash=None, timestamp=written_at)
        guard = LoopGuard(store)
        edited = _incoming(updated_at=written_at + timedelta(seconds=30))
        assert guard.should_skip("invoice", edited, "anything") is False
        assert guard.should_skip("invoice", _incoming(), "anything") is False

    def test_other_run_or_record_is_not_skipped(self, store):
        _write(store, correlation_id="run-2")
        _write(store, remote_id="r-2")
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(), "hash-after-write") is False

    def test_failed_and_remote_origin_entries_do_not_count(self, store):
        _write(store, status=LogStatus.FAILED)
        _write(store, sync_origin=SyncOrigin.REMOTE)
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(), "hash-after-write") is False

    def test_window(self, store):
        written_at = datetime.now(timezone.utc) - timedelta(minutes=20)
        _write(store, timestamp=written_at)
        guard = LoopGuard(store)
        assert guard.should_skip("invoice", _incoming(), "hash-after-write") is False
        assert guard.should_skip("invoice", _incoming(), "hash-after-write", window=timedelta(hours=1)) is True

    def test_contact_marker_lives_in_contact_number(self, store):
        _write(store, entity_type=EntityType.CONTACT)
        guard = LoopGuard(store)
        contact = {"remote_id": "r-1", "name": "Acme", "contact_number": "[sync:run-1]"}
        assert guard.should_skip("contact", contact, "hash-after-write") is True


class TestEchoDuringRuns:

    def test_echo_of_unconfirmed_push_is_not_pulled_back(self, store, ledger, run_sync):
        """A push whose read-back failed is recognised when it comes back."""
        store.create_local("contact", {"id": "c-1", "name": "Acme", "email": "ap@acme.test"})
        ledger.fail_next("get", TransientNetworkError("read timed out"))

        pushed = run_sync(direction="push")
        assert pushed.push.created == 1
        state = store.get_state("contact", "c-1")
        assert state.last_remote_hash is None

        local_before = store.get_local("contact", "c-1")
        pulled = run_sync(direction="pull")

        assert pulled.pull.created == 0
        assert pulled.pull.updated == 0
        assert pulled.pull.skipped == 1
        assert store.get_local("contact", "c-1") == local_before
        state = store.get_state("contact", "c-1")
        assert state.last_remote_hash is not None
        skips = [e for e in store.list_logs(correlation_id=pulled.correlation_id)
                 if e.operation == SyncOperation.SKIP and e.sync_origin == SyncOrigin.REMOTE]
        assert len(skips) == 1

    def test_next_run_after_echo_is_a_no_op(self, store, ledger, run_sync):
        store.create_local("contact", {"id": "c-1", "name": "Acme"})
        ledger.fail_next("get", TransientNetworkError("read timed out"))
        run_sync(direction="push")
        run_sync(direction="pull")

        calls_before = len(ledger.mutating_calls())
        result = run_sync(direction="both")
        assert result.created == 0
        assert result.updated == 0
        assert len(ledger.mutating_calls()) == calls_before

    def test_ledger_edit_after_unconfirmed_push_is_pulled(self, store, ledger, run_sync):
        store.create_local("contact", {"id": "c-1", "name": "Acme", "phone": "555-0100"})
        ledger.fail_next("get", TransientNetworkError("read timed out"))
        run_sync(direction="push")
        remote_id = store.get_local("contact", "c-1")["remote_id"]

        ledger.edit("contact", remote_id, phone="555-9999")
        pulled = run_sync(direction="pull")

        assert pulled.pull.updated == 1
        assert store.get_local("contact", "c-1")["phone"] == "555-9999"
