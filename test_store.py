"""SQLite sync store: local records, sync state, append-only log."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from core.models.sync import (
    EntityType,
    LogStatus,
    SyncLogEntry,
    SyncOperation,
    SyncOrigin,
    SyncState,
    SyncStatus,
)
from storage.sqlite_store import SQLiteSyncStore


def _entry(**overrides):
    data = {
        "correlation_id": "run-1",
        "entity_type": EntityType.CONTACT,
        "entity_id": "c-1",
        "remote_id": "r-1",
        "operation": SyncOperation.CREATE,
        "sync_origin": SyncOrigin.LOCAL,
        "change_hash": "h1",
    }
    data.update(overrides)
    return SyncLogEntry(**data)


class TestLocalRecords:

    def test_create_and_get(self, store):
        created = store.create_local("contact", {"id": "c-1", "name": "Acme", "email": "ap@acme.test"})
        assert created["id"] == "c-1"
        assert created["remote_id"] is None
        assert store.get_local("contact", "c-1")["name"] == "Acme"
        assert store.get_local("invoice", "c-1") is None

    def test_update_merges_fields(self, store):
        store.create_local("contact", {"id": "c-1", "name": "Acme", "phone": "1"})
        updated = store.update_local("contact", "c-1", {"phone": "2", "remote_id": "r-1"})
        assert updated["name"] == "Acme"
        assert updated["phone"] == "2"
        assert updated["remote_id"] == "r-1"
        assert store.find_local_by_remote_id("contact", "r-1")["id"] == "c-1"

    def test_update_missing_record_raises(self, store):
        with pytest.raises(KeyError):
            store.update_local("contact", "nope", {"name": "x"})

    def test_list_local_pages_in_update_order(self, store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            store.create_local("contact", {"id": f"c-{i}", "name": f"C{i}", "updated_at": base + timedelta(days=i)})

        first = store.list_local("contact", limit=2)
        second = store.list_local("contact", offset=2, limit=2)
        assert [r["id"] for r in first] == ["c-0", "c-1"]
        assert [r["id"] for r in second] == ["c-2", "c-3"]
        assert [r["id"] for r in store.list_local("contact", modified_since=base + timedelta(days=3))] == ["c-3", "c-4"]
        assert [r["id"] for r in store.list_local("contact", entity_ids=["c-4", "c-1"])] == ["c-1", "c-4"]
        assert store.list_local("contact", entity_ids=[]) == []
        assert store.count_local("contact") == 5

    def test_find_local_ignores_case_and_whitespace(self, store):
        store.create_local("invoice", {"id": "i-1", "invoice_number": "INV-001", "kind": "receivable"})
        assert [r["id"] for r in store.find_local("invoice", invoice_number=" inv-001", kind="receivable")] == ["i-1"]
        assert store.find_local("invoice", invoice_number="INV-001", kind="payable") == []

    def test_find_local_rejects_unsafe_field_names(self, store):
        with pytest.raises(ValueError):
            store.find_local("contact", **{"name') OR 1=1 --": "x"})


class TestSyncState:

    def test_upsert_is_unique_per_entity(self, store):
        first = store.upsert_state(SyncState(entity_type=EntityType.INVOICE, entity_id="i-1", remote_id="r-1"))
        second = store.upsert_state(SyncState(
            entity_type=EntityType.INVOICE, entity_id="i-1", remote_id="r-1",
            status=SyncStatus.CONFLICT, conflict_data={"fields": []},
        ))
        assert second.id == first.id
        assert second.status == SyncStatus.CONFLICT
        assert second.conflict_data == {"fields": []}
        assert store.get_state_by_remote_id("invoice", "r-1").id == first.id
        assert store.get_state_by_id(first.id).entity_id == "i-1"

    def test_list_states_by_status(self, store):
        store.upsert_state(SyncState(entity_type=EntityType.CONTACT, entity_id="c-1", status=SyncStatus.CONFLICT))
        store.upsert_state(SyncState(entity_type=EntityType.CONTACT, entity_id="c-2"))
        store.upsert_state(SyncState(entity_type=EntityType.INVOICE, entity_id="i-1", status=SyncStatus.CONFLICT))

        conflicts = store.list_states(status=SyncStatus.CONFLICT)
        assert {s.entity_id for s in conflicts} == {"c-1", "i-1"}
        assert [s.entity_id for s in store.list_states(status="CONFLICT", entity_type="invoice")] == ["i-1"]


class TestSyncLog:

    def test_append_and_query_newest_first(self, store):
        store.append_log(_entry(timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc)))
        store.append_log(_entry(operation=SyncOperation.UPDATE, timestamp=datetime(2024, 1, 2, tzinfo=timezone.utc)))
        store.append_log(_entry(correlation_id="run-2", entity_id="c-2"))

        entries = store.list_logs(correlation_id="run-1")
        assert [e.operation for e in entries] == [SyncOperation.UPDATE, SyncOperation.CREATE]
        assert [e.entity_id for e in store.list_logs(entity_id="c-2")] == ["c-2"]

    def test_log_is_append_only(self, store):
        store.append_log(_entry())
        with pytest.raises(sqlite3.DatabaseError):
            store._execute("UPDATE sync_log SET status = 'FAILED'")
        with pytest.raises(sqlite3.DatabaseError):
            store._execute("DELETE FROM sync_log")
        assert len(store.list_logs()) == 1

    def test_recent_local_writes(self, store):
        now = datetime.now(timezone.utc)
        store.append_log(_entry(timestamp=now - timedelta(minutes=1)))
        store.append_log(_entry(timestamp=now - timedelta(hours=1)))
        store.append_log(_entry(sync_origin=SyncOrigin.REMOTE, timestamp=now))
        store.append_log(_entry(status=LogStatus.FAILED, timestamp=now))
        store.append_log(_entry(remote_id="r-other", timestamp=now))

        writes = store.recent_local_writes("run-1", "contact", "r-1", now - timedelta(minutes=15))
        assert len(writes) == 1
        assert writes[0].change_hash == "h1"


class TestTransactions:

    def test_rollback_discards_all_writes(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_local("contact", {"id": "c-1", "name": "Acme"})
                store.upsert_state(SyncState(entity_type=EntityType.CONTACT, entity_id="c-1"))
                store.append_log(_entry())
                raise RuntimeError("boom")

        assert store.get_local("contact", "c-1") is None
        assert store.get_state("contact", "c-1") is None
        assert store.list_logs() == []

    def test_nested_transactions_join_the_outer_one(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_local("contact", {"id": "c-1", "name": "Acme"})
                with store.transaction():
                    store.update_local("contact", "c-1", {"name": "Acme 2"})
                raise RuntimeError("boom")
        assert store.get_local("contact", "c-1") is None

    def test_commit_persists(self, store):
        with store.transaction():
            store.create_local("contact", {"id": "c-1", "name": "Acme"})
        assert store.get_local("contact", "c-1")["name"] == "Acme"


def test_file_database_survives_reopen(tmp_path):
    path = tmp_path / "sync.db"
    store = SQLiteSyncStore(path)
    store.create_local("contact", {"id": "c-1", "name": "Acme"})
    store.close()

    reopened = SQLiteSyncStore(path)
    try:
        assert reopened.get_local("contact", "c-1")["name"] == "Acme"
    finally:
        reopened.close()
