"""SQLite-backed sync store.

This module handles all database operations for the sync engine:
- Schema initialization (local records, sync state, append-only sync log)
- CRUD for local business records
- Sync state upserts and lookups
- Audit log appends and queries

All writes made inside ``transaction()`` commit together. The sync_log
table rejects UPDATE and DELETE through triggers.
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from core.models.canonical import parse_timestamp
from core.models.sync import SyncLogEntry, SyncOrigin, SyncState, SyncStatus, LogStatus
from core.observability.logging import get_logger
from storage.base import SyncStore

logger = get_logger(__name__)

# Default database path
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "data" / "sync.db"

_RESERVED_KEYS = ("id", "remote_id", "created_at", "updated_at")


def _ts(value: Union[datetime, str, None]) -> Optional[str]:
    """Fixed-width UTC ISO timestamp so string order equals time order."""
    if value is None:
        return None
    parsed = parse_timestamp(value)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _json_default(value: Any):
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default, sort_keys=True)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


# =============================================================================
# Schema
# =============================================================================

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS local_entities (
        entity_type TEXT NOT NULL,
        id TEXT NOT NULL,
        remote_id TEXT,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (entity_type, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_local_remote ON local_entities(entity_type, remote_id)",
    "CREATE INDEX IF NOT EXISTS idx_local_updated ON local_entities(entity_type, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        remote_id TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        last_local_hash TEXT,
        last_remote_hash TEXT,
        correlation_id TEXT,
        sync_origin TEXT,
        conflict_data TEXT,
        last_error TEXT,
        resolution TEXT,
        last_synced_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(entity_type, entity_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_state_remote ON sync_state(entity_type, remote_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_state_status ON sync_state(status)",
    """
    CREATE TABLE IF NOT EXISTS sync_log (
        id TEXT PRIMARY KEY,
        correlation_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        remote_id TEXT,
        operation TEXT NOT NULL,
        sync_origin TEXT NOT NULL,
        before_snapshot TEXT,
        after_snapshot TEXT,
        change_hash TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        user_id TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_log_correlation ON sync_log(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_log_entity ON sync_log(entity_type, entity_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_log_remote ON sync_log(entity_type, remote_id, timestamp)",
    """
    CREATE TRIGGER IF NOT EXISTS sync_log_no_update
    BEFORE UPDATE ON sync_log
    BEGIN
        SELECT RAISE(ABORT, 'sync_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS sync_log_no_delete
    BEFORE DELETE ON sync_log
    BEGIN
        SELECT RAISE(ABORT, 'sync_log is append-only');
    END
    """,
]


def init_sync_db(conn: sqlite3.Connection) -> None:
    """Create tables, indexes and triggers if they do not exist.

    Creates:
    - local_entities: Local contacts, invoices and payments (JSON body)
    - sync_state: One row per synchronized record, unique per (entity_type, entity_id)
    - sync_log: Append-only audit trail
    """
    for statement in SCHEMA:
        conn.execute(statement)


# =============================================================================
# Store
# =============================================================================

class SQLiteSyncStore(SyncStore):
    """SyncStore over a single SQLite connection.

    The connection runs in autocommit mode; ``transaction()`` opens an
    explicit BEGIN IMMEDIATE / COMMIT / ROLLBACK scope. Nested calls join
    the outer transaction.

    Usage:
        store = SQLiteSyncStore("data/sync.db")
        with store.transaction():
            store.update_local("invoice", invoice_id, {"status": "PAID"})
            store.upsert_state(state)
            store.append_log(entry)
    """

    def __init__(
        self,
        db_path: Union[str, Path] = DEFAULT_DB_PATH,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()
        self._depth = 0

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        init_sync_db(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _now(self) -> str:
        return _ts(self._clock())

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, tuple(params))

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    # =========================================================================
    # Local Records
    # =========================================================================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
        record = _loads(row["data"]) or {}
        record["id"] = row["id"]
        record["remote_id"] = row["remote_id"]
        record["created_at"] = row["created_at"]
        record["updated_at"] = row["updated_at"]
        return record

    def get_local(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            "SELECT * FROM local_entities WHERE entity_type = ? AND id = ?",
            (entity_type, entity_id),
        )
        return self._row_to_record(row) if row else None

    def list_local(
        self,
        entity_type: str,
        modified_since: Optional[datetime] = None,
        entity_ids: Optional[Iterable[str]] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM local_entities WHERE entity_type = ?"
        params: List[Any] = [entity_type]
        if modified_since is not None:
            sql += " AND updated_at >= ?"
            params.append(_ts(modified_since))
        if entity_ids is not None:
            ids = list(entity_ids)
            if not ids:
                return []
            sql += f" AND id IN ({','.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " ORDER BY updated_at, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [self._row_to_record(r) for r in self._fetchall(sql, params)]

    def count_local(self, entity_type: str, modified_since: Optional[datetime] = None) -> int:
        sql = "SELECT COUNT(*) FROM local_entities WHERE entity_type = ?"
        params: List[Any] = [entity_type]
        if modified_since is not None:
            sql += " AND updated_at >= ?"
            params.append(_ts(modified_since))
        return self._fetchone(sql, params)[0]

    def find_local(self, entity_type: str, **fields) -> List[Dict[str, Any]]:
        """Match on JSON fields, case- and whitespace-insensitive for strings."""
        sql = "SELECT * FROM local_entities WHERE entity_type = ?"
        params: List[Any] = [entity_type]
        for name, value in fields.items():
            if not name.isidentifier():
                raise ValueError(f"Invalid field name: {name}")
            if value is None:
                sql += f" AND json_extract(data, '$.{name}') IS NULL"
            elif isinstance(value, str):
                sql += f" AND lower(trim(json_extract(data, '$.{name}'))) = lower(trim(?))"
                params.append(value)
            else:
                sql += f" AND json_extract(data, '$.{name}') = ?"
                params.append(value)
        sql += " ORDER BY created_at, id"
        return [self._row_to_record(r) for r in self._fetchall(sql, params)]

    def find_local_by_remote_id(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            "SELECT * FROM local_entities WHERE entity_type = ? AND remote_id = ?",
            (entity_type, remote_id),
        )
        return self._row_to_record(row) if row else None

    def create_local(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        entity_id = data.get("id") or str(uuid.uuid4())
        now = self._now()
        body = {k: v for k, v in data.items() if k not in _RESERVED_KEYS}
        updated_at = _ts(data.get("updated_at")) or now
        self._execute(
            """
            INSERT INTO local_entities (entity_type, id, remote_id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entity_type, entity_id, data.get("remote_id"), _dumps(body), now, updated_at),
        )
        return self.get_local(entity_type, entity_id)

    def update_local(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction():
            current = self.get_local(entity_type, entity_id)
            if current is None:
                raise KeyError(f"{entity_type} {entity_id} not found")
            body = {k: v for k, v in current.items() if k not in _RESERVED_KEYS}
            body.update({k: v for k, v in changes.items() if k not in _RESERVED_KEYS})
            updated_at = _ts(changes.get("updated_at")) or self._now()
            remote_id = changes.get("remote_id", current["remote_id"])
            self._execute(
                """
                UPDATE local_entities SET data = ?, remote_id = ?, updated_at = ?
                WHERE entity_type = ? AND id = ?
                """,
                (_dumps(body), remote_id, updated_at, entity_type, entity_id),
            )
            return self.get_local(entity_type, entity_id)

    def set_remote_id(self, entity_type: str, entity_id: str, remote_id: str) -> None:
        self._execute(
            "UPDATE local_entities SET remote_id = ? WHERE entity_type = ? AND id = ?",
            (remote_id, entity_type, entity_id),
        )

    # =========================================================================
    # Sync State
    # =========================================================================

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> SyncState:
        data = dict(row)
        data["conflict_data"] = _loads(data["conflict_data"])
        data["resolution"] = _loads(data["resolution"])
        return SyncState.model_validate(data)

    def get_state(self, entity_type: str, entity_id: str) -> Optional[SyncState]:
        row = self._fetchone(
            "SELECT * FROM sync_state WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        return self._row_to_state(row) if row else None

    def get_state_by_id(self, state_id: str) -> Optional[SyncState]:
        row = self._fetchone("SELECT * FROM sync_state WHERE id = ?", (state_id,))
        return self._row_to_state(row) if row else None

    def get_state_by_remote_id(self, entity_type: str, remote_id: str) -> Optional[SyncState]:
        row = self._fetchone(
            "SELECT * FROM sync_state WHERE entity_type = ? AND remote_id = ?",
            (entity_type, remote_id),
        )
        return self._row_to_state(row) if row else None

    def upsert_state(self, state: SyncState) -> SyncState:
        now = self._now()
        self._execute(
            """
            INSERT INTO sync_state (
                id, entity_type, entity_id, remote_id, status,
                last_local_hash, last_remote_hash, correlation_id, sync_origin,
                conflict_data, last_error, resolution, last_synced_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                remote_id = excluded.remote_id,
                status = excluded.status,
                last_local_hash = excluded.last_local_hash,
                last_remote_hash = excluded.last_remote_hash,
                correlation_id = excluded.correlation_id,
                sync_origin = excluded.sync_origin,
                conflict_data = excluded.conflict_data,
                last_error = excluded.last_error,
                resolution = excluded.resolution,
                last_synced_at = excluded.last_synced_at,
                updated_at = excluded.updated_at
            """,
            (
                state.id,
                state.entity_type.value,
                state.entity_id,
                state.remote_id,
                state.status.value,
                state.last_local_hash,
                state.last_remote_hash,
                state.correlation_id,
                state.sync_origin.value if state.sync_origin else None,
                _dumps(state.conflict_data),
                state.last_error,
                _dumps(state.resolution),
                _ts(state.last_synced_at),
                _ts(state.created_at),
                now,
            ),
        )
        return self.get_state(state.entity_type.value, state.entity_id)

    def list_states(
        self,
        status: Optional[SyncStatus] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncState]:
        sql = "SELECT * FROM sync_state WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(SyncStatus(status).value)
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_state(r) for r in self._fetchall(sql, params)]

    # =========================================================================
    # Sync Log
    # =========================================================================

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> SyncLogEntry:
        data = dict(row)
        data["before_snapshot"] = _loads(data["before_snapshot"])
        data["after_snapshot"] = _loads(data["after_snapshot"])
        return SyncLogEntry.model_validate(data)

    def append_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        self._execute(
            """
            INSERT INTO sync_log (
                id, correlation_id, entity_type, entity_id, remote_id, operation,
                sync_origin, before_snapshot, after_snapshot, change_hash, status,
                error_message, user_id, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.correlation_id,
                entry.entity_type.value,
                entry.entity_id,
                entry.remote_id,
                entry.operation.value,
                entry.sync_origin.value,
                _dumps(entry.before_snapshot),
                _dumps(entry.after_snapshot),
                entry.change_hash,
                entry.status.value,
                entry.error_message,
                entry.user_id,
                _ts(entry.timestamp),
            ),
        )
        return entry

    def recent_local_writes(
        self,
        correlation_id: str,
        entity_type: str,
        remote_id: str,
        since: datetime,
    ) -> List[SyncLogEntry]:
        rows = self._fetchall(
            """
            SELECT * FROM sync_log
            WHERE correlation_id = ? AND entity_type = ? AND remote_id = ?
              AND sync_origin = ? AND status = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            """,
            (
                correlation_id,
                entity_type,
                remote_id,
                SyncOrigin.LOCAL.value,
                LogStatus.SUCCESS.value,
                _ts(since),
            ),
        )
        return [self._row_to_log(r) for r in rows]

    def list_logs(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        sql = "SELECT * FROM sync_log WHERE 1 = 1"
        params: List[Any] = []
        if correlation_id:
            sql += " AND correlation_id = ?"
            params.append(correlation_id)
        if entity_type:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id:
            sql += " AND entity_id = ?"
            params.append(entity_id)
        sql += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_log(r) for r in self._fetchall(sql, params)]
