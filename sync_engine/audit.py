"""Sync audit trail.

Every sync decision (create, update, skip, conflict, resolution, failure)
is recorded as a SyncLogEntry. The primary backend is the append-only
``sync_log`` table and is written inside the caller's store transaction,
so an entry commits together with the state change it describes.

Dry-run previews never reach a backend; they go to the application log
only.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from core.models.sync import (
    EntityType,
    LogStatus,
    SyncLogEntry,
    SyncOperation,
    SyncOrigin,
    utcnow,
)
from core.observability.logging import get_logger
from storage.base import SyncLogRepository

logger = get_logger(__name__)


def create_log_entry(
    correlation_id: str,
    entity_type: EntityType,
    operation: SyncOperation,
    sync_origin: SyncOrigin,
    entity_id: Optional[str] = None,
    remote_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    change_hash: Optional[str] = None,
    status: LogStatus = LogStatus.SUCCESS,
    error_message: Optional[str] = None,
    user_id: Optional[str] = None,
) -> SyncLogEntry:
    """Create a new log entry with auto-generated ID and timestamp.

    Args:
        correlation_id: Run (or resolution) the entry belongs to
        entity_type: Record type
        operation: What was done
        sync_origin: Side whose data was written (local = pushed to ledger)
        entity_id: Local record id
        remote_id: Ledger record id
        before: Record on the receiving side before the write
        after: Record on the receiving side after the write
        change_hash: Hash of the written record as the receiving side sees it
        status: SUCCESS or FAILED
        error_message: Failure text
        user_id: Operator who triggered the run or resolution

    Returns:
        SyncLogEntry ready for recording
    """
    return SyncLogEntry(
        correlation_id=correlation_id,
        entity_type=EntityType(entity_type),
        entity_id=entity_id,
        remote_id=remote_id,
        operation=operation,
        sync_origin=sync_origin,
        before_snapshot=before,
        after_snapshot=after,
        change_hash=change_hash,
        status=status,
        error_message=error_message,
        user_id=user_id,
        timestamp=utcnow(),
    )


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, entry: SyncLogEntry) -> None:
        pass

    @abstractmethod
    def query(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        """Newest entries first."""
        pass


class RepositoryAuditBackend(AuditBackend):
    """Writes entries to the sync_log table through the store."""

    def __init__(self, repository: SyncLogRepository):
        self.repository = repository

    def log(self, entry: SyncLogEntry) -> None:
        self.repository.append_log(entry)

    def query(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        return self.repository.list_logs(
            correlation_id=correlation_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._entries: List[SyncLogEntry] = []

    def log(self, entry: SyncLogEntry) -> None:
        self._entries.append(entry)

    def query(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        results = []
        for entry in reversed(self._entries):
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if entity_type and entry.entity_type.value != EntityType(entity_type).value:
                continue
            if entity_id and entry.entity_id != entity_id:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all entries (for testing)."""
        self._entries.clear()


class AuditLogger:
    """Records sync decisions to the primary backend and any mirrors.

    A failure of the primary backend propagates so the surrounding
    transaction rolls back. Mirror failures are logged and do not
    interrupt the run.

    Usage:
        audit = AuditLogger(RepositoryAuditBackend(store))
        with store.transaction():
            store.upsert_state(state)
            audit.record(create_log_entry(...))
    """

    def __init__(self, primary: AuditBackend):
        self.primary = primary
        self._mirrors: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        """Add a mirror backend."""
        self._mirrors.append(backend)

    def record(self, entry: SyncLogEntry) -> SyncLogEntry:
        self.primary.log(entry)
        for backend in self._mirrors:
            try:
                backend.log(entry)
            except Exception:
                logger.exception(f"Audit mirror {type(backend).__name__} failed")

        log = logger.warning if entry.status == LogStatus.FAILED else logger.info
        log(
            f"{entry.operation.value} {entry.entity_type.value} ({entry.sync_origin.value})",
            extra_fields={
                "correlation_id": entry.correlation_id,
                "entity_id": entry.entity_id,
                "remote_id": entry.remote_id,
                "status": entry.status.value,
                "error": entry.error_message,
            },
        )
        return entry

    def record_success(self, correlation_id: str, entity_type, operation, sync_origin, **kwargs) -> SyncLogEntry:
        return self.record(create_log_entry(correlation_id, entity_type, operation, sync_origin, **kwargs))

    def record_failure(
        self,
        correlation_id: str,
        entity_type,
        operation,
        sync_origin,
        error_message: str,
        **kwargs,
    ) -> SyncLogEntry:
        entry = create_log_entry(
            correlation_id,
            entity_type,
            operation,
            sync_origin,
            status=LogStatus.FAILED,
            error_message=error_message,
            **kwargs,
        )
        return self.record(entry)

    def preview(self, entry: SyncLogEntry) -> None:
        """Describe a dry-run decision in the application log only."""
        logger.info(
            f"[dry run] would {entry.operation.value} {entry.entity_type.value} ({entry.sync_origin.value})",
            extra_fields={
                "correlation_id": entry.correlation_id,
                "entity_id": entry.entity_id,
                "remote_id": entry.remote_id,
                "dry_run": True,
                "after": entry.after_snapshot,
            },
        )

    def query(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        return self.primary.query(correlation_id, entity_type, entity_id, limit)
