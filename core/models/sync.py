"""Sync state, audit and run models.

These are the records the sync engine persists (SyncState, SyncLogEntry),
derives (ConflictDetail) and reports (ProgressState, SyncResult).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# Enums
# =============================================================================

class EntityType(str, Enum):
    """Synchronized entity types, in dependency order."""
    CONTACT = "contact"
    INVOICE = "invoice"
    PAYMENT = "payment"


ENTITY_ORDER = [EntityType.CONTACT, EntityType.INVOICE, EntityType.PAYMENT]


class SyncDirection(str, Enum):
    """Requested direction of a sync run."""
    PULL = "pull"
    PUSH = "push"
    BOTH = "both"

    def phases(self) -> List["SyncDirection"]:
        if self == SyncDirection.BOTH:
            return [SyncDirection.PULL, SyncDirection.PUSH]
        return [self]


class SyncAction(str, Enum):
    """Outcome of comparing a local/remote pair."""
    NO_OP = "NO_OP"
    PUSH = "PUSH"
    PULL = "PULL"
    CONFLICT = "CONFLICT"


class SyncStatus(str, Enum):
    """Status of a tracked record."""
    ACTIVE = "ACTIVE"
    CONFLICT = "CONFLICT"
    ERROR = "ERROR"


class SyncOperation(str, Enum):
    """Operation recorded in the audit trail."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SKIP = "SKIP"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"


class SyncOrigin(str, Enum):
    """Which side produced a write."""
    LOCAL = "local"
    REMOTE = "remote"


class LogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RunState(str, Enum):
    """Sync run state machine."""
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIALLY_FAILED = "PARTIALLY_FAILED"
    ABORTED = "ABORTED"


class ConflictType(str, Enum):
    BOTH_MODIFIED = "BOTH_MODIFIED"
    UNRESOLVED = "UNRESOLVED"


class ProgressStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class ResolutionChoice(str, Enum):
    """How an operator resolves a conflict."""
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MANUAL = "manual"


# =============================================================================
# Persisted Records
# =============================================================================

class SyncState(BaseModel):
    """Link between a local record and its remote counterpart.

    One row per (entity_type, entity_id). The hashes are the baseline the
    next run compares against. A CONFLICT status blocks automatic apply
    until the conflict is resolved.
    """
    id: str = Field(default_factory=new_id)
    entity_type: EntityType
    entity_id: str = Field(..., description="Local record id")
    remote_id: Optional[str] = Field(None, description="Ledger record id")
    status: SyncStatus = SyncStatus.ACTIVE
    last_local_hash: Optional[str] = None
    last_remote_hash: Optional[str] = None
    correlation_id: Optional[str] = Field(None, description="Run that last touched the record")
    sync_origin: Optional[SyncOrigin] = None
    conflict_data: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    resolution: Optional[Dict[str, Any]] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def has_baseline(self) -> bool:
        return self.last_local_hash is not None or self.last_remote_hash is not None


class SyncLogEntry(BaseModel):
    """Append-only audit record of one sync decision."""
    id: str = Field(default_factory=new_id)
    correlation_id: str
    entity_type: EntityType
    entity_id: Optional[str] = None
    remote_id: Optional[str] = None
    operation: SyncOperation
    sync_origin: SyncOrigin
    before_snapshot: Optional[Dict[str, Any]] = None
    after_snapshot: Optional[Dict[str, Any]] = None
    change_hash: Optional[str] = None
    status: LogStatus = LogStatus.SUCCESS
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Derived / Reported Models
# =============================================================================

class FieldDiff(BaseModel):
    field: str
    local_value: Any = None
    remote_value: Any = None


class ConflictDetail(BaseModel):
    """A record changed on both sides since the last sync."""
    state_id: Optional[str] = None
    entity_type: EntityType
    entity_id: Optional[str] = None
    remote_id: Optional[str] = None
    conflict_type: ConflictType = ConflictType.BOTH_MODIFIED
    local_snapshot: Optional[Dict[str, Any]] = None
    remote_snapshot: Optional[Dict[str, Any]] = None
    fields: List[FieldDiff] = Field(default_factory=list)
    recommendation: Optional[str] = None
    detected_at: datetime = Field(default_factory=utcnow)


class ProgressState(BaseModel):
    """Transient per-entity-type progress of the current run."""
    entity_type: EntityType
    status: ProgressStatus = ProgressStatus.IDLE
    current: int = 0
    total: Optional[int] = None
    percentage: int = 0
    message: Optional[str] = None
    correlation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    error: Optional[str] = None


class DirectionCounts(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0


class SyncErrorDetail(BaseModel):
    entity_type: EntityType
    entity_id: Optional[str] = None
    remote_id: Optional[str] = None
    operation: SyncDirection
    error_type: str
    message: str


class SyncRequest(BaseModel):
    """Parameters of one sync run.

    Accepts both snake_case and the camelCase names used by the HTTP API.
    """
    model_config = ConfigDict(populate_by_name=True)

    direction: SyncDirection = SyncDirection.BOTH
    dry_run: bool = Field(False, alias="dryRun")
    entity_ids: Optional[List[str]] = Field(None, alias="entityIds")
    modified_since: Optional[datetime] = Field(None, alias="modifiedSince")
    force_refresh: bool = Field(False, alias="forceRefresh")
    entity_types: Optional[List[EntityType]] = Field(None, alias="entityTypes")
    integration_id: Optional[str] = Field(None, alias="integrationId")
    user_id: Optional[str] = Field(None, alias="userId")


class SyncResult(BaseModel):
    """Outcome of a sync run."""
    success: bool = False
    state: RunState = RunState.INITIALIZING
    dry_run: bool = False
    correlation_id: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: List[ConflictDetail] = Field(default_factory=list)
    errors: List[SyncErrorDetail] = Field(default_factory=list)
    pull: DirectionCounts = Field(default_factory=DirectionCounts)
    push: DirectionCounts = Field(default_factory=DirectionCounts)
    message: Optional[str] = None
    cancelled: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def counts_for(self, direction: SyncDirection) -> DirectionCounts:
        return self.pull if direction == SyncDirection.PULL else self.push
