"""Two-way sync engine between the local store and the remote ledger.

Pipeline per record:
    classify (hashing) -> loop check (loop_guard) -> mask (ownership)
    -> apply + state + audit in one transaction (applier)

The orchestrator drives runs; the resolver handles operator decisions on
conflicts.
"""

from sync_engine.errors import (
    SyncError,
    SyncAlreadyRunningError,
    SyncConnectionError,
    SyncValidationError,
    UnresolvedReferenceError,
    ConflictResolutionError,
    ConflictNotFoundError,
)
from sync_engine.ownership import (
    FieldOwner,
    OwnershipRule,
    OWNERSHIP_TABLE,
    FieldOwnershipResolver,
    LinkResolver,
)
from sync_engine.hashing import (
    ChangeHasher,
    Classification,
    ConflictDetector,
    apply_marker,
    extract_marker,
    strip_marker,
)
from sync_engine.audit import (
    AuditLogger,
    InMemoryAuditBackend,
    RepositoryAuditBackend,
    create_log_entry,
)
from sync_engine.loop_guard import LoopGuard
from sync_engine.progress import ProgressBus
from sync_engine.token_refresh import ConnectionHealth, TokenRefreshService
from sync_engine.applier import ApplyOutcome, ApplyResult, Candidate, ChangeApplier, SyncContext
from sync_engine.orchestrator import SyncOrchestrator
from sync_engine.conflicts import ConflictResolution, ConflictResolver

__all__ = [
    # Errors
    "SyncError",
    "SyncAlreadyRunningError",
    "SyncConnectionError",
    "SyncValidationError",
    "UnresolvedReferenceError",
    "ConflictResolutionError",
    "ConflictNotFoundError",

    # Ownership
    "FieldOwner",
    "OwnershipRule",
    "OWNERSHIP_TABLE",
    "FieldOwnershipResolver",
    "LinkResolver",

    # Hashing
    "ChangeHasher",
    "Classification",
    "ConflictDetector",
    "apply_marker",
    "extract_marker",
    "strip_marker",

    # Audit
    "AuditLogger",
    "InMemoryAuditBackend",
    "RepositoryAuditBackend",
    "create_log_entry",

    # Services
    "LoopGuard",
    "ProgressBus",
    "ConnectionHealth",
    "TokenRefreshService",
    "ApplyOutcome",
    "ApplyResult",
    "Candidate",
    "ChangeApplier",
    "SyncContext",
    "SyncOrchestrator",
    "ConflictResolution",
    "ConflictResolver",
]
