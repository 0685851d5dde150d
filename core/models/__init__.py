"""Core data models - ledger-neutral canonical records and sync models.

This package contains the canonical record shapes exchanged between the
local store and ledger connectors, plus the sync engine's own models.
"""

from core.models.canonical import (
    # Base
    CanonicalBase,
    DecimalValue,
    DateValue,
    TimestampValue,

    # Records
    ContactRecord,
    InvoiceLine,
    InvoiceRecord,
    PaymentRecord,
    canonical_record,
    parse_timestamp,
)

from core.models.sync import (
    EntityType,
    ENTITY_ORDER,
    SyncDirection,
    SyncAction,
    SyncStatus,
    SyncOperation,
    SyncOrigin,
    LogStatus,
    RunState,
    ConflictType,
    ProgressStatus,
    ResolutionChoice,
    SyncState,
    SyncLogEntry,
    FieldDiff,
    ConflictDetail,
    ProgressState,
    DirectionCounts,
    SyncErrorDetail,
    SyncRequest,
    SyncResult,
    utcnow,
)

__all__ = [
    # Base
    "CanonicalBase",
    "DecimalValue",
    "DateValue",
    "TimestampValue",

    # Records
    "ContactRecord",
    "InvoiceLine",
    "InvoiceRecord",
    "PaymentRecord",
    "canonical_record",
    "parse_timestamp",

    # Sync
    "EntityType",
    "ENTITY_ORDER",
    "SyncDirection",
    "SyncAction",
    "SyncStatus",
    "SyncOperation",
    "SyncOrigin",
    "LogStatus",
    "RunState",
    "ConflictType",
    "ProgressStatus",
    "ResolutionChoice",
    "SyncState",
    "SyncLogEntry",
    "FieldDiff",
    "ConflictDetail",
    "ProgressState",
    "DirectionCounts",
    "SyncErrorDetail",
    "SyncRequest",
    "SyncResult",
    "utcnow",
]
