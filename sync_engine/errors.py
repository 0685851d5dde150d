"""Sync engine exceptions.

Connector-side failures use the LedgerError hierarchy from
connectors/ledger_base.py. These are raised by the engine itself.
"""


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class SyncAlreadyRunningError(SyncError):
    """A run overlapping the requested scope is in progress."""
    def __init__(self, scopes):
        self.scopes = list(scopes)
        described = ", ".join(f"{et}/{direction}" for _, et, direction in self.scopes)
        super().__init__(f"Sync already running for {described}")


class SyncConnectionError(SyncError, ConnectionError):
    """The ledger connection could not be established (credential refresh failed)."""
    pass


class SyncValidationError(SyncError):
    """A record failed pre-flight validation before being written."""
    pass


class UnresolvedReferenceError(SyncError):
    """A reference field points at a record not yet linked on the other side."""
    def __init__(self, entity_type: str, field: str, value: str, target_type: str):
        self.entity_type = entity_type
        self.field = field
        self.value = value
        self.target_type = target_type
        super().__init__(
            f"{entity_type}.{field} references {target_type} {value} which is not synchronized yet"
        )


class ConflictResolutionError(SyncError):
    """A conflict cannot be resolved as requested."""
    pass


class ConflictNotFoundError(ConflictResolutionError):
    """No sync state with the given id."""
    pass


class RateLimitBudgetExceeded(SyncError):
    """The ledger kept rate limiting after the run used up its pause budget."""
    def __init__(self, pauses: int, last_error: Exception):
        self.pauses = pauses
        self.last_error = last_error
        super().__init__(f"Ledger rate limit persisted after {pauses} pauses: {last_error}")
