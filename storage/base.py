"""Storage interfaces consumed by the sync engine.

The engine reads and writes local business records, sync state and the
audit log only through these interfaces. Implementations must make
``transaction()`` atomic: everything written inside it commits together
or not at all.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.models.sync import SyncLogEntry, SyncState, SyncStatus


class LocalEntityStore(ABC):
    """CRUD-by-id and list-by-filter access to local business records."""

    @abstractmethod
    def get_local(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_local(
        self,
        entity_type: str,
        modified_since: Optional[datetime] = None,
        entity_ids: Optional[Iterable[str]] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def count_local(self, entity_type: str, modified_since: Optional[datetime] = None) -> int:
        pass

    @abstractmethod
    def find_local(self, entity_type: str, **fields) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal the given values."""
        pass

    @abstractmethod
    def find_local_by_remote_id(self, entity_type: str, remote_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def create_local(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update_local(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def set_remote_id(self, entity_type: str, entity_id: str, remote_id: str) -> None:
        """Link a local record to its remote id without bumping updated_at."""
        pass


class SyncStateRepository(ABC):

    @abstractmethod
    def get_state(self, entity_type: str, entity_id: str) -> Optional[SyncState]:
        pass

    @abstractmethod
    def get_state_by_id(self, state_id: str) -> Optional[SyncState]:
        pass

    @abstractmethod
    def get_state_by_remote_id(self, entity_type: str, remote_id: str) -> Optional[SyncState]:
        pass

    @abstractmethod
    def upsert_state(self, state: SyncState) -> SyncState:
        pass

    @abstractmethod
    def list_states(
        self,
        status: Optional[SyncStatus] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncState]:
        pass


class SyncLogRepository(ABC):

    @abstractmethod
    def append_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        pass

    @abstractmethod
    def recent_local_writes(
        self,
        correlation_id: str,
        entity_type: str,
        remote_id: str,
        since: datetime,
    ) -> List[SyncLogEntry]:
        """Successful local-origin entries for a record written after ``since``."""
        pass

    @abstractmethod
    def list_logs(
        self,
        correlation_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[SyncLogEntry]:
        pass


class SyncStore(LocalEntityStore, SyncStateRepository, SyncLogRepository):
    """Everything the engine needs, plus transaction scoping."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        pass

    def close(self) -> None:
        return None
