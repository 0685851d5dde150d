"""Echo suppression.

Every push embeds ``[sync:<correlation_id>]`` in the ledger record's
marker field. When a later pull sees a record carrying a marker, the audit
log tells whether this engine wrote it: a successful local-origin entry
for the same record and correlation id, inside the window, whose hash
matches what came back. Such a record is our own write echoing back and
must not be pulled again.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from core.models.canonical import parse_timestamp
from core.models.sync import EntityType
from core.observability.logging import get_logger
from storage.base import SyncLogRepository
from sync_engine.hashing import extract_marker
from sync_engine.ownership import FieldOwnershipResolver

logger = get_logger(__name__)

DEFAULT_WINDOW = timedelta(minutes=15)


class LoopGuard:

    def __init__(
        self,
        log_repository: SyncLogRepository,
        window: timedelta = DEFAULT_WINDOW,
        ownership: Optional[FieldOwnershipResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.log_repository = log_repository
        self.window = window
        self.ownership = ownership or FieldOwnershipResolver()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def marker_of(self, entity_type, record: Dict[str, Any]) -> Optional[str]:
        field = self.ownership.marker_field(entity_type)
        return extract_marker(record.get(field)) if field else None

    def should_skip(
        self,
        entity_type,
        incoming_remote: Dict[str, Any],
        incoming_hash: Optional[str] = None,
        window: Optional[timedelta] = None,
    ) -> bool:
        """True when ``incoming_remote`` is an echo of this engine's own write.

        Args:
            entity_type: Record type
            incoming_remote: Remote record as listed
            incoming_hash: Remote-side hash of the incoming record. An audit
                entry matches if it recorded the same hash, or recorded none
                and the incoming updated_at is no later than the entry
            window: Override of the look-back window
        """
        et = EntityType(entity_type)
        correlation_id = self.marker_of(et, incoming_remote)
        remote_id = incoming_remote.get("remote_id")
        if not correlation_id or not remote_id:
            return False

        since = self._clock() - (window or self.window)
        writes = self.log_repository.recent_local_writes(correlation_id, et.value, remote_id, since)
        for entry in writes:
            if (entry.change_hash is not None and entry.change_hash == incoming_hash) or (
                entry.change_hash is None and self._not_edited_since(incoming_remote, entry.timestamp)
            ):
                logger.debug(
                    "Suppressing echo of own write",
                    extra_fields={"remote_id": remote_id, "marker": correlation_id},
                )
                return True
        return False

    @staticmethod
    def _not_edited_since(incoming_remote: Dict[str, Any], written_at: datetime) -> bool:
        """A write with no recorded hash only vouches for versions no newer than itself."""
        updated_at = parse_timestamp(incoming_remote.get("updated_at"))
        if updated_at is None:
            return False
        if written_at.tzinfo is None:
            written_at = written_at.replace(tzinfo=timezone.utc)
        return updated_at <= written_at
