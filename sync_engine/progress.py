"""Live sync progress fan-out.

The orchestrator publishes a ProgressState per entity type as it works.
Subscribers (the SSE endpoint) each get a bounded queue; a slow subscriber
loses its oldest events instead of blocking the run. Publishing never
awaits.
"""

import asyncio
from typing import Dict, List, Optional, Set

from core.models.sync import ENTITY_ORDER, EntityType, ProgressState, ProgressStatus, utcnow
from core.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100


def _percentage(current: int, total: Optional[int]) -> int:
    if not total:
        return 0
    return min(100, int(current * 100 / total))


class ProgressBus:
    """Publishes per-entity-type progress to any number of subscribers."""

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self._states: Dict[EntityType, ProgressState] = {
            et: ProgressState(entity_type=et) for et in ENTITY_ORDER
        }
        self._subscribers: Set[asyncio.Queue] = set()
        self._closed = False

    # =========================================================================
    # Subscribers
    # =========================================================================

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber; the queue is primed with the current snapshot.

        A ``None`` item means the bus was closed.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        for state in self.snapshot():
            self._offer(queue, state)
        if self._closed:
            self._offer(queue, None)
        else:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        """Signal end of stream to all subscribers."""
        self._closed = True
        for queue in list(self._subscribers):
            self._offer(queue, None)
        self._subscribers.clear()

    @staticmethod
    def _offer(queue: asyncio.Queue, item) -> bool:
        """Put without blocking; drop the oldest item when full.

        Returns False when an older item was dropped.
        """
        dropped = False
        while True:
            try:
                queue.put_nowait(item)
                return not dropped
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                    dropped = True
                except asyncio.QueueEmpty:
                    pass

    # =========================================================================
    # State
    # =========================================================================

    def snapshot(self) -> List[ProgressState]:
        return [self._states[et].model_copy() for et in ENTITY_ORDER]

    def state(self, entity_type) -> ProgressState:
        return self._states[EntityType(entity_type)].model_copy()

    def overall_status(self) -> ProgressStatus:
        statuses = {s.status for s in self._states.values()}
        if ProgressStatus.SYNCING in statuses:
            return ProgressStatus.SYNCING
        if ProgressStatus.ERROR in statuses:
            return ProgressStatus.ERROR
        if statuses == {ProgressStatus.IDLE}:
            return ProgressStatus.IDLE
        return ProgressStatus.COMPLETED

    def publish(self, state: ProgressState) -> None:
        self._states[state.entity_type] = state
        for queue in list(self._subscribers):
            if not self._offer(queue, state.model_copy()):
                logger.debug("Progress subscriber is lagging; dropped oldest event")

    def start(
        self,
        entity_type,
        total: Optional[int] = None,
        correlation_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ProgressState:
        previous = self._states[EntityType(entity_type)]
        state = ProgressState(
            entity_type=EntityType(entity_type),
            status=ProgressStatus.SYNCING,
            current=0,
            total=total,
            percentage=0,
            message=message,
            correlation_id=correlation_id,
            started_at=utcnow(),
            last_sync_at=previous.last_sync_at,
        )
        self.publish(state)
        return state

    def advance(
        self,
        entity_type,
        increment: int = 1,
        total: Optional[int] = None,
        message: Optional[str] = None,
    ) -> ProgressState:
        current = self._states[EntityType(entity_type)]
        new_total = total if total is not None else current.total
        new_current = current.current + increment
        state = current.model_copy(update={
            "current": new_current,
            "total": new_total,
            "percentage": _percentage(new_current, new_total),
            "message": message or current.message,
        })
        self.publish(state)
        return state

    def complete(self, entity_type, message: Optional[str] = None) -> ProgressState:
        current = self._states[EntityType(entity_type)]
        now = utcnow()
        state = current.model_copy(update={
            "status": ProgressStatus.COMPLETED,
            "percentage": 100,
            "total": current.total if current.total is not None else current.current,
            "message": message or current.message,
            "completed_at": now,
            "last_sync_at": now,
            "error": None,
        })
        self.publish(state)
        return state

    def fail(self, entity_type, error: str) -> ProgressState:
        current = self._states[EntityType(entity_type)]
        state = current.model_copy(update={
            "status": ProgressStatus.ERROR,
            "error": error,
            "completed_at": utcnow(),
        })
        self.publish(state)
        return state
