import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional

import structlog

from app.core.exceptions import BufferOverflow
from app.models.events import Event
from observability.alerts import AlertManager, AlertSeverity, AlertType

logger = structlog.get_logger("ingestion")


@dataclass(frozen=True)
class BufferStats:
    size: int
    capacity: int
    accepted: int
    dropped: int
    drained: int


class EventBuffer:
    """
    Bounded in-memory queue between event producers and the aggregator.

    record() only takes a short mutex around an append, so request handlers
    never wait on aggregation. When the buffer is full the oldest event is
    evicted and the overflow is reported to the alert manager. drain() hands
    out events once; there is no replay.
    """

    def __init__(self, capacity: int = 10_000, alert_manager: Optional[AlertManager] = None):
        if capacity < 1:
            raise ValueError("Buffer capacity must be positive")
        self.capacity = capacity
        self.alert_manager = alert_manager

        self._lock = threading.Lock()
        self._events: deque = deque()
        self._accepted = 0
        self._dropped = 0
        self._drained = 0

    def record(self, event: Event) -> bool:
        """
        Append an event.

        Returns:
            False if an older event had to be dropped to make room
        """
        with self._lock:
            overflowed = len(self._events) >= self.capacity
            if overflowed:
                self._events.popleft()
                self._dropped += 1
            self._events.append(event)
            self._accepted += 1
            dropped_total = self._dropped

        if overflowed:
            self._signal_overflow(dropped_total)
        return not overflowed

    def record_many(self, events: Iterable[Event]) -> int:
        """Append a batch; returns how many older events were dropped."""
        dropped = 0
        for event in events:
            if not self.record(event):
                dropped += 1
        return dropped

    def drain(self, max_batch: int) -> List[Event]:
        """Remove and return up to max_batch events in arrival order."""
        if max_batch < 1:
            return []
        with self._lock:
            count = min(max_batch, len(self._events))
            batch = [self._events.popleft() for _ in range(count)]
            self._drained += count
        return batch

    def stats(self) -> BufferStats:
        with self._lock:
            return BufferStats(
                size=len(self._events),
                capacity=self.capacity,
                accepted=self._accepted,
                dropped=self._dropped,
                drained=self._drained,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _signal_overflow(self, dropped_total: int) -> None:
        condition = BufferOverflow(self.capacity, dropped_total)
        logger.warning(
            "event_buffer_overflow",
            capacity=self.capacity,
            dropped_total=dropped_total,
        )
        if self.alert_manager is None:
            return
        self.alert_manager.maybe_emit(
            AlertType.BUFFER_OVERFLOW,
            scope="ingestion",
            severity=AlertSeverity.WARNING,
            message=str(condition),
            details={"capacity": self.capacity, "dropped_total": dropped_total},
        )
