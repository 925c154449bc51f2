"""Priority queue of pending alert deliveries.

Ready items are served High before Medium before Low and FIFO within a
tier. Retries wait in a separate heap keyed by due time and are moved to
the ready heap once due.
"""
import heapq
import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from rescuecore.shared.models import Channel, PriorityLevel, RecipientKind, utcnow
from .payload import AlertPayload


@dataclass(frozen=True)
class Recipient:
    """Resolved delivery target for one AlertResult."""
    recipient_id: str
    kind: RecipientKind
    addresses: Tuple[Tuple[Channel, str], ...]

    @property
    def channels(self) -> List[Channel]:
        return [channel for channel, _ in self.addresses]


@dataclass(frozen=True)
class DispatchItem:
    """One delivery attempt waiting for a worker."""
    alert_id: str
    incident_id: str
    priority: PriorityLevel
    recipient: Recipient
    payload: AlertPayload
    enqueued_at: datetime = field(default_factory=utcnow)
    attempt: int = 1

    def next_attempt(self) -> "DispatchItem":
        return replace(self, attempt=self.attempt + 1)


class AlertQueue:
    """Thread-safe two-heap queue.

    An alert popped for delivery stays claimed until the worker calls
    `done`, so a held or running attempt is never duplicated.
    """

    def __init__(self):
        self._ready: List[Tuple[int, int, DispatchItem]] = []
        self._delayed: List[Tuple[datetime, int, DispatchItem]] = []
        self._queued: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._seq = itertools.count()
        self._cond = threading.Condition()

    def put(self, item: DispatchItem) -> None:
        with self._cond:
            heapq.heappush(self._ready, (item.priority.rank, next(self._seq), item))
            self._queued.add(item.alert_id)
            self._cond.notify_all()

    def schedule(self, item: DispatchItem, due_at: datetime) -> None:
        """Hold `item` until `due_at`."""
        with self._cond:
            heapq.heappush(self._delayed, (due_at, next(self._seq), item))
            self._queued.add(item.alert_id)
            self._cond.notify_all()

    def pop_ready(self, now: Optional[datetime] = None) -> List[DispatchItem]:
        """Remove and return every item that may run at `now`, in service order."""
        now = now or utcnow()
        with self._cond:
            while self._delayed and self._delayed[0][0] <= now:
                _, _, item = heapq.heappop(self._delayed)
                heapq.heappush(self._ready, (item.priority.rank, next(self._seq), item))
            items = []
            while self._ready:
                _, _, item = heapq.heappop(self._ready)
                self._queued.discard(item.alert_id)
                self._in_flight.add(item.alert_id)
                items.append(item)
            return items

    def done(self, alert_id: str) -> None:
        """Release the claim taken by `pop_ready`."""
        with self._cond:
            self._in_flight.discard(alert_id)

    def next_due_at(self) -> Optional[datetime]:
        """Earliest time any held item becomes runnable."""
        with self._cond:
            if self._ready:
                return self._ready[0][2].enqueued_at
            if self._delayed:
                return self._delayed[0][0]
            return None

    def contains(self, alert_id: str) -> bool:
        with self._cond:
            return alert_id in self._queued or alert_id in self._in_flight

    def wait(self, timeout: float) -> None:
        with self._cond:
            self._cond.wait(timeout)

    def counts(self) -> Dict[str, int]:
        with self._cond:
            return {
                "ready": len(self._ready),
                "delayed": len(self._delayed),
                "in_flight": len(self._in_flight),
            }

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)
