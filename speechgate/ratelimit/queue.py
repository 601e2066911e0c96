"""AdmissionQueue: priority queue of requests waiting for a rate-limit slot.

Four priority levels (URGENT < HIGH < NORMAL < LOW). Within each level the
order is FIFO by insertion sequence.

Each entry carries a future resolved by the manager when the request is
granted. Cancelled entries stay in the heap and are discarded lazily when
they reach the head.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from speechgate._types import RequestPriority

if TYPE_CHECKING:
    import asyncio

    from speechgate._types import APIRequestInfo

# Monotonic counter to break ties within the same priority.
# Ensures strict FIFO even if two requests are enqueued at the same instant.
_sequence_counter: int = 0


def _next_sequence() -> int:
    global _sequence_counter
    _sequence_counter += 1
    return _sequence_counter


@dataclass(slots=True)
class QueuedRequest:
    """Request waiting for admission.

    Implements __lt__ for heapq: ordering by (priority.value, sequence).
    """

    info: APIRequestInfo
    future: asyncio.Future[None]
    enqueued_at: float
    _sequence: int = field(default_factory=_next_sequence)

    @property
    def priority(self) -> RequestPriority:
        return self.info.priority

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, QueuedRequest):
            return NotImplemented
        return (self.priority.value, self._sequence) < (other.priority.value, other._sequence)


class AdmissionQueue:
    """Priority queue with lazy removal of cancelled entries.

    Safe via single event loop: every method is synchronous.
    """

    def __init__(self) -> None:
        self._heap: list[QueuedRequest] = []
        self._pending: dict[str, QueuedRequest] = {}

    def push(self, queued: QueuedRequest) -> QueuedRequest:
        """Add ``queued``. An id already waiting keeps its existing entry, which is returned."""
        existing = self._pending.get(queued.info.request_id)
        if existing is not None and not existing.future.done():
            return existing
        self._pending[queued.info.request_id] = queued
        heapq.heappush(self._heap, queued)
        return queued

    def peek(self) -> QueuedRequest | None:
        """Highest-priority live entry, discarding cancelled ones on the way."""
        while self._heap:
            head = self._heap[0]
            if head.future.done() or self._pending.get(head.info.request_id) is not head:
                heapq.heappop(self._heap)
                if self._pending.get(head.info.request_id) is head:
                    del self._pending[head.info.request_id]
                continue
            return head
        return None

    def pop(self) -> QueuedRequest | None:
        head = self.peek()
        if head is None:
            return None
        heapq.heappop(self._heap)
        del self._pending[head.info.request_id]
        return head

    def cancel(self, request_id: str) -> bool:
        """Cancel a queued request. False if it is not queued."""
        queued = self._pending.pop(request_id, None)
        if queued is None:
            return False
        if not queued.future.done():
            queued.future.cancel()
        return True

    def clear(self) -> int:
        """Cancel every queued request. Returns how many were cancelled."""
        cancelled = 0
        for queued in self._pending.values():
            if not queued.future.done():
                queued.future.cancel()
                cancelled += 1
        self._pending.clear()
        self._heap.clear()
        return cancelled

    def average_wait_s(self, now: float) -> float:
        live = [q for q in self._pending.values() if not q.future.done()]
        if not live:
            return 0.0
        return sum(now - q.enqueued_at for q in live) / len(live)

    @property
    def depth(self) -> int:
        """Number of live queued requests."""
        return sum(1 for q in self._pending.values() if not q.future.done())

    @property
    def depth_by_priority(self) -> dict[str, int]:
        """Count of live queued requests by priority level."""
        counts: dict[str, int] = {p.name: 0 for p in RequestPriority}
        for queued in self._pending.values():
            if not queued.future.done():
                counts[queued.priority.name] += 1
        return counts

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending
