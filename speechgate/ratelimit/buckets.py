"""Sliding-window request buckets.

Each bucket holds one record per admitted attempt, keyed by an attempt key
issued by the manager. Pruning is lazy: every read drops records older than
``now - window_s`` first, so ``count()`` is always the in-window usage.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class RequestRecord:
    """One admitted attempt. ``success`` is provisional until completion."""

    timestamp: float
    duration_ms: int = 0
    success: bool = True


class RateLimitBucket:
    """Request records inside a single sliding window."""

    def __init__(self, bucket_id: str, window_s: float, max_requests: int) -> None:
        self.bucket_id = bucket_id
        self.window_s = window_s
        self.max_requests = max_requests
        self._records: dict[str, RequestRecord] = {}

    def prune(self, now: float) -> int:
        """Drop records older than the window. Returns the number dropped."""
        cutoff = now - self.window_s
        stale = [key for key, record in self._records.items() if record.timestamp < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)

    def count(self, now: float) -> int:
        self.prune(now)
        return len(self._records)

    def is_full(self, now: float) -> bool:
        return self.count(now) >= self.max_requests

    def oldest_timestamp(self) -> float | None:
        if not self._records:
            return None
        return min(record.timestamp for record in self._records.values())

    def retry_after_s(self, now: float) -> float:
        """Seconds until the oldest record leaves the window."""
        oldest = self.oldest_timestamp()
        if oldest is None:
            return 0.0
        return max(0.0, oldest + self.window_s - now)

    def add(self, key: str, now: float) -> None:
        self._records[key] = RequestRecord(timestamp=now)

    def complete(self, key: str, *, success: bool, duration_ms: int) -> bool:
        """Finalize the record for ``key``. False if it already left the window."""
        record = self._records.get(key)
        if record is None:
            return False
        record.success = success
        record.duration_ms = duration_ms
        return True

    def records(self) -> dict[str, RequestRecord]:
        return dict(self._records)

    def clear(self) -> None:
        self._records.clear()

    def utilization_percent(self, now: float) -> float:
        return self.count(now) / self.max_requests * 100
