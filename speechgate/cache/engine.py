"""CacheEngine: bounded key/value store with LRU eviction, TTL and integrity checks.

Generic over the payload type. The engine knows nothing about API calls or
transcriptions; specializations supply:

- ``sizer``: estimated byte size of a payload (drives the byte budget)
- ``checksum``: digest of a payload, recomputed on every hit to detect
  corruption (``None`` disables verification)

Capacity policy, applied before every insertion:
1. entry count >= max_entries: evict ceil(10% of max_entries) by LRU order
2. bytes >= max_bytes: evict one entry at a time (LRU) until bytes <= 80% of budget
3. purge expired entries

LRU order is a monotonically increasing access counter, never wall-clock time,
so clock adjustments cannot reorder entries.

Expected conditions (miss, expiry, corruption, eviction) are reported through
return values and events, never raised. Listener exceptions are logged and
swallowed.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from speechgate.cache.integrity import CHECKSUM_ALGORITHM, json_size, size_category
from speechgate.cache.metrics import cache_bytes, cache_entries, cache_events_total
from speechgate.config.settings import CacheSettings
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

T = TypeVar("T")

logger = get_logger("cache")

# Fraction of max_entries evicted when the entry limit is reached
_COUNT_EVICTION_FRACTION = 0.1

# Byte usage target after a byte-budget eviction
_BYTES_TARGET_FRACTION = 0.8


class CacheEventType(Enum):
    """Observable cache operations."""

    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    EVICT = "evict"
    CLEAR = "clear"


@dataclass(slots=True)
class CacheIntegrity:
    """Integrity record stored alongside each entry."""

    checksum: str
    algorithm: str = CHECKSUM_ALGORITHM
    status: str = "verified"


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached payload plus bookkeeping. Owned and mutated by the engine only."""

    key: str
    data: T
    created_at: float
    expires_at: float
    last_access_time: float
    size_bytes: int
    access_count: int = 0
    integrity: CacheIntegrity | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass(frozen=True, slots=True)
class CacheLookup(Generic[T]):
    """Result of ``CacheEngine.get``."""

    found: bool
    data: T | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class CacheEvent:
    """Snapshot delivered to cache listeners."""

    type: CacheEventType
    key: str
    timestamp: float
    hit_ratio: float
    cache_size: int
    evicted_entry: CacheEntry[Any] | None = None


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time cache statistics. ``hit_ratio`` is a fraction in [0, 1]."""

    hits: int
    misses: int
    total_requests: int
    hit_ratio: float
    writes: int
    evictions: int
    expired: int
    corrupted: int
    errors: int
    entry_count: int
    bytes_used: int
    max_bytes: int
    max_entries: int

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.__slots__}


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    """Byte budget usage."""

    used_bytes: int
    max_bytes: int
    utilization_percent: float
    entry_count: int
    average_entry_size: float


@dataclass(slots=True)
class _Counters:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    evictions: int = 0
    expired: int = 0
    corrupted: int = 0
    errors: int = 0


class CacheEngine(Generic[T]):
    """Generic LRU cache with TTL expiry and pluggable integrity verification.

    Safe to share between threads and asyncio tasks: every public operation
    runs under a re-entrant lock.

    Args:
        settings: Limits and feature switches. Default: ``CacheSettings()``.
        sizer: Payload size estimator in bytes. Default: canonical JSON length.
        checksum: Payload digest for integrity checks. ``None`` disables them.
        clock: Wall-clock function in seconds. Default: ``time.time``.
        name: Label used in logs and metrics.
    """

    def __init__(
        self,
        settings: CacheSettings | None = None,
        *,
        sizer: Callable[[T], int] | None = None,
        checksum: Callable[[T], str] | None = None,
        clock: Callable[[], float] | None = None,
        name: str = "default",
    ) -> None:
        self._settings = settings if settings is not None else CacheSettings()
        self._sizer: Callable[[T], int] = sizer if sizer is not None else json_size
        self._checksum = checksum
        self._clock: Callable[[], float] = clock if clock is not None else time.time
        self._name = name

        self._entries: dict[str, CacheEntry[T]] = {}
        self._access_order: dict[str, int] = {}
        self._access_counter = 0
        self._bytes_used = 0
        self._counters = _Counters()
        self._listeners: dict[CacheEventType, list[Callable[[CacheEvent], None]]] = {
            event_type: [] for event_type in CacheEventType
        }
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def settings(self) -> CacheSettings:
        return self._settings

    @property
    def integrity_enabled(self) -> bool:
        return self._checksum is not None and self._settings.enable_integrity_check

    # --- Core operations ---

    def get(self, key: str) -> CacheLookup[T]:
        """Look up ``key``.

        Expired and corrupted entries are deleted as a side effect and
        reported as misses with an explanatory ``error``.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None:
                self._record_miss(key)
                return CacheLookup(found=False)

            if entry.is_expired(now):
                self._remove(key)
                self._counters.expired += 1
                self._record_miss(key)
                return CacheLookup(found=False, error="entry expired")

            if not self._verify(entry):
                self._remove(key)
                self._counters.corrupted += 1
                self._record_miss(key)
                logger.warning("cache_integrity_failed", cache=self._name, key=key)
                return CacheLookup(found=False, error="integrity check failed")

            self._touch(key)
            entry.last_access_time = now
            entry.access_count += 1
            self._counters.hits += 1
            self._emit(CacheEventType.HIT, key)
            return CacheLookup(found=True, data=entry.data)

    def set(
        self,
        key: str,
        data: T,
        *,
        ttl_s: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Store ``data`` under ``key``.

        Args:
            key: Cache key.
            data: Payload.
            ttl_s: Per-entry TTL in seconds. Default: ``settings.default_ttl_s``.
            metadata: Extra metadata merged over the defaults (tags, priority,
                size_category).

        Returns:
            True if stored, False if the sizer or checksum function failed.
        """
        with self._lock:
            try:
                size = self._sizer(data)
                checksum = self._checksum(data) if self.integrity_enabled else None  # type: ignore[misc]
            except Exception:
                self._counters.errors += 1
                logger.warning("cache_set_failed", cache=self._name, key=key, exc_info=True)
                return False

            if key in self._entries:
                self._remove(key)

            self.ensure_capacity()

            now = self._clock()
            ttl = ttl_s if ttl_s is not None else self._settings.default_ttl_s
            entry_metadata: dict[str, Any] = {
                "tags": [],
                "priority": 1,
                "size_category": size_category(size),
            }
            if metadata:
                entry_metadata.update(metadata)

            self._entries[key] = CacheEntry(
                key=key,
                data=data,
                created_at=now,
                expires_at=now + ttl,
                last_access_time=now,
                size_bytes=size,
                integrity=CacheIntegrity(checksum=checksum) if checksum is not None else None,
                metadata=entry_metadata,
            )
            self._touch(key)
            self._bytes_used += size
            self._counters.writes += 1
            self._update_gauges()
            self._emit(CacheEventType.SET, key)
            return True

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it was present."""
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            self._emit(CacheEventType.DELETE, key)
            return True

    def has(self, key: str) -> bool:
        """True if ``key`` is present and unexpired. Does not touch LRU order."""
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def peek(self, key: str) -> CacheEntry[T] | None:
        """Return the live entry for ``key`` without counting a hit or touching LRU order."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    def keys(self) -> list[str]:
        """Unexpired keys. Read-only: expired entries are filtered, not deleted."""
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def entries(self) -> Iterator[CacheEntry[T]]:
        """Iterate over a snapshot of unexpired entries."""
        with self._lock:
            now = self._clock()
            snapshot = [entry for entry in self._entries.values() if not entry.is_expired(now)]
        return iter(snapshot)

    def size(self) -> int:
        """Number of stored entries, expired ones included until purged."""
        return len(self._entries)

    def clear(self) -> None:
        """Drop every entry. Counters are kept."""
        with self._lock:
            self._entries.clear()
            self._access_order.clear()
            self._bytes_used = 0
            self._update_gauges()
            self._emit(CacheEventType.CLEAR, "*")

    # --- Capacity management ---

    def ensure_capacity(self) -> None:
        """Make room for one more entry (count budget, byte budget, expiry)."""
        with self._lock:
            max_entries = self._settings.max_entries
            if len(self._entries) >= max_entries:
                self.evict_lru(math.ceil(max_entries * _COUNT_EVICTION_FRACTION))

            max_bytes = self._settings.max_bytes
            if self._bytes_used >= max_bytes:
                target = max_bytes * _BYTES_TARGET_FRACTION
                while self._bytes_used > target and self._entries:
                    self.evict_lru(1)

            self.cleanup()

    def evict_lru(self, count: int = 1) -> list[CacheEntry[T]]:
        """Evict the ``count`` least recently used entries and return them."""
        with self._lock:
            # Counter values are unique; sort is stable for insertion order anyway.
            victims = sorted(self._access_order.items(), key=lambda item: item[1])[:count]
            evicted: list[CacheEntry[T]] = []
            for key, _order in victims:
                entry = self._remove(key)
                if entry is None:
                    continue
                self._counters.evictions += 1
                evicted.append(entry)
                self._emit(CacheEventType.EVICT, key, evicted_entry=entry)
            if evicted:
                logger.debug("cache_evicted", cache=self._name, count=len(evicted))
            return evicted

    def cleanup(self) -> int:
        """Purge expired entries. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._counters.expired += len(expired)
            return len(expired)

    # --- Observability ---

    def add_listener(
        self, event_type: CacheEventType, listener: Callable[[CacheEvent], None]
    ) -> None:
        """Register ``listener`` for ``event_type``."""
        with self._lock:
            if listener not in self._listeners[event_type]:
                self._listeners[event_type].append(listener)

    def remove_listener(
        self, event_type: CacheEventType, listener: Callable[[CacheEvent], None]
    ) -> None:
        """Unregister ``listener``. No-op if it was not registered."""
        with self._lock:
            if listener in self._listeners[event_type]:
                self._listeners[event_type].remove(listener)

    def hit_ratio(self) -> float:
        total = self._counters.hits + self._counters.misses
        return self._counters.hits / total if total > 0 else 0.0

    def get_stats(self) -> CacheStats:
        """Point-in-time statistics snapshot."""
        with self._lock:
            counters = self._counters
            return CacheStats(
                hits=counters.hits,
                misses=counters.misses,
                total_requests=counters.hits + counters.misses,
                hit_ratio=self.hit_ratio(),
                writes=counters.writes,
                evictions=counters.evictions,
                expired=counters.expired,
                corrupted=counters.corrupted,
                errors=counters.errors,
                entry_count=len(self._entries),
                bytes_used=self._bytes_used,
                max_bytes=self._settings.max_bytes,
                max_entries=self._settings.max_entries,
            )

    def get_memory_usage(self) -> MemoryUsage:
        """Byte budget usage snapshot."""
        with self._lock:
            count = len(self._entries)
            max_bytes = self._settings.max_bytes
            return MemoryUsage(
                used_bytes=self._bytes_used,
                max_bytes=max_bytes,
                utilization_percent=(self._bytes_used / max_bytes) * 100 if max_bytes else 0.0,
                entry_count=count,
                average_entry_size=self._bytes_used / count if count else 0.0,
            )

    # --- Internals ---

    def _verify(self, entry: CacheEntry[T]) -> bool:
        if not self.integrity_enabled or entry.integrity is None:
            return True
        try:
            actual = self._checksum(entry.data)  # type: ignore[misc]
        except Exception:
            logger.warning("cache_checksum_error", cache=self._name, key=entry.key, exc_info=True)
            entry.integrity.status = "corrupted"
            return False
        if actual != entry.integrity.checksum:
            entry.integrity.status = "corrupted"
            return False
        return True

    def _touch(self, key: str) -> None:
        self._access_counter += 1
        self._access_order[key] = self._access_counter

    def _remove(self, key: str) -> CacheEntry[T] | None:
        entry = self._entries.pop(key, None)
        self._access_order.pop(key, None)
        if entry is not None:
            self._bytes_used -= entry.size_bytes
            self._update_gauges()
        return entry

    def _record_miss(self, key: str) -> None:
        self._counters.misses += 1
        self._emit(CacheEventType.MISS, key)

    def _update_gauges(self) -> None:
        cache_bytes.labels(cache=self._name).set(self._bytes_used)
        cache_entries.labels(cache=self._name).set(len(self._entries))

    def _emit(
        self,
        event_type: CacheEventType,
        key: str,
        *,
        evicted_entry: CacheEntry[Any] | None = None,
    ) -> None:
        cache_events_total.labels(cache=self._name, event=event_type.value).inc()
        if not self._settings.enable_events:
            return
        listeners = self._listeners[event_type]
        if not listeners:
            return
        event = CacheEvent(
            type=event_type,
            key=key,
            timestamp=self._clock(),
            hit_ratio=self.hit_ratio(),
            cache_size=len(self._entries),
            evicted_entry=evicted_entry,
        )
        for listener in list(listeners):
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "cache_listener_error",
                    cache=self._name,
                    event=event_type.value,
                    key=key,
                    exc_info=True,
                )
