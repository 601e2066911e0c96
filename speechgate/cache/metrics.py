"""Prometheus metrics for the cache engine.

Defined metrics:
- speechgate_cache_events_total: Counter of cache events by cache name and event type
- speechgate_cache_bytes: Gauge of bytes held by each cache
- speechgate_cache_entries: Gauge of entries held by each cache
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

cache_events_total = Counter(
    "speechgate_cache_events_total",
    "Cache events (hit, miss, set, delete, evict, clear) by cache",
    ["cache", "event"],
)

cache_bytes = Gauge(
    "speechgate_cache_bytes",
    "Estimated bytes held by the cache",
    ["cache"],
)

cache_entries = Gauge(
    "speechgate_cache_entries",
    "Number of entries held by the cache",
    ["cache"],
)
