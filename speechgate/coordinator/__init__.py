"""API call coordination: caching, deduplication, admission and dispatch."""

from __future__ import annotations

from speechgate.coordinator.coordinator import APICoordinator, CoordinatorStats, HealthStatus
from speechgate.coordinator.keys import cache_key, request_key
from speechgate.coordinator.pool import (
    ClientHandle,
    ClientPool,
    ClientPoolStats,
    InMemoryClientPool,
)
from speechgate.coordinator.retry import call_with_retries
from speechgate.coordinator.transport import HttpxTransport, Transport

__all__ = [
    "APICoordinator",
    "ClientHandle",
    "ClientPool",
    "ClientPoolStats",
    "CoordinatorStats",
    "HealthStatus",
    "HttpxTransport",
    "InMemoryClientPool",
    "Transport",
    "call_with_retries",
    "cache_key",
    "request_key",
]
