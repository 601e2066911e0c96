"""Admission control: sliding quota windows, adaptive concurrency and a priority queue."""

from __future__ import annotations

from speechgate.ratelimit.buckets import RateLimitBucket, RequestRecord
from speechgate.ratelimit.manager import (
    AdmissionDecision,
    QueueStatus,
    QuotaUtilization,
    RateLimitManager,
    RateLimitStats,
    RateLimitViolation,
)
from speechgate.ratelimit.queue import AdmissionQueue, QueuedRequest

__all__ = [
    "AdmissionDecision",
    "AdmissionQueue",
    "QueueStatus",
    "QueuedRequest",
    "QuotaUtilization",
    "RateLimitBucket",
    "RateLimitManager",
    "RateLimitStats",
    "RateLimitViolation",
    "RequestRecord",
]
