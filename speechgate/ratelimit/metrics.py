"""Prometheus metrics for the rate-limit manager.

Defined metrics:
- speechgate_ratelimit_violations_total: Counter of admission denials by violation type
- speechgate_ratelimit_queue_depth: Gauge of queued requests by priority
- speechgate_ratelimit_queue_wait_seconds: Histogram of time spent waiting for admission
- speechgate_ratelimit_active_requests: Gauge of requests currently holding a slot
- speechgate_ratelimit_concurrency_limit: Gauge of the adaptive concurrency limit
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

ratelimit_violations_total = Counter(
    "speechgate_ratelimit_violations_total",
    "Admission denials by violation type",
    ["type"],
)

ratelimit_queue_depth = Gauge(
    "speechgate_ratelimit_queue_depth",
    "Requests waiting in the admission queue",
    ["priority"],
)

ratelimit_queue_wait_seconds = Histogram(
    "speechgate_ratelimit_queue_wait_seconds",
    "Time spent in the admission queue before being granted",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

ratelimit_active_requests = Gauge(
    "speechgate_ratelimit_active_requests",
    "Requests currently holding a concurrency slot",
)

ratelimit_concurrency_limit = Gauge(
    "speechgate_ratelimit_concurrency_limit",
    "Current adaptive concurrency limit",
)
