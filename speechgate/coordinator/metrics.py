"""Prometheus metrics for the API call coordinator.

Defined metrics:
- speechgate_coordinator_calls_total: Counter of calls by call type and status
  (success, failure, cached, deduplicated)
- speechgate_coordinator_call_duration_seconds: Histogram of transport call duration
- speechgate_coordinator_admission_wait_seconds: Histogram of time spent waiting for admission
- speechgate_coordinator_active_calls: Gauge of calls currently executing
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

coordinator_calls_total = Counter(
    "speechgate_coordinator_calls_total",
    "Coordinator calls by call type and outcome",
    ["call_type", "status"],
)

coordinator_call_duration_seconds = Histogram(
    "speechgate_coordinator_call_duration_seconds",
    "Duration of dispatched API calls",
    ["call_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

coordinator_admission_wait_seconds = Histogram(
    "speechgate_coordinator_admission_wait_seconds",
    "Time a denied call waited in the admission queue",
    buckets=(0.01, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

coordinator_active_calls = Gauge(
    "speechgate_coordinator_active_calls",
    "Calls currently executing",
)
