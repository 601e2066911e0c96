"""RateLimitManager: admission control against quota windows and a concurrency ceiling.

Admission checks short-circuit in this order, the first violated constraint
determining the reported reason and delay:

1. concurrency: active requests >= adaptive limit, delay = backoff(retry_count)
2. minute / hour / day windows: count >= limit,
   delay = time until the oldest record leaves the window + 1s buffer

``record_request_start`` counts a request against every window immediately,
so the enforced quota is call attempts, not confirmed successes. Records are
keyed by an attempt key bound to the request id at start and matched exactly
at completion.

With adaptive mode on, every completion re-evaluates the concurrency limit
(additive increase, multiplicative decrease):
- success rate < 0.8: limit = max(1, floor(limit * 0.9))
- success rate > 0.95 and duration < 3s: limit = min(configured, limit + 1)

Safe via single event loop: no method awaits while mutating state.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from speechgate._types import ViolationType
from speechgate.config.settings import RateLimitSettings, merge_settings
from speechgate.logging import get_logger
from speechgate.ratelimit.buckets import RateLimitBucket
from speechgate.ratelimit.metrics import (
    ratelimit_active_requests,
    ratelimit_concurrency_limit,
    ratelimit_queue_depth,
    ratelimit_queue_wait_seconds,
    ratelimit_violations_total,
)
from speechgate.ratelimit.queue import AdmissionQueue, QueuedRequest

if TYPE_CHECKING:
    from collections.abc import Callable

    from speechgate._types import APIRequestInfo

logger = get_logger("ratelimit")

# Window lengths
_MINUTE_S = 60.0
_HOUR_S = 3600.0
_DAY_S = 86_400.0

# Added to window-based delays so the retry lands after the record expires
_WINDOW_DELAY_BUFFER_MS = 1000

# Random jitter fraction applied to concurrency backoff
_BACKOFF_JITTER = 0.1

# AIMD thresholds
_SHRINK_BELOW_SUCCESS_RATE = 0.8
_GROW_ABOVE_SUCCESS_RATE = 0.95
_GROW_MAX_DURATION_MS = 3000
_SHRINK_FACTOR = 0.9

# Violations older than this are dropped by sweep()
_VIOLATION_RETENTION_S = 24 * 3600.0


@dataclass(frozen=True, slots=True)
class RateLimitViolation:
    """A recorded admission denial."""

    timestamp: float
    type: ViolationType
    current_usage: int
    limit: int
    recommended_delay_ms: int
    request_id: str


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    """Result of ``can_process_request``."""

    allowed: bool
    delay_ms: int = 0
    reason: str | None = None
    violation: RateLimitViolation | None = None


@dataclass(frozen=True, slots=True)
class QuotaUtilization:
    """Usage of each constraint as a percentage of its limit."""

    minute: float
    hour: float
    day: float
    concurrent: float


@dataclass(frozen=True, slots=True)
class RateLimitStats:
    """Point-in-time snapshot of the manager."""

    total_requests: int
    successful_requests: int
    rate_limited_requests: int
    current_rpm: int
    current_rph: int
    current_rpd: int
    current_concurrency: int
    average_response_time_ms: float
    violation_count: int
    quota_utilization: QuotaUtilization
    adaptive_concurrency_limit: int


@dataclass(frozen=True, slots=True)
class QueueStatus:
    """Admission queue snapshot."""

    length: int
    active_requests: int
    average_wait_ms: float
    by_priority: dict[str, int]


class RateLimitManager:
    """Sliding-window quota and adaptive concurrency admission control.

    Args:
        settings: Window limits, concurrency ceiling and backoff.
        clock: Wall-clock function in seconds. Default: ``time.time``.
        rng: Uniform [0, 1) source for backoff jitter. Default: ``random.random``.
    """

    def __init__(
        self,
        settings: RateLimitSettings | None = None,
        *,
        clock: Callable[[], float] | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings if settings is not None else RateLimitSettings()
        self._clock: Callable[[], float] = clock if clock is not None else time.time
        self._rng: Callable[[], float] = rng if rng is not None else random.random

        self._buckets = self._build_buckets(self._settings)
        self._active: dict[str, str] = {}
        self._attempt_seq = 0
        self._adaptive_limit = self._settings.concurrent_requests

        self._total_requests = 0
        self._successful_requests = 0
        self._rate_limited_requests = 0
        self._average_response_ms = 0.0
        self._violations: deque[RateLimitViolation] = deque(
            maxlen=self._settings.max_violations
        )

        self._queue = AdmissionQueue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._drain_handle: asyncio.TimerHandle | None = None
        self._sweep_task: asyncio.Task[None] | None = None

        ratelimit_concurrency_limit.set(self._adaptive_limit)

    @staticmethod
    def _build_buckets(settings: RateLimitSettings) -> list[tuple[RateLimitBucket, ViolationType]]:
        return [
            (
                RateLimitBucket("minute", _MINUTE_S, settings.requests_per_minute),
                ViolationType.REQUESTS_PER_MINUTE,
            ),
            (
                RateLimitBucket("hour", _HOUR_S, settings.requests_per_hour),
                ViolationType.REQUESTS_PER_HOUR,
            ),
            (
                RateLimitBucket("day", _DAY_S, settings.requests_per_day),
                ViolationType.REQUESTS_PER_DAY,
            ),
        ]

    @property
    def settings(self) -> RateLimitSettings:
        return self._settings

    @property
    def adaptive_concurrency_limit(self) -> int:
        return self._adaptive_limit

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, request_id: str) -> bool:
        return request_id in self._active

    # --- Admission ---

    def can_process_request(self, info: APIRequestInfo) -> AdmissionDecision:
        """Decide whether ``info`` may start now. Denials are recorded as violations."""
        return self._evaluate(info, record=True)

    def _evaluate(self, info: APIRequestInfo, *, record: bool) -> AdmissionDecision:
        now = self._clock()

        active = len(self._active)
        if active >= self._adaptive_limit:
            return self._deny(
                info,
                now,
                ViolationType.CONCURRENT_LIMIT,
                usage=active,
                limit=self._adaptive_limit,
                delay_ms=self.backoff_delay_ms(info.retry_count),
                record=record,
            )

        for bucket, violation_type in self._buckets:
            if bucket.is_full(now):
                usage = bucket.count(now)
                delay_ms = int(bucket.retry_after_s(now) * 1000) + _WINDOW_DELAY_BUFFER_MS
                return self._deny(
                    info,
                    now,
                    violation_type,
                    usage=usage,
                    limit=bucket.max_requests,
                    delay_ms=delay_ms,
                    record=record,
                )

        return AdmissionDecision(allowed=True)

    def _deny(
        self,
        info: APIRequestInfo,
        now: float,
        violation_type: ViolationType,
        *,
        usage: int,
        limit: int,
        delay_ms: int,
        record: bool,
    ) -> AdmissionDecision:
        violation = RateLimitViolation(
            timestamp=now,
            type=violation_type,
            current_usage=usage,
            limit=limit,
            recommended_delay_ms=delay_ms,
            request_id=info.request_id,
        )
        if record:
            self._violations.append(violation)
            self._rate_limited_requests += 1
            ratelimit_violations_total.labels(type=violation_type.value).inc()
            logger.info(
                "rate_limit_violation",
                request_id=info.request_id,
                type=violation_type.value,
                usage=usage,
                limit=limit,
                delay_ms=delay_ms,
            )
        return AdmissionDecision(
            allowed=False,
            delay_ms=delay_ms,
            reason=f"{violation_type.value} reached ({usage}/{limit})",
            violation=violation,
        )

    def backoff_delay_ms(self, retry_count: int) -> int:
        """Exponential backoff with up to +10% jitter, capped at ``backoff_max_ms``."""
        s = self._settings
        base = min(s.backoff_initial_ms * s.backoff_factor**retry_count, s.backoff_max_ms)
        return math.floor(base * (1 + _BACKOFF_JITTER * self._rng()))

    # --- Accounting ---

    def record_request_start(self, request_id: str) -> None:
        """Count ``request_id`` against every window and take a concurrency slot.

        Idempotent while the request is active.
        """
        if request_id in self._active:
            return
        now = self._clock()
        self._attempt_seq += 1
        attempt_key = f"{request_id}#{self._attempt_seq}"
        self._active[request_id] = attempt_key
        for bucket, _ in self._buckets:
            bucket.add(attempt_key, now)
        self._total_requests += 1
        ratelimit_active_requests.set(len(self._active))

    def record_request_completion(
        self, request_id: str, success: bool, duration_ms: int
    ) -> None:
        """Release the slot of ``request_id`` and finalize its window records."""
        attempt_key = self._active.pop(request_id, None)
        if attempt_key is None:
            logger.debug("completion_for_unknown_request", request_id=request_id)
        else:
            for bucket, _ in self._buckets:
                bucket.complete(attempt_key, success=success, duration_ms=duration_ms)

        if success:
            self._successful_requests += 1
            n = self._successful_requests
            self._average_response_ms += (duration_ms - self._average_response_ms) / n

        if self._settings.enable_adaptive:
            self._adjust_concurrency(duration_ms)

        ratelimit_active_requests.set(len(self._active))
        self._drain()

    def _adjust_concurrency(self, duration_ms: int) -> None:
        success_rate = self._successful_requests / max(1, self._total_requests)
        previous = self._adaptive_limit
        if success_rate < _SHRINK_BELOW_SUCCESS_RATE:
            self._adaptive_limit = max(1, math.floor(self._adaptive_limit * _SHRINK_FACTOR))
        elif success_rate > _GROW_ABOVE_SUCCESS_RATE and duration_ms < _GROW_MAX_DURATION_MS:
            self._adaptive_limit = min(self._settings.concurrent_requests, self._adaptive_limit + 1)

        if self._adaptive_limit != previous:
            ratelimit_concurrency_limit.set(self._adaptive_limit)
            logger.debug(
                "concurrency_limit_adjusted",
                previous=previous,
                limit=self._adaptive_limit,
                success_rate=round(success_rate, 3),
            )

    # --- Queue ---

    def queue_request(self, info: APIRequestInfo) -> asyncio.Future[None]:
        """Enqueue ``info`` and return a future resolved when it is granted.

        A granted request already holds its slot (``record_request_start``
        was called on its behalf). The queue drains immediately; if the head
        is still blocked, another drain is scheduled after the reported
        delay. Never blocks the caller. Queuing an id that is already waiting
        returns the existing future.
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        queued = QueuedRequest(info=info, future=loop.create_future(), enqueued_at=self._clock())
        queued = self._queue.push(queued)
        logger.debug(
            "request_queued",
            request_id=info.request_id,
            priority=info.priority.name,
            depth=self._queue.depth,
        )
        self._drain()
        self._update_queue_gauges()
        return queued.future

    def cancel_queued(self, request_id: str) -> bool:
        """Cancel a queued request. False if it is not queued."""
        cancelled = self._queue.cancel(request_id)
        if cancelled:
            self._update_queue_gauges()
        return cancelled

    def _drain(self) -> None:
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None

        while (head := self._queue.peek()) is not None:
            decision = self._evaluate(head.info, record=False)
            if not decision.allowed:
                if self._loop is not None and not self._loop.is_closed():
                    self._drain_handle = self._loop.call_later(
                        decision.delay_ms / 1000, self._drain
                    )
                break

            self._queue.pop()
            self.record_request_start(head.info.request_id)
            head.future.set_result(None)
            ratelimit_queue_wait_seconds.observe(max(0.0, self._clock() - head.enqueued_at))
            logger.debug("request_granted", request_id=head.info.request_id)

        self._update_queue_gauges()

    def _update_queue_gauges(self) -> None:
        for priority, depth in self._queue.depth_by_priority.items():
            ratelimit_queue_depth.labels(priority=priority).set(depth)

    # --- Observability ---

    def get_stats(self) -> RateLimitStats:
        now = self._clock()
        minute, hour, day = (bucket for bucket, _ in self._buckets)
        active = len(self._active)
        return RateLimitStats(
            total_requests=self._total_requests,
            successful_requests=self._successful_requests,
            rate_limited_requests=self._rate_limited_requests,
            current_rpm=minute.count(now),
            current_rph=hour.count(now),
            current_rpd=day.count(now),
            current_concurrency=active,
            average_response_time_ms=self._average_response_ms,
            violation_count=len(self._violations),
            quota_utilization=QuotaUtilization(
                minute=minute.utilization_percent(now),
                hour=hour.utilization_percent(now),
                day=day.utilization_percent(now),
                concurrent=active / self._adaptive_limit * 100,
            ),
            adaptive_concurrency_limit=self._adaptive_limit,
        )

    def get_recent_violations(self, minutes: float = 60) -> list[RateLimitViolation]:
        cutoff = self._clock() - minutes * 60
        return [v for v in self._violations if v.timestamp >= cutoff]

    def get_queue_status(self) -> QueueStatus:
        now = self._clock()
        return QueueStatus(
            length=self._queue.depth,
            active_requests=len(self._active),
            average_wait_ms=self._queue.average_wait_s(now) * 1000,
            by_priority=self._queue.depth_by_priority,
        )

    # --- Configuration and lifecycle ---

    def update_config(self, **changes: Any) -> RateLimitSettings:
        """Apply validated setting changes.

        Window records carry over into the rebuilt buckets. The adaptive
        limit restarts from the configured ceiling.

        Raises:
            ConfigError: Unknown setting or invalid value.
        """
        settings = merge_settings(self._settings, **changes)
        buckets = self._build_buckets(settings)
        for (old, _), (new, _) in zip(self._buckets, buckets, strict=True):
            for key, record in old.records().items():
                new.add(key, record.timestamp)
                new.complete(key, success=record.success, duration_ms=record.duration_ms)

        self._settings = settings
        self._buckets = buckets
        self._adaptive_limit = settings.concurrent_requests
        self._violations = deque(self._violations, maxlen=settings.max_violations)
        ratelimit_concurrency_limit.set(self._adaptive_limit)
        logger.info("rate_limit_config_updated", changes=sorted(changes))
        self._drain()
        return settings

    def reset(self) -> None:
        """Forget all windows, active requests, counters and violations. Cancels queued requests."""
        for bucket, _ in self._buckets:
            bucket.clear()
        self._active.clear()
        self._total_requests = 0
        self._successful_requests = 0
        self._rate_limited_requests = 0
        self._average_response_ms = 0.0
        self._violations.clear()
        self._adaptive_limit = self._settings.concurrent_requests
        self._queue.clear()
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        ratelimit_active_requests.set(0)
        ratelimit_concurrency_limit.set(self._adaptive_limit)
        self._update_queue_gauges()

    def sweep(self) -> int:
        """Prune every window and drop violations older than 24h. Returns records pruned."""
        now = self._clock()
        pruned = sum(bucket.prune(now) for bucket, _ in self._buckets)
        cutoff = now - _VIOLATION_RETENTION_S
        while self._violations and self._violations[0].timestamp < cutoff:
            self._violations.popleft()
        return pruned

    async def start(self) -> None:
        """Start the periodic sweep task. No-op if already running."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("rate_limit_manager_started", sweep_interval_s=self._settings.sweep_interval_s)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.sweep_interval_s)
            try:
                pruned = self.sweep()
            except Exception:
                logger.exception("rate_limit_sweep_failed")
                continue
            if pruned:
                logger.debug("rate_limit_swept", pruned=pruned)

    async def shutdown(self) -> None:
        """Stop the sweep task and cancel every queued request."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        cancelled = self._queue.clear()
        self._update_queue_gauges()
        logger.info("rate_limit_manager_stopped", cancelled_queued=cancelled)
