"""APICoordinator: single entry point for calls to the speech service.

Per call (``execute_call``):

1. validate the call type and that the coordinator is open
2. serve from the response cache when caching is on for the call
3. join an identical in-flight call when deduplication is on; the first
   caller's response is broadcast to every waiter
4. admission: ask the rate-limit manager; when denied, queue and wait for
   the grant up to ``max_admission_wait_s`` (None waits indefinitely)
5. record start, take a pooled client, dispatch to the transport under the
   call's timeout
6. always record completion, release the client, update per-type stats
7. on success, fill the cache; on failure, classify the exception and
   return a failed response

Only programming errors raise (unsupported call type, call after shutdown).
Everything else becomes an ``APICallResponse``. The coordinator makes one
attempt per call; see ``speechgate.coordinator.retry`` for the caller-side
retry loop.

Safe via single event loop: shared maps are never mutated across an await.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from speechgate._types import (
    APICallRequest,
    APICallResponse,
    APIRequestInfo,
    CallError,
    CallType,
    RequestKind,
    RequestMetadata,
    RequestOptions,
    RequestPriority,
    ResponseMetadata,
    RetryContext,
)
from speechgate.cache.engine import CacheEngine
from speechgate.cache.integrity import json_checksum
from speechgate.config.settings import CacheSettings, CoordinatorSettings, merge_settings
from speechgate.coordinator.keys import request_key
from speechgate.coordinator.metrics import (
    coordinator_active_calls,
    coordinator_admission_wait_seconds,
    coordinator_call_duration_seconds,
    coordinator_calls_total,
)
from speechgate.errors.adapter import to_raw_failure
from speechgate.errors.classifier import ErrorClassifier
from speechgate.exceptions import (
    AdmissionTimeoutError,
    CoordinatorClosedError,
    UnsupportedCallTypeError,
)
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from speechgate._types import ServiceConfig
    from speechgate.coordinator.pool import ClientHandle, ClientPool
    from speechgate.coordinator.transport import Transport
    from speechgate.ratelimit.manager import RateLimitManager

logger = get_logger("coordinator")

_HANDLER_NAMES: dict[CallType, str] = {
    CallType.CREATE_TRANSCRIPTION: "create_transcription",
    CallType.GET_TRANSCRIPTION: "get_transcription",
    CallType.LIST_TRANSCRIPTIONS: "list_transcriptions",
    CallType.DELETE_TRANSCRIPTION: "delete_transcription",
    CallType.GET_HEALTH: "get_health",
    CallType.AUTHENTICATE: "authenticate",
}

_REQUEST_KINDS: dict[CallType, RequestKind] = {
    CallType.CREATE_TRANSCRIPTION: RequestKind.TRANSCRIPTION,
    CallType.GET_TRANSCRIPTION: RequestKind.TRANSCRIPTION,
    CallType.LIST_TRANSCRIPTIONS: RequestKind.TRANSCRIPTION,
    CallType.DELETE_TRANSCRIPTION: RequestKind.TRANSCRIPTION,
    CallType.AUTHENTICATE: RequestKind.AUTHENTICATION,
    CallType.GET_HEALTH: RequestKind.HEALTH_CHECK,
}

# Expected call durations, reported to the rate-limit manager
_ESTIMATED_DURATION_MS: dict[CallType, int] = {
    CallType.CREATE_TRANSCRIPTION: 2000,
    CallType.GET_TRANSCRIPTION: 800,
    CallType.LIST_TRANSCRIPTIONS: 1200,
    CallType.DELETE_TRANSCRIPTION: 500,
    CallType.AUTHENTICATE: 600,
    CallType.GET_HEALTH: 300,
}

_CREATE_OPTIONS = RequestOptions(timeout_s=30.0, max_retries=3, enable_caching=False)
_GET_OPTIONS = RequestOptions(timeout_s=15.0, max_retries=2, enable_caching=True, cache_ttl_s=30.0)
_LIST_OPTIONS = RequestOptions(
    timeout_s=20.0, max_retries=2, enable_caching=True, cache_ttl_s=60.0
)
_DELETE_OPTIONS = RequestOptions(timeout_s=15.0, max_retries=2, enable_caching=False)
_AUTH_OPTIONS = RequestOptions(timeout_s=10.0, max_retries=1, enable_caching=False)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class CoordinatorStats:
    """Point-in-time coordinator statistics.

    ``error_rates_by_type`` holds failed/total per call type as a fraction.
    Cache hits and deduplicated calls are not counted in ``total_calls``.
    """

    total_calls: int
    successful_calls: int
    failed_calls: int
    cached_responses: int
    deduplicated_calls: int
    average_response_time_ms: float
    current_concurrent_calls: int
    calls_by_type: dict[str, int]
    error_rates_by_type: dict[str, float]
    last_updated: str


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Latest health check result for a region."""

    region: str
    healthy: bool
    checked_at: str
    duration_ms: int
    error: str | None = None


class APICoordinator:
    """Coordinates caching, deduplication, admission and dispatch of API calls.

    Args:
        rate_limiter: Admission control.
        client_pool: Source of client handles.
        transport: Performs the actual calls.
        settings: Coordinator behavior.
        classifier: Failure classification. Default: ``ErrorClassifier()``.
        clock: Monotonic time function in seconds, used for durations.
        now: ISO-8601 timestamp provider for response metadata.
    """

    def __init__(
        self,
        rate_limiter: RateLimitManager,
        client_pool: ClientPool,
        transport: Transport,
        *,
        settings: CoordinatorSettings | None = None,
        classifier: ErrorClassifier | None = None,
        clock: Callable[[], float] | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._client_pool = client_pool
        self._transport = transport
        self._settings = settings if settings is not None else CoordinatorSettings()
        self._classifier = classifier if classifier is not None else ErrorClassifier()
        self._clock: Callable[[], float] = clock if clock is not None else time.monotonic
        self._now: Callable[[], str] = now if now is not None else _utc_now_iso

        self._handlers: dict[CallType, Callable[..., Awaitable[Any]]] = {}
        for call_type, name in _HANDLER_NAMES.items():
            handler = getattr(transport, name, None)
            if handler is not None:
                self._handlers[call_type] = handler

        self._cache = self._build_cache(self._settings)
        self._inflight: dict[str, asyncio.Future[APICallResponse[Any]]] = {}
        self._active: dict[str, APICallRequest] = {}
        # Calls inside _execute, including those waiting for a slot or a grant
        self._in_progress = 0
        self._admissions: dict[str, asyncio.Future[None]] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_calls)

        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._cached_responses = 0
        self._deduplicated_calls = 0
        self._average_response_ms = 0.0
        self._calls_by_type: dict[CallType, int] = dict.fromkeys(CallType, 0)
        self._failures_by_type: dict[CallType, int] = dict.fromkeys(CallType, 0)

        self._health_targets: dict[str, ServiceConfig] = {}
        self._health_status: dict[str, HealthStatus] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False

    @staticmethod
    def _build_cache(settings: CoordinatorSettings) -> CacheEngine[APICallResponse[Any]]:
        return CacheEngine(
            CacheSettings(
                max_entries=settings.cache_size,
                default_ttl_s=settings.default_cache_ttl_s,
            ),
            checksum=json_checksum,
            name="responses",
        )

    @property
    def settings(self) -> CoordinatorSettings:
        return self._settings

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def cache(self) -> CacheEngine[APICallResponse[Any]]:
        return self._cache

    # --- Core ---

    async def execute_call(self, request: APICallRequest) -> APICallResponse[Any]:
        """Execute one attempt of ``request``.

        Raises:
            CoordinatorClosedError: Called after ``shutdown``.
            UnsupportedCallTypeError: Transport has no handler for the call type.
        """
        if self._closed:
            raise CoordinatorClosedError
        handler = self._handlers.get(request.call_type)
        if handler is None:
            raise UnsupportedCallTypeError(request.call_type.value)

        key = request_key(request)
        use_cache = self._settings.enable_caching and request.options.enable_caching

        if use_cache:
            hit = self._cache.get(key)
            if hit.found and hit.data is not None:
                self._cached_responses += 1
                coordinator_calls_total.labels(
                    call_type=request.call_type.value, status="cached"
                ).inc()
                logger.debug("call_cache_hit", request_id=request.request_id)
                return dataclasses.replace(
                    hit.data,
                    request_id=request.request_id,
                    metadata=dataclasses.replace(
                        hit.data.metadata,
                        timestamp=self._now(),
                        retry_count=request.retry_count,
                        from_cache=True,
                    ),
                )

        if not self._settings.enable_deduplication:
            return await self._execute(request, handler, key, use_cache)

        inflight = self._inflight.get(key)
        if inflight is not None:
            first = await self._join(inflight)
            if first is not None:
                self._deduplicated_calls += 1
                coordinator_calls_total.labels(
                    call_type=request.call_type.value, status="deduplicated"
                ).inc()
                logger.debug(
                    "call_deduplicated",
                    request_id=request.request_id,
                    first_request_id=first.request_id,
                )
                return dataclasses.replace(
                    first,
                    request_id=request.request_id,
                    metadata=dataclasses.replace(
                        first.metadata, retry_count=request.retry_count, deduplicated=True
                    ),
                )
            return await self._execute(request, handler, key, use_cache)

        future: asyncio.Future[APICallResponse[Any]] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            response = await self._execute(request, handler, key, use_cache)
            future.set_result(response)
            return response
        finally:
            if not future.done():
                future.cancel()
            if self._inflight.get(key) is future:
                del self._inflight[key]

    @staticmethod
    async def _join(
        inflight: asyncio.Future[APICallResponse[Any]],
    ) -> APICallResponse[Any] | None:
        """Wait for an identical in-flight call. None if that call was abandoned."""
        try:
            return await asyncio.shield(inflight)
        except asyncio.CancelledError:
            if inflight.cancelled():
                return None
            raise

    async def _execute(
        self,
        request: APICallRequest,
        handler: Callable[..., Awaitable[Any]],
        key: str,
        use_cache: bool,
    ) -> APICallResponse[Any]:
        call_type = request.call_type
        info = APIRequestInfo(
            request_id=request.request_id,
            kind=_REQUEST_KINDS[call_type],
            priority=request.priority,
            estimated_duration_ms=_ESTIMATED_DURATION_MS[call_type],
            retry_count=request.retry_count,
        )
        semaphore = self._semaphore
        start = self._clock()
        client: ClientHandle | None = None
        started = False
        success = False
        data: Any = None
        failure: Exception | None = None

        self._enter_call()
        try:
            async with semaphore:
                try:
                    if self._closed:
                        raise CoordinatorClosedError
                    await self._await_admission(info)
                    self._rate_limiter.record_request_start(request.request_id)
                    started = True
                    # Granted while shutting down: give the slot back, never dispatch.
                    if self._closed:
                        raise CoordinatorClosedError

                    client = await self._client_pool.get_client(request.service)
                    self._mark_active(request)
                    data = await asyncio.wait_for(
                        handler(request.service, request.payload),
                        timeout=request.options.timeout_s,
                    )
                    success = True
                except Exception as exc:
                    failure = exc
                finally:
                    duration_ms = int((self._clock() - start) * 1000)
                    if started:
                        self._rate_limiter.record_request_completion(
                            request.request_id, success, duration_ms
                        )
                    if client is not None:
                        await self._client_pool.release_client(client.client_id)
                    self._mark_inactive(request.request_id)
                    self._record_call(call_type, success, duration_ms)
        finally:
            self._leave_call()

        metadata = ResponseMetadata(
            timestamp=self._now(),
            duration_ms=duration_ms,
            region=request.service.region,
            retry_count=request.retry_count,
            client_id=client.client_id if client is not None else None,
        )

        if failure is None:
            response: APICallResponse[Any] = APICallResponse(
                request_id=request.request_id, success=True, data=data, metadata=metadata
            )
            if use_cache and not self._closed:
                ttl_s = request.options.cache_ttl_s or self._settings.default_cache_ttl_s
                self._cache.set(key, response, ttl_s=ttl_s)
            logger.debug(
                "call_completed",
                request_id=request.request_id,
                call_type=call_type.value,
                duration_ms=duration_ms,
            )
            return response

        result = self._classifier.handle_error(
            to_raw_failure(failure),
            RetryContext(
                request_id=request.request_id,
                call_type=call_type.value,
                region=request.service.region,
                retry_attempt=request.retry_count,
                request_timestamp=metadata.timestamp,
            ),
        )
        classification = result.classification
        logger.warning(
            "call_failed",
            request_id=request.request_id,
            call_type=call_type.value,
            kind=classification.kind.value,
            error=str(failure),
            duration_ms=duration_ms,
        )
        return APICallResponse(
            request_id=request.request_id,
            success=False,
            metadata=metadata,
            error=CallError(
                code=classification.kind.value,
                message=classification.user_message,
                retryable=result.should_retry,
                retry_delay_ms=result.retry_delay_ms,
                classification=classification,
            ),
        )

    async def _await_admission(self, info: APIRequestInfo) -> None:
        """Return once ``info`` may start; queued grants arrive already reserved.

        The wait is bounded by ``max_admission_wait_s``; with None the call
        waits until a slot frees, however long the exhausted window lasts.

        Raises:
            AdmissionTimeoutError: Not granted within ``max_admission_wait_s``.
            CoordinatorClosedError: The queued admission was dropped by ``shutdown``.
        """
        decision = self._rate_limiter.can_process_request(info)
        if decision.allowed:
            return

        max_wait_s = self._settings.max_admission_wait_s
        grant = self._rate_limiter.queue_request(info)
        self._admissions[info.request_id] = grant
        waited_from = self._clock()
        try:
            await asyncio.wait({grant}, timeout=max_wait_s)
        except asyncio.CancelledError:
            self._release_admission(info.request_id, grant)
            raise
        finally:
            if self._admissions.get(info.request_id) is grant:
                del self._admissions[info.request_id]
        waited_s = self._clock() - waited_from
        coordinator_admission_wait_seconds.observe(waited_s)

        # A grant may land after the wait times out but before this task resumes.
        if grant.done() and not grant.cancelled():
            logger.debug("call_admitted_from_queue", request_id=info.request_id, waited_s=waited_s)
            return

        self._rate_limiter.cancel_queued(info.request_id)
        if self._closed:
            raise CoordinatorClosedError
        raise AdmissionTimeoutError(info.request_id, round(waited_s, 3))

    def _release_admission(self, request_id: str, grant: asyncio.Future[None]) -> None:
        """Leave the queue, or hand back a slot granted to a caller that is gone."""
        if self._rate_limiter.cancel_queued(request_id):
            return
        if grant.done() and not grant.cancelled():
            # The manager already recorded start on this call's behalf.
            self._rate_limiter.record_request_completion(request_id, False, 0)
            logger.debug("granted_slot_released", request_id=request_id)

    def _enter_call(self) -> None:
        self._in_progress += 1
        self._idle.clear()

    def _leave_call(self) -> None:
        self._in_progress -= 1
        if self._in_progress == 0:
            self._idle.set()

    def _mark_active(self, request: APICallRequest) -> None:
        self._active[request.request_id] = request
        coordinator_active_calls.set(len(self._active))

    def _mark_inactive(self, request_id: str) -> None:
        self._active.pop(request_id, None)
        coordinator_active_calls.set(len(self._active))

    def _record_call(self, call_type: CallType, success: bool, duration_ms: int) -> None:
        self._total_calls += 1
        self._calls_by_type[call_type] += 1
        status = "success" if success else "failure"
        coordinator_calls_total.labels(call_type=call_type.value, status=status).inc()
        coordinator_call_duration_seconds.labels(call_type=call_type.value).observe(
            duration_ms / 1000
        )
        if success:
            self._successful_calls += 1
            n = self._successful_calls
            self._average_response_ms += (duration_ms - self._average_response_ms) / n
        else:
            self._failed_calls += 1
            self._failures_by_type[call_type] += 1

    # --- Convenience wrappers ---

    def _build_request(
        self,
        call_type: CallType,
        service: ServiceConfig,
        payload: dict[str, Any],
        options: RequestOptions,
        priority: RequestPriority,
        overrides: dict[str, Any],
        metadata: RequestMetadata | None = None,
    ) -> APICallRequest:
        request_id = overrides.pop("request_id", None) or f"{call_type.value}-{uuid.uuid4().hex[:12]}"
        priority = overrides.pop("priority", priority)
        metadata = overrides.pop("metadata", None) or metadata or RequestMetadata()
        if overrides:
            options = dataclasses.replace(options, **overrides)
        return APICallRequest(
            request_id=request_id,
            call_type=call_type,
            service=service,
            payload=payload,
            priority=priority,
            options=options,
            metadata=metadata,
        )

    async def create_transcription(
        self, service: ServiceConfig, payload: dict[str, Any], **overrides: Any
    ) -> APICallResponse[Any]:
        """Submit a batch transcription job."""
        request = self._build_request(
            CallType.CREATE_TRANSCRIPTION,
            service,
            payload,
            _CREATE_OPTIONS,
            RequestPriority.NORMAL,
            overrides,
        )
        return await self.execute_call(request)

    async def get_transcription(
        self, service: ServiceConfig, job_id: str, **overrides: Any
    ) -> APICallResponse[Any]:
        """Fetch a transcription job. Cached for 30s by default."""
        request = self._build_request(
            CallType.GET_TRANSCRIPTION,
            service,
            {"job_id": job_id},
            _GET_OPTIONS,
            RequestPriority.HIGH,
            overrides,
            RequestMetadata(job_id=job_id),
        )
        return await self.execute_call(request)

    async def list_transcriptions(
        self, service: ServiceConfig, **overrides: Any
    ) -> APICallResponse[Any]:
        """List transcription jobs. Cached for 60s by default."""
        request = self._build_request(
            CallType.LIST_TRANSCRIPTIONS, service, {}, _LIST_OPTIONS, RequestPriority.LOW, overrides
        )
        return await self.execute_call(request)

    async def delete_transcription(
        self, service: ServiceConfig, job_id: str, **overrides: Any
    ) -> APICallResponse[Any]:
        request = self._build_request(
            CallType.DELETE_TRANSCRIPTION,
            service,
            {"job_id": job_id},
            _DELETE_OPTIONS,
            RequestPriority.NORMAL,
            overrides,
            RequestMetadata(job_id=job_id),
        )
        return await self.execute_call(request)

    async def perform_health_check(
        self, service: ServiceConfig, **overrides: Any
    ) -> APICallResponse[Any]:
        options = RequestOptions(
            timeout_s=self._settings.health_check.timeout_s, max_retries=1, enable_caching=False
        )
        request = self._build_request(
            CallType.GET_HEALTH, service, {}, options, RequestPriority.LOW, overrides
        )
        return await self.execute_call(request)

    async def authenticate(self, service: ServiceConfig, **overrides: Any) -> APICallResponse[Any]:
        request = self._build_request(
            CallType.AUTHENTICATE, service, {}, _AUTH_OPTIONS, RequestPriority.URGENT, overrides
        )
        return await self.execute_call(request)

    # --- Observability ---

    def get_stats(self) -> CoordinatorStats:
        return CoordinatorStats(
            total_calls=self._total_calls,
            successful_calls=self._successful_calls,
            failed_calls=self._failed_calls,
            cached_responses=self._cached_responses,
            deduplicated_calls=self._deduplicated_calls,
            average_response_time_ms=self._average_response_ms,
            current_concurrent_calls=len(self._active),
            calls_by_type={ct.value: n for ct, n in self._calls_by_type.items()},
            error_rates_by_type={
                ct.value: (self._failures_by_type[ct] / n if n else 0.0)
                for ct, n in self._calls_by_type.items()
            },
            last_updated=self._now(),
        )

    def get_active_requests(self) -> list[APICallRequest]:
        return list(self._active.values())

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("response_cache_cleared")

    def update_config(self, **changes: Any) -> CoordinatorSettings:
        """Apply validated setting changes.

        Cache changes rebuild the (emptied) response cache. Health check
        changes restart periodic checks when the coordinator is running.

        Raises:
            ConfigError: Unknown setting or invalid value.
        """
        settings = merge_settings(self._settings, **changes)
        previous = self._settings
        self._settings = settings

        if (settings.cache_size, settings.default_cache_ttl_s) != (
            previous.cache_size,
            previous.default_cache_ttl_s,
        ):
            self._cache = self._build_cache(settings)
        if settings.max_concurrent_calls != previous.max_concurrent_calls:
            self._semaphore = asyncio.Semaphore(settings.max_concurrent_calls)
        if "health_check" in changes and self._started:
            self._cancel_health_task()
            if settings.health_check.enabled:
                self._health_task = asyncio.create_task(self._health_loop())

        logger.info("coordinator_config_updated", changes=sorted(changes))
        return settings

    # --- Health checks ---

    def add_health_target(self, service: ServiceConfig) -> None:
        """Register a region to be checked periodically."""
        self._health_targets[service.region] = service

    def get_health_status(self) -> dict[str, HealthStatus]:
        return dict(self._health_status)

    async def start(self) -> None:
        """Start periodic health checks if enabled. No-op if already started."""
        if self._closed:
            raise CoordinatorClosedError
        if self._started:
            return
        self._started = True
        if self._settings.health_check.enabled:
            self._health_task = asyncio.create_task(self._health_loop())
        logger.info(
            "coordinator_started",
            health_checks=self._settings.health_check.enabled,
            targets=len(self._health_targets),
        )

    async def run_health_checks(self) -> dict[str, HealthStatus]:
        """Check every registered target once and store the results."""
        for region, service in list(self._health_targets.items()):
            response = await self.perform_health_check(service)
            healthy = bool(
                response.success and isinstance(response.data, dict) and response.data.get("healthy")
            )
            status = HealthStatus(
                region=region,
                healthy=healthy,
                checked_at=response.metadata.timestamp,
                duration_ms=response.metadata.duration_ms,
                error=response.error.code if response.error is not None else None,
            )
            self._health_status[region] = status
            if not healthy:
                logger.warning("health_check_failed", region=region, error=status.error)
        return self.get_health_status()

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check.interval_s)
            try:
                await self.run_health_checks()
            except Exception:
                logger.exception("health_check_loop_error")

    def _cancel_health_task(self) -> asyncio.Task[None] | None:
        task = self._health_task
        self._health_task = None
        if task is not None:
            task.cancel()
        return task

    # --- Lifecycle ---

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Stop health checks, drain in-progress calls, then clear all state.

        Calls not yet dispatched (queued for admission, or waiting for a
        concurrency slot) fail with ``CoordinatorClosedError`` instead of
        reaching the transport. Dispatched calls still running after the
        timeout are logged, not aborted.
        """
        self._closed = True
        task = self._cancel_health_task()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for request_id in list(self._admissions):
            self._rate_limiter.cancel_queued(request_id)

        drain_timeout_s = timeout_s if timeout_s is not None else self._settings.shutdown_timeout_s
        if self._in_progress:
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=drain_timeout_s)
            except TimeoutError:
                logger.warning(
                    "coordinator_shutdown_incomplete",
                    remaining=self._in_progress,
                    timeout_s=drain_timeout_s,
                )

        self._cache.clear()
        self._inflight.clear()
        self._active.clear()
        coordinator_active_calls.set(0)
        logger.info("coordinator_shutdown", total_calls=self._total_calls)
