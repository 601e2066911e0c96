"""Tests for speechgate.coordinator.coordinator: cache, dedup, admission, dispatch."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from speechgate._types import CallType, RequestPriority, ServiceConfig
from speechgate.config.settings import (
    CoordinatorSettings,
    HealthCheckSettings,
    RateLimitSettings,
    RetrySettings,
)
from speechgate.coordinator import APICoordinator, InMemoryClientPool
from speechgate.errors import ErrorClassifier
from speechgate.exceptions import (
    ClientPoolExhaustedError,
    ConfigError,
    CoordinatorClosedError,
    TransportError,
    UnsupportedCallTypeError,
)
from speechgate.ratelimit import RateLimitManager
from tests.helpers import FakeTransport, make_request, make_service


def _coordinator(
    transport: Any,
    *,
    limits: RateLimitSettings | None = None,
    pool: Any = None,
    **settings: Any,
) -> tuple[APICoordinator, RateLimitManager]:
    limiter = RateLimitManager(
        limits or RateLimitSettings(enable_adaptive=False), rng=lambda: 0.0
    )
    coordinator = APICoordinator(
        limiter,
        pool if pool is not None else InMemoryClientPool(),
        transport,
        settings=CoordinatorSettings(**settings),
        classifier=ErrorClassifier(RetrySettings(enable_jitter=False)),
        now=lambda: "2024-01-01T00:00:00+00:00",
    )
    return coordinator, limiter


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestExecuteCall:
    async def test_success(self, transport: FakeTransport) -> None:
        coordinator, limiter = _coordinator(transport)
        response = await coordinator.execute_call(make_request(payload={"audio_url": "u"}))
        assert response.success is True
        assert response.request_id == "req-1"
        assert response.data == {"method": "create_transcription", "audio_url": "u"}
        assert response.error is None
        assert response.metadata.region == "eastus"
        assert response.metadata.client_id is not None
        assert response.metadata.from_cache is False

        stats = coordinator.get_stats()
        assert stats.total_calls == 1
        assert stats.successful_calls == 1
        assert stats.calls_by_type["create_transcription"] == 1
        assert limiter.get_stats().total_requests == 1
        assert limiter.active_count == 0
        assert coordinator.get_active_requests() == []

    async def test_unsupported_call_type(self) -> None:
        class CreateOnly:
            async def create_transcription(self, service: ServiceConfig, payload: Any) -> Any:
                return {}

        coordinator, _ = _coordinator(CreateOnly())
        with pytest.raises(UnsupportedCallTypeError, match="get_health"):
            await coordinator.execute_call(make_request(CallType.GET_HEALTH))

    async def test_closed(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        await coordinator.shutdown()
        with pytest.raises(CoordinatorClosedError):
            await coordinator.execute_call(make_request())
        with pytest.raises(CoordinatorClosedError):
            await coordinator.start()


class TestResponseCache:
    async def test_cache_hit(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        first = await coordinator.execute_call(
            make_request(CallType.GET_TRANSCRIPTION, payload={"job_id": "j1"}, enable_caching=True)
        )
        second = await coordinator.execute_call(
            make_request(
                CallType.GET_TRANSCRIPTION,
                request_id="req-2",
                payload={"job_id": "j1"},
                enable_caching=True,
                retry_count=1,
            )
        )
        assert transport.count("get_transcription") == 1
        assert second.request_id == "req-2"
        assert second.data == first.data
        assert second.metadata.from_cache is True
        assert second.metadata.retry_count == 1
        stats = coordinator.get_stats()
        assert stats.cached_responses == 1
        assert stats.total_calls == 1

    async def test_cache_key_depends_on_region(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        for region in ("eastus", "westus"):
            await coordinator.execute_call(
                make_request(
                    CallType.GET_TRANSCRIPTION,
                    payload={"job_id": "j1"},
                    service=make_service(region),
                    enable_caching=True,
                )
            )
        assert transport.count("get_transcription") == 2

    async def test_caching_disabled_globally(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport, enable_caching=False)
        for _ in range(2):
            await coordinator.execute_call(
                make_request(CallType.GET_TRANSCRIPTION, payload={"job_id": "j"}, enable_caching=True)
            )
        assert transport.count("get_transcription") == 2

    async def test_failures_not_cached(self, transport: FakeTransport) -> None:
        transport.errors["get_transcription"] = TransportError("gone", status_code=404)
        coordinator, _ = _coordinator(transport)
        for _ in range(2):
            await coordinator.execute_call(
                make_request(CallType.GET_TRANSCRIPTION, payload={"job_id": "j"}, enable_caching=True)
            )
        assert transport.count("get_transcription") == 2

    async def test_per_call_ttl(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        request = make_request(
            CallType.GET_TRANSCRIPTION, payload={"job_id": "j"}, enable_caching=True, cache_ttl_s=10
        )
        await coordinator.execute_call(request)
        entry = next(coordinator.cache.entries())
        assert entry.expires_at - entry.created_at == pytest.approx(10.0)

    async def test_clear_cache(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        request = make_request(
            CallType.GET_TRANSCRIPTION, payload={"job_id": "j"}, enable_caching=True
        )
        await coordinator.execute_call(request)
        coordinator.clear_cache()
        await coordinator.execute_call(request)
        assert transport.count("get_transcription") == 2


class TestDeduplication:
    async def test_identical_calls_share_one_dispatch(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport)
        first = asyncio.create_task(coordinator.execute_call(make_request(request_id="a")))
        second = asyncio.create_task(coordinator.execute_call(make_request(request_id="b")))
        await _settle()
        transport.gate.set()
        a, b = await asyncio.gather(first, second)

        assert transport.count("create_transcription") == 1
        assert a.metadata.deduplicated is False
        assert b.metadata.deduplicated is True
        assert b.request_id == "b"
        assert b.data == a.data
        assert coordinator.get_stats().deduplicated_calls == 1

    async def test_different_payloads_not_deduplicated(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport)
        tasks = [
            asyncio.create_task(
                coordinator.execute_call(make_request(request_id=f"r{i}", payload={"n": i}))
            )
            for i in range(2)
        ]
        await _settle()
        transport.gate.set()
        await asyncio.gather(*tasks)
        assert transport.count("create_transcription") == 2

    async def test_deduplication_disabled(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport, enable_deduplication=False)
        tasks = [
            asyncio.create_task(coordinator.execute_call(make_request(request_id=f"r{i}")))
            for i in range(2)
        ]
        await _settle()
        transport.gate.set()
        await asyncio.gather(*tasks)
        assert transport.count("create_transcription") == 2

    async def test_waiter_runs_itself_when_first_call_cancelled(
        self, transport: FakeTransport
    ) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport)
        first = asyncio.create_task(coordinator.execute_call(make_request(request_id="a")))
        second = asyncio.create_task(coordinator.execute_call(make_request(request_id="b")))
        await _settle()
        first.cancel()
        await _settle()
        transport.gate.set()
        response = await second
        assert response.success is True
        assert response.metadata.deduplicated is False
        assert transport.count("create_transcription") == 2


class TestFailures:
    async def test_retryable_failure(self, transport: FakeTransport) -> None:
        transport.errors["create_transcription"] = TransportError("busy", status_code=503)
        coordinator, limiter = _coordinator(transport)
        response = await coordinator.execute_call(make_request())
        assert response.success is False
        assert response.error is not None
        assert response.error.code == "service_unavailable"
        assert response.error.retryable is True
        assert response.error.retry_delay_ms == 1000
        assert response.error.classification is not None
        assert limiter.active_count == 0
        stats = coordinator.get_stats()
        assert stats.failed_calls == 1
        assert stats.error_rates_by_type["create_transcription"] == pytest.approx(1.0)
        assert coordinator.classifier.get_stats().total_errors == 1

    async def test_permanent_failure(self, transport: FakeTransport) -> None:
        transport.errors["create_transcription"] = TransportError("denied", status_code=401)
        coordinator, _ = _coordinator(transport)
        response = await coordinator.execute_call(make_request())
        assert response.error is not None
        assert response.error.code == "auth_failed"
        assert response.error.retryable is False
        assert response.error.retry_delay_ms == 0
        assert response.error.message.startswith("Authentication failed")

    async def test_retry_budget_exhausted(self, transport: FakeTransport) -> None:
        transport.errors["create_transcription"] = TransportError("busy", status_code=503)
        coordinator, _ = _coordinator(transport)
        response = await coordinator.execute_call(make_request(retry_count=3))
        assert response.error is not None
        assert response.error.retryable is False
        assert response.metadata.retry_count == 3

    async def test_timeout(self, transport: FakeTransport) -> None:
        transport.delay_s = 1.0
        coordinator, limiter = _coordinator(transport)
        response = await coordinator.execute_call(make_request(timeout_s=0.01))
        assert response.error is not None
        assert response.error.code == "timeout"
        assert response.error.retryable is True
        assert limiter.active_count == 0

    async def test_pool_exhausted(self, transport: FakeTransport) -> None:
        pool = MagicMock()
        pool.get_client = AsyncMock(side_effect=ClientPoolExhaustedError(1))
        pool.release_client = AsyncMock()
        coordinator, limiter = _coordinator(transport, pool=pool)
        response = await coordinator.execute_call(make_request())
        assert response.error is not None
        assert response.error.code == "concurrency_limit_exceeded"
        assert response.metadata.client_id is None
        pool.release_client.assert_not_awaited()
        assert limiter.active_count == 0
        assert transport.calls == []


class TestAdmission:
    async def test_waits_for_slot(self, transport: FakeTransport) -> None:
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits)
        limiter.record_request_start("external")
        task = asyncio.create_task(coordinator.execute_call(make_request()))
        await _settle()
        assert transport.calls == []
        assert limiter.get_queue_status().length == 1

        limiter.record_request_completion("external", True, 100)
        response = await task
        assert response.success is True
        assert limiter.get_queue_status().length == 0
        await limiter.shutdown()

    async def test_admission_timeout(self, transport: FakeTransport) -> None:
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits, max_admission_wait_s=0.05)
        limiter.record_request_start("external")
        response = await coordinator.execute_call(make_request())
        assert response.success is False
        assert response.error is not None
        assert response.error.code == "rate_limited"
        assert response.error.retryable is True
        assert transport.calls == []
        assert limiter.get_queue_status().length == 0
        assert limiter.active_count == 1
        await limiter.shutdown()

    async def test_cancelled_caller_leaves_queue(self, transport: FakeTransport) -> None:
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits)
        limiter.record_request_start("external")
        task = asyncio.create_task(coordinator.execute_call(make_request()))
        await _settle()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert limiter.get_queue_status().length == 0
        await limiter.shutdown()

    async def test_cancel_after_grant_releases_slot(self, transport: FakeTransport) -> None:
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits)
        limiter.record_request_start("external")
        task = asyncio.create_task(coordinator.execute_call(make_request()))
        await _settle()

        # Granted and cancelled before the call resumes
        limiter.record_request_completion("external", True, 100)
        assert limiter.is_active("req-1") is True
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.active_count == 0
        assert transport.calls == []
        follow_up = await coordinator.execute_call(make_request(request_id="req-2"))
        assert follow_up.success is True
        await limiter.shutdown()

    async def test_unbounded_admission_wait(self, transport: FakeTransport) -> None:
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits, max_admission_wait_s=None)
        limiter.record_request_start("external")
        task = asyncio.create_task(coordinator.execute_call(make_request()))
        await asyncio.sleep(0.05)
        assert not task.done()

        limiter.record_request_completion("external", True, 100)
        response = await task
        assert response.success is True
        await limiter.shutdown()

    async def test_concurrency_bounded_by_semaphore(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport, max_concurrent_calls=1)
        tasks = [
            asyncio.create_task(
                coordinator.execute_call(make_request(request_id=f"r{i}", payload={"n": i}))
            )
            for i in range(2)
        ]
        await _settle()
        assert len(transport.calls) == 1
        assert coordinator.get_stats().current_concurrent_calls == 1
        transport.gate.set()
        responses = await asyncio.gather(*tasks)
        assert all(r.success for r in responses)


class TestWrappers:
    async def test_get_transcription(self, transport: FakeTransport, service: ServiceConfig) -> None:
        coordinator, _ = _coordinator(transport)
        response = await coordinator.get_transcription(service, "job-9", request_id="fixed")
        assert response.request_id == "fixed"
        assert transport.calls == [("get_transcription", "eastus", {"job_id": "job-9"})]
        # Cached by default
        await coordinator.get_transcription(service, "job-9")
        assert transport.count("get_transcription") == 1

    async def test_create_is_not_cached(
        self, transport: FakeTransport, service: ServiceConfig
    ) -> None:
        coordinator, _ = _coordinator(transport)
        first = await coordinator.create_transcription(service, {"audio_url": "u"})
        await coordinator.create_transcription(service, {"audio_url": "u"})
        assert transport.count("create_transcription") == 2
        assert first.request_id.startswith("create_transcription-")

    async def test_other_wrappers(self, transport: FakeTransport, service: ServiceConfig) -> None:
        coordinator, _ = _coordinator(transport)
        await coordinator.list_transcriptions(service)
        await coordinator.delete_transcription(service, "job-1")
        await coordinator.authenticate(service, priority=RequestPriority.HIGH)
        health = await coordinator.perform_health_check(service)
        assert [call[0] for call in transport.calls] == [
            "list_transcriptions",
            "delete_transcription",
            "authenticate",
            "get_health",
        ]
        assert health.data == {"healthy": True, "status": "Healthy"}

    async def test_options_override(self, transport: FakeTransport, service: ServiceConfig) -> None:
        transport.delay_s = 1.0
        coordinator, _ = _coordinator(transport)
        response = await coordinator.create_transcription(service, {}, timeout_s=0.01)
        assert response.error is not None
        assert response.error.code == "timeout"

    async def test_unknown_override_rejected(
        self, transport: FakeTransport, service: ServiceConfig
    ) -> None:
        coordinator, _ = _coordinator(transport)
        with pytest.raises(TypeError):
            await coordinator.create_transcription(service, {}, bogus=1)


class TestHealthChecks:
    async def test_run_health_checks(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        coordinator.add_health_target(make_service("eastus"))
        statuses = await coordinator.run_health_checks()
        assert statuses["eastus"].healthy is True
        assert statuses["eastus"].error is None

    async def test_unhealthy_region(self, transport: FakeTransport) -> None:
        transport.errors["get_health"] = TransportError("down", status_code=503)
        coordinator, _ = _coordinator(transport)
        coordinator.add_health_target(make_service("westus"))
        with patch("speechgate.coordinator.coordinator.logger") as mock_logger:
            statuses = await coordinator.run_health_checks()
        assert statuses["westus"].healthy is False
        assert statuses["westus"].error == "service_unavailable"
        events = [c.args[0] for c in mock_logger.warning.call_args_list]
        assert "health_check_failed" in events

    async def test_periodic_checks(self, transport: FakeTransport) -> None:
        health = HealthCheckSettings(enabled=True, interval_s=0.02, timeout_s=0.01)
        coordinator, _ = _coordinator(transport, health_check=health)
        coordinator.add_health_target(make_service())
        await coordinator.start()
        await asyncio.sleep(0.1)
        await coordinator.shutdown()
        assert "eastus" in coordinator.get_health_status()


class TestConfigAndLifecycle:
    async def test_update_config_rebuilds_cache(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        await coordinator.get_transcription(make_service(), "j")
        coordinator.update_config(cache_size=5)
        assert coordinator.cache.size() == 0
        assert coordinator.cache.settings.max_entries == 5
        assert coordinator.settings.cache_size == 5

    async def test_update_config_rejects_unknown(self, transport: FakeTransport) -> None:
        coordinator, _ = _coordinator(transport)
        with pytest.raises(ConfigError):
            coordinator.update_config(nope=True)

    async def test_shutdown_waits_for_active_calls(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport)
        task = asyncio.create_task(coordinator.execute_call(make_request()))
        await _settle()
        asyncio.get_running_loop().call_later(0.02, transport.gate.set)
        await coordinator.shutdown(timeout_s=1.0)
        assert task.done()
        assert task.result().success is True

    async def test_shutdown_timeout_logged(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport)
        tasks = [
            asyncio.create_task(
                coordinator.execute_call(make_request(request_id=f"r{i}", payload={"n": i}))
            )
            for i in range(3)
        ]
        await _settle()
        assert len(coordinator.get_active_requests()) == 3
        with patch("speechgate.coordinator.coordinator.logger") as mock_logger:
            await coordinator.shutdown(timeout_s=0.01)
        mock_logger.warning.assert_called_once_with(
            "coordinator_shutdown_incomplete", remaining=3, timeout_s=0.01
        )
        assert coordinator.get_active_requests() == []
        transport.gate.set()
        responses = await asyncio.gather(*tasks)
        assert all(r.success for r in responses)

    async def test_shutdown_fails_queued_admissions(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        limits = RateLimitSettings(concurrent_requests=1, enable_adaptive=False)
        coordinator, limiter = _coordinator(transport, limits=limits)
        running = asyncio.create_task(
            coordinator.execute_call(make_request(request_id="a", payload={"n": 1}))
        )
        queued = asyncio.create_task(
            coordinator.execute_call(make_request(request_id="b", payload={"n": 2}))
        )
        await _settle()
        assert limiter.get_queue_status().length == 1

        with patch("speechgate.coordinator.coordinator.logger") as mock_logger:
            await coordinator.shutdown(timeout_s=0.05)
        mock_logger.warning.assert_any_call(
            "coordinator_shutdown_incomplete", remaining=1, timeout_s=0.05
        )
        assert queued.done()
        assert queued.result().success is False

        transport.gate.set()
        assert (await running).success is True
        assert transport.count("create_transcription") == 1
        assert limiter.active_count == 0
        assert limiter.get_queue_status().length == 0
        await limiter.shutdown()

    async def test_shutdown_fails_calls_waiting_for_slot(self, transport: FakeTransport) -> None:
        transport.gate = asyncio.Event()
        coordinator, _ = _coordinator(transport, max_concurrent_calls=1)
        tasks = [
            asyncio.create_task(
                coordinator.execute_call(make_request(request_id=f"r{i}", payload={"n": i}))
            )
            for i in range(2)
        ]
        await _settle()
        with patch("speechgate.coordinator.coordinator.logger") as mock_logger:
            await coordinator.shutdown(timeout_s=0.01)
        mock_logger.warning.assert_any_call(
            "coordinator_shutdown_incomplete", remaining=2, timeout_s=0.01
        )

        transport.gate.set()
        first, second = await asyncio.gather(*tasks)
        assert first.success is True
        assert second.success is False
        assert transport.count("create_transcription") == 1
        assert coordinator.cache.size() == 0
