"""Shared test helpers: a controllable clock, factories and a fake transport.

Usage:
    from tests.helpers import FakeClock, FakeTransport, make_request, make_service
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

from speechgate._types import (
    APICallRequest,
    APIRequestInfo,
    CallType,
    RequestOptions,
    RequestPriority,
    ServiceConfig,
    TranscriptionData,
    WordTiming,
)

# Arbitrary fixed epoch: 2023-11-14T22:13:20Z
EPOCH = 1_700_000_000.0


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, start: float = EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_service(region: str = "eastus", credential: str = "test-key") -> ServiceConfig:
    return ServiceConfig(region=region, credential=credential)


def make_request(
    call_type: CallType = CallType.CREATE_TRANSCRIPTION,
    *,
    request_id: str = "req-1",
    payload: dict[str, Any] | None = None,
    service: ServiceConfig | None = None,
    priority: RequestPriority = RequestPriority.NORMAL,
    retry_count: int = 0,
    **options: Any,
) -> APICallRequest:
    return APICallRequest(
        request_id=request_id,
        call_type=call_type,
        service=service or make_service(),
        payload=payload if payload is not None else {"audio_url": "https://x/a.mp3"},
        priority=priority,
        options=RequestOptions(**options),
        retry_count=retry_count,
    )


def make_info(
    request_id: str = "req-1",
    *,
    priority: RequestPriority = RequestPriority.NORMAL,
    retry_count: int = 0,
) -> APIRequestInfo:
    return APIRequestInfo(request_id=request_id, priority=priority, retry_count=retry_count)


def make_transcription(
    text: str = "hello world",
    *,
    confidence: float = 0.9,
    language: str = "en-US",
    duration_s: float = 2.5,
    timestamp: datetime | None = None,
    words: tuple[WordTiming, ...] | None = None,
) -> TranscriptionData:
    if words is None:
        words = (
            WordTiming(word="hello", start=0.0, end=0.5, confidence=0.95),
            WordTiming(word="world", start=0.6, end=1.1, confidence=0.9),
        )
    return TranscriptionData(
        text=text,
        confidence=confidence,
        language=language,
        duration_s=duration_s,
        timestamp=timestamp or datetime(2024, 1, 1, tzinfo=UTC),
        words=words,
    )


class FakeTransport:
    """In-memory ``Transport``.

    Every call is recorded in ``calls`` as ``(method, region, payload)``.
    ``errors[method]`` makes that method raise; ``results[method]`` overrides
    its return value. When ``gate`` is set, calls block until it is released.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.results: dict[str, Any] = {}
        self.errors: dict[str, BaseException] = {}
        self.gate: asyncio.Event | None = None
        self.delay_s = 0.0

    async def _handle(self, method: str, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        self.calls.append((method, service.region, dict(payload)))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if method in self.errors:
            raise self.errors[method]
        if method in self.results:
            return self.results[method]
        return {"method": method, **payload}

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def create_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        return await self._handle("create_transcription", service, payload)

    async def get_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        return await self._handle("get_transcription", service, payload)

    async def list_transcriptions(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        return await self._handle("list_transcriptions", service, payload)

    async def delete_transcription(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        return await self._handle("delete_transcription", service, payload)

    async def get_health(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        result = await self._handle("get_health", service, payload)
        if "get_health" not in self.results:
            return {"healthy": True, "status": "Healthy"}
        return result

    async def authenticate(self, service: ServiceConfig, payload: dict[str, Any]) -> Any:
        return await self._handle("authenticate", service, payload)
