"""Caller-side retry loop around ``APICoordinator.execute_call``.

The coordinator makes exactly one attempt per call. Callers that want
retries re-issue the request with ``retry_count + 1`` while the failed
response says it is retryable and the request's ``max_retries`` allows it,
sleeping the classifier-suggested delay in between.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING, Any

from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from speechgate._types import APICallRequest, APICallResponse

logger = get_logger("coordinator.retry")


async def call_with_retries(
    execute: Callable[[APICallRequest], Awaitable[APICallResponse[Any]]],
    request: APICallRequest,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> APICallResponse[Any]:
    """Run ``execute(request)`` and retry retryable failures.

    Args:
        execute: Usually ``coordinator.execute_call``.
        request: First attempt.
        sleep: Awaitable sleep in seconds (injectable for tests).

    Returns:
        The first successful response, or the last failed one.
    """
    attempt = request
    while True:
        response = await execute(attempt)
        error = response.error
        if response.success or error is None or not error.retryable:
            return response
        if attempt.retry_count >= attempt.options.max_retries:
            logger.info(
                "retries_exhausted",
                request_id=attempt.request_id,
                retry_count=attempt.retry_count,
                code=error.code,
            )
            return response

        logger.info(
            "retrying_call",
            request_id=attempt.request_id,
            retry_count=attempt.retry_count + 1,
            delay_ms=error.retry_delay_ms,
            code=error.code,
        )
        await sleep(error.retry_delay_ms / 1000)
        attempt = dataclasses.replace(attempt, retry_count=attempt.retry_count + 1)
