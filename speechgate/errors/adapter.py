"""Conversion of heterogeneous failures into ``RawFailure``.

The classifier only sees ``RawFailure(status_code, error_code, message)``.
Everything the transport layer or a caller can throw at it is normalized
here: our own exceptions, httpx errors, timeouts, and loosely shaped
mappings such as decoded JSON error bodies.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from speechgate._types import RawFailure
from speechgate.exceptions import AdmissionTimeoutError, ClientPoolExhaustedError, TransportError

_STATUS_KEYS = ("status", "statusCode", "status_code")
_CODE_KEYS = ("errorCode", "error_code", "code")
_MESSAGE_KEYS = ("message", "description")


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _first_str(source: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def parse_error_body(body: Any) -> tuple[str | None, str | None]:
    """Extract (error_code, message) from a decoded JSON error body.

    Accepts ``{"code", "message"}`` and ``{"error": {"code", "message"}}``.
    """
    if not isinstance(body, Mapping):
        return None, None
    nested = body.get("error")
    if isinstance(nested, Mapping):
        return _first_str(nested, _CODE_KEYS), _first_str(nested, _MESSAGE_KEYS)
    return _first_str(body, _CODE_KEYS), _first_str(body, _MESSAGE_KEYS)


def response_error_details(response: httpx.Response) -> tuple[str | None, str | None]:
    """(error_code, message) from an error response, falling back to the raw text."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return None, text or response.reason_phrase or None
    code, message = parse_error_body(body)
    return code, message or response.reason_phrase or None


def _from_mapping(source: Mapping[str, Any]) -> RawFailure:
    status: int | None = None
    for key in _STATUS_KEYS:
        status = _as_status(source.get(key))
        if status is not None:
            break

    raw_code = source.get("code")
    if status is None and isinstance(raw_code, int) and not isinstance(raw_code, bool):
        status = raw_code

    error_code, message = parse_error_body(source)
    if error_code is None:
        error_code = _first_str(source, _CODE_KEYS)
    if message is None:
        message = _first_str(source, _MESSAGE_KEYS)

    return RawFailure(status_code=status, error_code=error_code, message=message)


def to_raw_failure(failure: BaseException | RawFailure | Mapping[str, Any] | str) -> RawFailure:
    """Normalize any failure shape into a ``RawFailure``."""
    if isinstance(failure, RawFailure):
        return failure

    if isinstance(failure, str):
        return RawFailure(message=failure or None)

    if isinstance(failure, Mapping):
        return _from_mapping(failure)

    if isinstance(failure, TransportError):
        return RawFailure(
            status_code=failure.status_code,
            error_code=failure.error_code,
            message=failure.message or None,
        )

    if isinstance(failure, AdmissionTimeoutError):
        return RawFailure(error_code="rate_limit_exceeded", message=str(failure))

    if isinstance(failure, ClientPoolExhaustedError):
        return RawFailure(error_code="concurrent_limit", message=str(failure))

    if isinstance(failure, httpx.HTTPStatusError):
        error_code, message = response_error_details(failure.response)
        return RawFailure(
            status_code=failure.response.status_code,
            error_code=error_code,
            message=message,
        )

    if isinstance(failure, httpx.TimeoutException | TimeoutError):
        detail = str(failure)
        message = f"request timeout: {detail}" if detail else "request timeout"
        return RawFailure(error_code="timeout", message=message)

    if isinstance(failure, httpx.TransportError):
        detail = str(failure) or type(failure).__name__
        return RawFailure(error_code="network_error", message=f"network error: {detail}")

    return RawFailure(message=str(failure) or type(failure).__name__)
