"""Tests for speechgate.errors.adapter: failure normalization."""

from __future__ import annotations

import httpx
import pytest

from speechgate._types import RawFailure
from speechgate.errors import parse_error_body, response_error_details, to_raw_failure
from speechgate.exceptions import AdmissionTimeoutError, ClientPoolExhaustedError, TransportError

_REQUEST = httpx.Request("GET", "https://eastus.example.com/transcriptions/1")


class TestParseErrorBody:
    def test_flat_body(self) -> None:
        assert parse_error_body({"code": "NotFound", "message": "gone"}) == ("NotFound", "gone")

    def test_nested_body(self) -> None:
        body = {"error": {"code": "InvalidPayload", "message": "bad locale"}}
        assert parse_error_body(body) == ("InvalidPayload", "bad locale")

    def test_not_a_mapping(self) -> None:
        assert parse_error_body(["x"]) == (None, None)


class TestResponseErrorDetails:
    def test_json_body(self) -> None:
        response = httpx.Response(
            429, json={"error": {"code": "TooManyRequests", "message": "slow"}}, request=_REQUEST
        )
        assert response_error_details(response) == ("TooManyRequests", "slow")

    def test_text_body(self) -> None:
        response = httpx.Response(502, text="upstream died", request=_REQUEST)
        assert response_error_details(response) == (None, "upstream died")

    def test_empty_body_uses_reason_phrase(self) -> None:
        response = httpx.Response(503, request=_REQUEST)
        assert response_error_details(response) == (None, "Service Unavailable")


class TestToRawFailure:
    def test_raw_failure_passthrough(self) -> None:
        raw = RawFailure(status_code=500)
        assert to_raw_failure(raw) is raw

    def test_string(self) -> None:
        assert to_raw_failure("boom") == RawFailure(message="boom")

    @pytest.mark.parametrize("key", ["status", "statusCode", "status_code"])
    def test_mapping_status_keys(self, key: str) -> None:
        assert to_raw_failure({key: 503}).status_code == 503

    def test_mapping_integer_code_is_status(self) -> None:
        raw = to_raw_failure({"code": 429, "message": "too many"})
        assert raw.status_code == 429
        assert raw.message == "too many"

    def test_mapping_string_code(self) -> None:
        raw = to_raw_failure({"status": "401", "errorCode": "AuthFailed"})
        assert raw == RawFailure(status_code=401, error_code="AuthFailed")

    def test_transport_error(self) -> None:
        exc = TransportError("denied", status_code=403, error_code="Forbidden")
        assert to_raw_failure(exc) == RawFailure(403, "Forbidden", "denied")

    def test_admission_timeout(self) -> None:
        raw = to_raw_failure(AdmissionTimeoutError("req-1", 1.0))
        assert raw.error_code == "rate_limit_exceeded"
        assert raw.message is not None
        assert "req-1" in raw.message

    def test_pool_exhausted(self) -> None:
        assert to_raw_failure(ClientPoolExhaustedError(2)).error_code == "concurrent_limit"

    def test_http_status_error(self) -> None:
        response = httpx.Response(404, json={"code": "NotFound"}, request=_REQUEST)
        exc = httpx.HTTPStatusError("not found", request=_REQUEST, response=response)
        raw = to_raw_failure(exc)
        assert raw.status_code == 404
        assert raw.error_code == "NotFound"
        assert raw.message == "Not Found"

    def test_httpx_timeout(self) -> None:
        raw = to_raw_failure(httpx.ReadTimeout("read timed out", request=_REQUEST))
        assert raw.error_code == "timeout"
        assert raw.message == "request timeout: read timed out"

    def test_builtin_timeout(self) -> None:
        assert to_raw_failure(TimeoutError()).message == "request timeout"

    def test_network_error(self) -> None:
        raw = to_raw_failure(httpx.ConnectError("connection refused", request=_REQUEST))
        assert raw.error_code == "network_error"
        assert raw.message == "network error: connection refused"

    def test_generic_exception(self) -> None:
        assert to_raw_failure(ValueError("odd")) == RawFailure(message="odd")
        assert to_raw_failure(ValueError()) == RawFailure(message="ValueError")
