"""Typed exceptions for speechgate.

Hierarchy:
    SpeechGateError (base)
    +-- ConfigError
    +-- CacheError
    |   +-- TranscriptionValidationError
    +-- RateLimitError
    |   +-- AdmissionTimeoutError
    +-- ClientPoolError
    |   +-- ClientPoolExhaustedError
    +-- TransportError
    +-- CoordinatorError
        +-- UnsupportedCallTypeError
        +-- CoordinatorClosedError

Expected conditions (cache miss, quota denial, classification) are return
values, not exceptions. These types cover invalid input, exhausted waits and
programming errors.
"""

from __future__ import annotations


class SpeechGateError(Exception):
    """Base for all speechgate exceptions."""


# --- Configuration ---


class ConfigError(SpeechGateError):
    """Invalid runtime configuration."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid configuration: {detail}")


# --- Cache ---


class CacheError(SpeechGateError):
    """Cache-related error."""


class TranscriptionValidationError(CacheError):
    """Transcription data refused by the transcription cache."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid transcription data: {reason}")


# --- Rate limiting ---


class RateLimitError(SpeechGateError):
    """Admission control error."""


class AdmissionTimeoutError(RateLimitError):
    """A queued request was not granted admission in time."""

    def __init__(self, request_id: str, waited_s: float) -> None:
        self.request_id = request_id
        self.waited_s = waited_s
        super().__init__(
            f"Request '{request_id}' was not admitted within {waited_s}s: rate limit exceeded"
        )


# --- Client pool ---


class ClientPoolError(SpeechGateError):
    """Client pool error."""


class ClientPoolExhaustedError(ClientPoolError):
    """No client slot available in the pool."""

    def __init__(self, max_clients: int) -> None:
        self.max_clients = max_clients
        super().__init__(f"Client pool capacity exceeded: concurrent limit of {max_clients}")


# --- Transport ---


class TransportError(SpeechGateError):
    """External API call failed at the transport layer.

    Carries whatever the transport could extract: HTTP status, service
    error code and message. Any of them may be missing.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        detail = message
        if status_code is not None:
            detail = f"HTTP {status_code}: {message}"
        super().__init__(detail)


# --- Coordinator ---


class CoordinatorError(SpeechGateError):
    """API coordinator error."""


class UnsupportedCallTypeError(CoordinatorError):
    """No handler registered for the call type."""

    def __init__(self, call_type: str) -> None:
        self.call_type = call_type
        super().__init__(f"Unsupported API call type: {call_type}")


class CoordinatorClosedError(CoordinatorError):
    """Call attempted after the coordinator was shut down."""

    def __init__(self) -> None:
        super().__init__("Coordinator is shut down")
