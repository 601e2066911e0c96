"""Core types for speechgate.

Enums and frozen dataclasses shared by the cache, rate-limit, error and
coordinator components. Changes here affect every component.

Conventions:
- Configured durations are float seconds (``*_s``).
- Delays reported back to callers are integer milliseconds (``*_ms``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


# --- Calls ---


class CallType(Enum):
    """External API operation handled by the coordinator."""

    CREATE_TRANSCRIPTION = "create_transcription"
    GET_TRANSCRIPTION = "get_transcription"
    LIST_TRANSCRIPTIONS = "list_transcriptions"
    DELETE_TRANSCRIPTION = "delete_transcription"
    GET_HEALTH = "get_health"
    AUTHENTICATE = "authenticate"


class RequestPriority(IntEnum):
    """Admission priority.

    Lower value = higher priority. Used as the first ordering criterion
    in the admission queue.
    """

    URGENT = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3


class RequestKind(Enum):
    """Request class as seen by the rate-limit manager."""

    TRANSCRIPTION = "transcription"
    AUTHENTICATION = "authentication"
    HEALTH_CHECK = "health_check"


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Target service identity: region plus credential.

    The credential is excluded from ``repr`` so it never reaches logs.
    """

    region: str
    credential: str = field(repr=False)
    language: str = "en-US"


@dataclass(frozen=True, slots=True)
class RequestOptions:
    """Per-call execution options."""

    timeout_s: float = 30.0
    max_retries: int = 3
    enable_caching: bool = False
    cache_ttl_s: float | None = None


@dataclass(frozen=True, slots=True)
class RequestMetadata:
    """Caller-side bookkeeping attached to a request."""

    source: str = "coordinator"
    job_id: str | None = None
    session_id: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class APICallRequest:
    """One attempt at an external API call. Immutable once dispatched."""

    request_id: str
    call_type: CallType
    service: ServiceConfig
    payload: dict[str, Any] = field(default_factory=dict)
    priority: RequestPriority = RequestPriority.NORMAL
    options: RequestOptions = field(default_factory=RequestOptions)
    metadata: RequestMetadata = field(default_factory=RequestMetadata)
    retry_count: int = 0


@dataclass(frozen=True, slots=True)
class CallError:
    """Failure details of an APICallResponse."""

    code: str
    message: str
    retryable: bool
    retry_delay_ms: int = 0
    classification: ErrorClassification | None = None


@dataclass(frozen=True, slots=True)
class ResponseMetadata:
    """Bookkeeping attached to every APICallResponse."""

    timestamp: str
    duration_ms: int
    region: str
    retry_count: int = 0
    from_cache: bool = False
    client_id: str | None = None
    deduplicated: bool = False


@dataclass(frozen=True, slots=True)
class APICallResponse(Generic[T]):
    """Result of exactly one coordinator invocation."""

    request_id: str
    success: bool
    metadata: ResponseMetadata
    data: T | None = None
    error: CallError | None = None


# --- Rate limiting ---


@dataclass(frozen=True, slots=True)
class APIRequestInfo:
    """What the rate-limit manager needs to know about a request."""

    request_id: str
    kind: RequestKind = RequestKind.TRANSCRIPTION
    priority: RequestPriority = RequestPriority.NORMAL
    estimated_duration_ms: int = 1000
    retry_count: int = 0


class ViolationType(Enum):
    """Which admission constraint denied a request."""

    CONCURRENT_LIMIT = "concurrent_limit"
    REQUESTS_PER_MINUTE = "requests_per_minute"
    REQUESTS_PER_HOUR = "requests_per_hour"
    REQUESTS_PER_DAY = "requests_per_day"


# --- Errors ---


class ErrorKind(Enum):
    """Closed set of failure kinds produced by the classifier."""

    AUTH_FAILED = "auth_failed"
    INVALID_CREDENTIAL = "invalid_credential"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    REGION_UNAVAILABLE = "region_unavailable"
    UNSUPPORTED_FORMAT = "unsupported_format"
    OVERSIZED_INPUT = "oversized_input"
    UNDERSIZED_INPUT = "undersized_input"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    CONCURRENCY_LIMIT_EXCEEDED = "concurrency_limit_exceeded"


class ErrorCategory(Enum):
    """Coarse grouping of error kinds."""

    AUTHENTICATION = "authentication"
    QUOTA = "quota"
    VALIDATION = "validation"
    SERVICE = "service"
    NETWORK = "network"
    SYSTEM = "system"


class ErrorSeverity(Enum):
    """Severity attached to an error kind."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BackoffPolicy(Enum):
    """Delay-growth rule recommended between retries."""

    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    ADAPTIVE = "adaptive"


@dataclass(frozen=True, slots=True)
class RawFailure:
    """Transport-independent failure shape accepted by the classifier.

    Built at the transport boundary by ``speechgate.errors.to_raw_failure``.
    """

    status_code: int | None = None
    error_code: str | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class RetryContext:
    """Where a failure happened and how many attempts preceded it."""

    request_id: str
    call_type: str = ""
    region: str = ""
    retry_attempt: int = 0
    request_timestamp: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """Typed verdict on a failure.

    Derived purely from the failure and its context.
    """

    kind: ErrorKind
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    backoff_policy: BackoffPolicy
    user_message: str
    technical_details: str = ""
    recovery_suggestions: tuple[str, ...] = ()


# --- Transcriptions ---


@dataclass(frozen=True, slots=True)
class WordTiming:
    """Timing for a single recognized word."""

    word: str
    start: float
    end: float
    confidence: float


@dataclass(frozen=True, slots=True)
class TranscriptionData:
    """A finished transcription as stored in the transcription cache."""

    text: str
    confidence: float
    language: str
    duration_s: float
    timestamp: datetime
    words: tuple[WordTiming, ...] = ()
    service_metadata: dict[str, Any] = field(default_factory=dict)
