"""ErrorClassifier: maps failures to typed classifications and retry decisions.

Classification pipeline over a ``RawFailure``:

1. status code -> kind (fixed table, unknown statuses -> internal_error)
2. error code -> kind by substring of the lowercased code
3. message -> kind by the first matching pattern

Later stages override earlier ones only when they match; the message is the
most specific signal. The kind then determines category, severity, backoff
policy, user message and recovery suggestions. ``retryable`` is true for
transient kinds or for a retryable HTTP status.

The classifier never raises from ``classify`` or ``handle_error``: internal
failures degrade to a non-retryable internal_error classification.
"""

from __future__ import annotations

import math
import random
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from speechgate._types import (
    BackoffPolicy,
    ErrorCategory,
    ErrorClassification,
    ErrorKind,
    ErrorSeverity,
    RawFailure,
    RetryContext,
)
from speechgate.config.settings import RetrySettings, merge_settings
from speechgate.errors.adapter import to_raw_failure
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = get_logger("errors")

_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.AUTH_FAILED,
    403: ErrorKind.INVALID_CREDENTIAL,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    413: ErrorKind.OVERSIZED_INPUT,
    429: ErrorKind.RATE_LIMITED,
    500: ErrorKind.INTERNAL_ERROR,
    503: ErrorKind.SERVICE_UNAVAILABLE,
}

# Checked in order; first substring found in the lowercased code wins
_CODE_KINDS: tuple[tuple[str, ErrorKind], ...] = (
    ("auth", ErrorKind.AUTH_FAILED),
    ("quota", ErrorKind.QUOTA_EXCEEDED),
    ("rate", ErrorKind.RATE_LIMITED),
    ("region", ErrorKind.REGION_UNAVAILABLE),
    ("format", ErrorKind.UNSUPPORTED_FORMAT),
    ("language", ErrorKind.UNSUPPORTED_LANGUAGE),
    ("concurrent", ErrorKind.CONCURRENCY_LIMIT_EXCEEDED),
)

_MESSAGE_PATTERNS: tuple[tuple[re.Pattern[str], ErrorKind], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), kind)
    for pattern, kind in (
        (r"authentication.*failed", ErrorKind.AUTH_FAILED),
        (r"invalid.*subscription.*key", ErrorKind.INVALID_CREDENTIAL),
        (r"quota.*exceeded", ErrorKind.QUOTA_EXCEEDED),
        (r"rate.*limit.*exceeded", ErrorKind.RATE_LIMITED),
        (r"region.*unavailable", ErrorKind.REGION_UNAVAILABLE),
        (r"unsupported.*format", ErrorKind.UNSUPPORTED_FORMAT),
        (r"file.*too.*large", ErrorKind.OVERSIZED_INPUT),
        (r"audio.*too.*short", ErrorKind.UNDERSIZED_INPUT),
        (r"language.*not.*supported", ErrorKind.UNSUPPORTED_LANGUAGE),
        (r"service.*unavailable", ErrorKind.SERVICE_UNAVAILABLE),
        (r"timeout", ErrorKind.TIMEOUT),
        (r"concurrent.*limit", ErrorKind.CONCURRENCY_LIMIT_EXCEEDED),
    )
)

_KIND_PROFILE: dict[ErrorKind, tuple[ErrorCategory, ErrorSeverity]] = {
    ErrorKind.AUTH_FAILED: (ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH),
    ErrorKind.INVALID_CREDENTIAL: (ErrorCategory.AUTHENTICATION, ErrorSeverity.HIGH),
    ErrorKind.QUOTA_EXCEEDED: (ErrorCategory.QUOTA, ErrorSeverity.MEDIUM),
    ErrorKind.RATE_LIMITED: (ErrorCategory.QUOTA, ErrorSeverity.MEDIUM),
    ErrorKind.CONCURRENCY_LIMIT_EXCEEDED: (ErrorCategory.QUOTA, ErrorSeverity.MEDIUM),
    ErrorKind.UNSUPPORTED_FORMAT: (ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM),
    ErrorKind.OVERSIZED_INPUT: (ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM),
    ErrorKind.UNDERSIZED_INPUT: (ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM),
    ErrorKind.UNSUPPORTED_LANGUAGE: (ErrorCategory.VALIDATION, ErrorSeverity.MEDIUM),
    ErrorKind.SERVICE_UNAVAILABLE: (ErrorCategory.SERVICE, ErrorSeverity.HIGH),
    ErrorKind.REGION_UNAVAILABLE: (ErrorCategory.SERVICE, ErrorSeverity.HIGH),
    ErrorKind.TIMEOUT: (ErrorCategory.NETWORK, ErrorSeverity.LOW),
}
_DEFAULT_PROFILE = (ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM)

_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.INTERNAL_ERROR,
        ErrorKind.RATE_LIMITED,
    }
)

_BACKOFF_POLICIES: dict[ErrorKind, BackoffPolicy] = {
    ErrorKind.RATE_LIMITED: BackoffPolicy.EXPONENTIAL,
    ErrorKind.QUOTA_EXCEEDED: BackoffPolicy.EXPONENTIAL,
    ErrorKind.TIMEOUT: BackoffPolicy.LINEAR,
    ErrorKind.SERVICE_UNAVAILABLE: BackoffPolicy.LINEAR,
    ErrorKind.CONCURRENCY_LIMIT_EXCEEDED: BackoffPolicy.ADAPTIVE,
}

_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH_FAILED: "Authentication failed. Please check your service credentials.",
    ErrorKind.QUOTA_EXCEEDED: "Service quota exceeded. Please try again later or upgrade your plan.",
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. The request will be retried automatically.",
    ErrorKind.UNSUPPORTED_FORMAT: (
        "Audio format not supported. Please use a supported format like MP3 or WAV."
    ),
    ErrorKind.SERVICE_UNAVAILABLE: (
        "The speech service is temporarily unavailable. Please try again later."
    ),
}
_DEFAULT_USER_MESSAGE = "An error occurred while processing your request. Please try again."

_SUGGESTIONS: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.AUTH_FAILED: (
        "Verify your subscription key",
        "Check if your key has expired",
        "Ensure you're using the correct region",
    ),
    ErrorKind.QUOTA_EXCEEDED: (
        "Wait for quota reset",
        "Upgrade your service plan",
        "Distribute requests across multiple keys",
    ),
    ErrorKind.UNSUPPORTED_FORMAT: (
        "Convert audio to MP3 or WAV format",
        "Check audio file encoding",
        "Reduce audio file size if too large",
    ),
}
_DEFAULT_SUGGESTIONS = (
    "Try again later",
    "Check network connectivity",
    "Contact support if issue persists",
)

_FALLBACK_USER_MESSAGE = "An unexpected error occurred"
_FALLBACK_SUGGESTIONS = ("Try again later", "Contact support if issue persists")

# Upper bound of the random jitter, as a fraction of the delay
_JITTER_FRACTION = 0.1

_COMMON_ERRORS_LIMIT = 5


@dataclass(slots=True)
class RecoveryAction:
    """A remedial step associated with an error kind.

    Only automated actions with an ``execute`` coroutine function are run by
    ``execute_recovery``; the others are advisory.
    """

    type: str
    description: str
    priority: int = 1
    automated: bool = False
    execute: Callable[[], Awaitable[Any]] | None = None


@dataclass(frozen=True, slots=True)
class ErrorHandlingResult:
    """Outcome of ``ErrorClassifier.handle_error``."""

    classification: ErrorClassification
    actions: tuple[RecoveryAction, ...]
    should_retry: bool
    retry_delay_ms: int


@dataclass(frozen=True, slots=True)
class CommonError:
    kind: ErrorKind
    count: int
    percentage: float


@dataclass(frozen=True, slots=True)
class ErrorHandlingStats:
    """Aggregate error statistics. Percentages are 0-100."""

    total_errors: int
    errors_by_kind: dict[str, int]
    errors_by_severity: dict[str, int]
    common_errors: tuple[CommonError, ...]
    successful_recoveries: int
    failed_recoveries: int
    recovery_success_rate: float
    last_error: str | None
    last_updated: str


@dataclass(slots=True)
class _StatsState:
    by_kind: Counter[ErrorKind] = field(default_factory=Counter)
    by_severity: Counter[ErrorSeverity] = field(default_factory=Counter)
    successful_recoveries: int = 0
    failed_recoveries: int = 0
    last_error: str | None = None


def _default_recovery_actions() -> dict[ErrorKind, list[RecoveryAction]]:
    return {
        ErrorKind.RATE_LIMITED: [
            RecoveryAction("retry", "Wait and retry with exponential backoff", 1, automated=True),
        ],
        ErrorKind.AUTH_FAILED: [
            RecoveryAction("notify_user", "Notify user to check credentials", 1, automated=True),
        ],
        ErrorKind.SERVICE_UNAVAILABLE: [
            RecoveryAction("retry", "Retry after delay", 1, automated=True),
            RecoveryAction("fallback", "Use fallback service", 2, automated=False),
        ],
    }


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _kind_from_status(status_code: int) -> ErrorKind:
    return _STATUS_KINDS.get(status_code, ErrorKind.INTERNAL_ERROR)


def _kind_from_code(error_code: str) -> ErrorKind | None:
    lowered = error_code.lower()
    for needle, kind in _CODE_KINDS:
        if needle in lowered:
            return kind
    return None


def _kind_from_message(message: str) -> ErrorKind | None:
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return None


class ErrorClassifier:
    """Classifies failures and decides whether and when to retry them.

    Args:
        settings: Retry policy.
        rng: Uniform [0, 1) source for delay jitter. Default: ``random.random``.
        retry_condition: Optional hook consulted after the retryable and
            attempt checks pass; its answer is final.
        now: ISO-8601 timestamp provider for statistics.
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        *,
        rng: Callable[[], float] | None = None,
        retry_condition: Callable[[ErrorClassification], bool] | None = None,
        now: Callable[[], str] | None = None,
    ) -> None:
        self._settings = settings if settings is not None else RetrySettings()
        self._rng: Callable[[], float] = rng if rng is not None else random.random
        self._retry_condition = retry_condition
        self._now: Callable[[], str] = now if now is not None else _utc_now_iso
        self._recovery_actions = _default_recovery_actions()
        self._stats = _StatsState()

    @property
    def settings(self) -> RetrySettings:
        return self._settings

    # --- Classification ---

    def classify(
        self, failure: RawFailure | BaseException | Any, context: RetryContext
    ) -> ErrorClassification:
        """Classify ``failure``. Never raises."""
        try:
            raw = to_raw_failure(failure)
            return self._classify(raw, context)
        except Exception:
            logger.exception("error_classification_failed", request_id=context.request_id)
            return self.default_classification(failure)

    def _classify(self, raw: RawFailure, context: RetryContext) -> ErrorClassification:
        kind = ErrorKind.INTERNAL_ERROR
        if raw.status_code is not None:
            kind = _kind_from_status(raw.status_code)
        if raw.error_code:
            kind = _kind_from_code(raw.error_code) or kind
        if raw.message:
            kind = _kind_from_message(raw.message) or kind

        category, severity = _KIND_PROFILE.get(kind, _DEFAULT_PROFILE)
        retryable = kind in _RETRYABLE_KINDS or (
            raw.status_code is not None and raw.status_code in self._settings.retry_status_codes
        )
        return ErrorClassification(
            kind=kind,
            category=category,
            severity=severity,
            retryable=retryable,
            backoff_policy=_BACKOFF_POLICIES.get(kind, BackoffPolicy.NONE),
            user_message=_USER_MESSAGES.get(kind, _DEFAULT_USER_MESSAGE),
            technical_details=self._technical_details(raw, kind, context),
            recovery_suggestions=_SUGGESTIONS.get(kind, _DEFAULT_SUGGESTIONS),
        )

    @staticmethod
    def _technical_details(raw: RawFailure, kind: ErrorKind, context: RetryContext) -> str:
        lines = [
            f"Error Type: {kind.value}",
            f"Request ID: {context.request_id}",
            f"Region: {context.region}",
            f"Retry Attempt: {context.retry_attempt}",
            f"Timestamp: {context.request_timestamp}",
        ]
        if raw.message:
            lines.append(f"Error Message: {raw.message}")
        if raw.status_code is not None:
            lines.append(f"Status Code: {raw.status_code}")
        if raw.error_code:
            lines.append(f"Error Code: {raw.error_code}")
        return "\n".join(lines)

    @staticmethod
    def default_classification(failure: Any = None) -> ErrorClassification:
        """Safe classification used when classification itself fails."""
        try:
            details = str(failure) if failure is not None else ""
        except Exception:
            details = type(failure).__name__
        return ErrorClassification(
            kind=ErrorKind.INTERNAL_ERROR,
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            backoff_policy=BackoffPolicy.NONE,
            user_message=_FALLBACK_USER_MESSAGE,
            technical_details=details,
            recovery_suggestions=_FALLBACK_SUGGESTIONS,
        )

    # --- Retry policy ---

    def should_retry(self, classification: ErrorClassification, context: RetryContext) -> bool:
        if not classification.retryable:
            return False
        if context.retry_attempt >= self._settings.max_attempts:
            return False
        if self._retry_condition is not None:
            return bool(self._retry_condition(classification))
        return True

    def retry_delay_ms(self, attempt: int) -> int:
        """Exponential delay for ``attempt`` (0-based), capped, with optional jitter."""
        s = self._settings
        delay = min(s.initial_delay_ms * s.backoff_factor**attempt, s.max_delay_ms)
        if s.enable_jitter:
            delay += delay * _JITTER_FRACTION * self._rng()
        return math.floor(delay)

    def handle_error(
        self, failure: RawFailure | BaseException | Any, context: RetryContext
    ) -> ErrorHandlingResult:
        """Classify, record and decide on retry. Never raises."""
        try:
            classification = self.classify(failure, context)
            retry = self.should_retry(classification, context)
            delay_ms = self.retry_delay_ms(context.retry_attempt) if retry else 0
            self._record(classification)
            logger.info(
                "error_classified",
                request_id=context.request_id,
                call_type=context.call_type,
                kind=classification.kind.value,
                severity=classification.severity.value,
                retry=retry,
                retry_delay_ms=delay_ms,
            )
            return ErrorHandlingResult(
                classification=classification,
                actions=tuple(self._recovery_actions.get(classification.kind, ())),
                should_retry=retry,
                retry_delay_ms=delay_ms,
            )
        except Exception:
            logger.exception("error_handling_failed", request_id=context.request_id)
            return ErrorHandlingResult(
                classification=self.default_classification(failure),
                actions=(),
                should_retry=False,
                retry_delay_ms=0,
            )

    # --- Recovery ---

    def register_recovery_action(self, kind: ErrorKind, action: RecoveryAction) -> None:
        self._recovery_actions.setdefault(kind, []).append(action)

    def recovery_actions(self, kind: ErrorKind) -> tuple[RecoveryAction, ...]:
        return tuple(self._recovery_actions.get(kind, ()))

    async def execute_recovery(self, kind: ErrorKind) -> bool:
        """Run automated recovery actions for ``kind``, highest priority first.

        Stops at the first action that completes. Returns False if none did.
        """
        actions = sorted(self._recovery_actions.get(kind, ()), key=lambda a: a.priority, reverse=True)
        for action in actions:
            if not action.automated or action.execute is None:
                continue
            try:
                logger.info("recovery_action_started", kind=kind.value, action=action.type)
                await action.execute()
            except Exception:
                self._stats.failed_recoveries += 1
                logger.warning(
                    "recovery_action_failed", kind=kind.value, action=action.type, exc_info=True
                )
                continue
            self._stats.successful_recoveries += 1
            return True
        return False

    # --- Statistics ---

    def _record(self, classification: ErrorClassification) -> None:
        self._stats.by_kind[classification.kind] += 1
        self._stats.by_severity[classification.severity] += 1
        self._stats.last_error = self._now()

    def get_stats(self) -> ErrorHandlingStats:
        state = self._stats
        total = sum(state.by_kind.values())
        common = tuple(
            CommonError(kind=kind, count=count, percentage=count / total * 100)
            for kind, count in state.by_kind.most_common(_COMMON_ERRORS_LIMIT)
        )
        recoveries = state.successful_recoveries + state.failed_recoveries
        return ErrorHandlingStats(
            total_errors=total,
            errors_by_kind={kind.value: n for kind, n in state.by_kind.items()},
            errors_by_severity={sev.value: n for sev, n in state.by_severity.items()},
            common_errors=common,
            successful_recoveries=state.successful_recoveries,
            failed_recoveries=state.failed_recoveries,
            recovery_success_rate=(
                state.successful_recoveries / recoveries * 100 if recoveries else 0.0
            ),
            last_error=state.last_error,
            last_updated=self._now(),
        )

    def clear_stats(self) -> None:
        self._stats = _StatsState()
        logger.info("error_stats_cleared")

    def update_retry_config(self, **changes: Any) -> RetrySettings:
        """Apply validated retry setting changes.

        Raises:
            ConfigError: Unknown setting or invalid value.
        """
        self._settings = merge_settings(self._settings, **changes)
        logger.info("retry_config_updated", changes=sorted(changes))
        return self._settings
