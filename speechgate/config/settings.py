"""Centralized configuration via pydantic-settings.

All ``SPEECHGATE_*`` environment variables are read, validated, and exposed
here. Logging env vars (``SPEECHGATE_LOG_FORMAT``, ``SPEECHGATE_LOG_LEVEL``)
stay in ``speechgate.logging`` so logging works before settings load.

Usage::

    from speechgate.config.settings import get_settings

    settings = get_settings()
    print(settings.rate_limit.requests_per_minute)
    print(settings.coordinator.health_check.interval_s)

Components accept their own sub-settings object, so tests and embedding
applications can construct them directly::

    RateLimitSettings(requests_per_minute=5, enable_adaptive=False)

``.env`` files in the working directory are loaded automatically.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, TypeVar

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from speechgate.exceptions import ConfigError

_MIB = 1024 * 1024

_SettingsT = TypeVar("_SettingsT", bound=BaseSettings)


class CacheSettings(BaseSettings):
    """Generic LRU cache engine limits."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_entries: int = Field(default=100, ge=1, validation_alias="SPEECHGATE_CACHE_MAX_ENTRIES")
    max_bytes: int = Field(
        default=50 * _MIB, ge=1024, validation_alias="SPEECHGATE_CACHE_MAX_BYTES"
    )
    default_ttl_s: float = Field(
        default=3600.0, gt=0, validation_alias="SPEECHGATE_CACHE_DEFAULT_TTL_S"
    )
    enable_integrity_check: bool = Field(
        default=True, validation_alias="SPEECHGATE_CACHE_INTEGRITY_CHECK"
    )
    enable_events: bool = Field(default=True, validation_alias="SPEECHGATE_CACHE_EVENTS")


class TranscriptionCacheSettings(BaseSettings):
    """Transcription result cache tuning."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_entries: int = Field(
        default=500, ge=1, validation_alias="SPEECHGATE_TRANSCRIPTION_CACHE_MAX_ENTRIES"
    )
    max_bytes: int = Field(
        default=100 * _MIB, ge=1024, validation_alias="SPEECHGATE_TRANSCRIPTION_CACHE_MAX_BYTES"
    )
    base_ttl_s: float = Field(
        default=7 * 24 * 3600.0,
        gt=0,
        validation_alias="SPEECHGATE_TRANSCRIPTION_CACHE_TTL_S",
    )
    max_text_length: int = Field(
        default=1_000_000, ge=1, validation_alias="SPEECHGATE_TRANSCRIPTION_MAX_TEXT_LENGTH"
    )
    min_confidence: float = Field(
        default=0.7, ge=0.0, le=1.0, validation_alias="SPEECHGATE_TRANSCRIPTION_MIN_CONFIDENCE"
    )
    enable_content_validation: bool = Field(
        default=True, validation_alias="SPEECHGATE_TRANSCRIPTION_CONTENT_VALIDATION"
    )


class RateLimitSettings(BaseSettings):
    """Quota windows, concurrency ceiling and admission backoff."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    requests_per_minute: int = Field(
        default=20, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_PER_MINUTE"
    )
    requests_per_hour: int = Field(
        default=1000, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_PER_HOUR"
    )
    requests_per_day: int = Field(
        default=10000, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_PER_DAY"
    )
    concurrent_requests: int = Field(
        default=5, ge=1, le=1000, validation_alias="SPEECHGATE_RATE_LIMIT_CONCURRENT"
    )
    enable_adaptive: bool = Field(default=True, validation_alias="SPEECHGATE_RATE_LIMIT_ADAPTIVE")
    backoff_initial_ms: int = Field(
        default=1000, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_BACKOFF_INITIAL_MS"
    )
    backoff_max_ms: int = Field(
        default=30_000, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_BACKOFF_MAX_MS"
    )
    backoff_factor: float = Field(
        default=2.0, ge=1.0, le=10.0, validation_alias="SPEECHGATE_RATE_LIMIT_BACKOFF_FACTOR"
    )
    backoff_max_retries: int = Field(
        default=3, ge=0, validation_alias="SPEECHGATE_RATE_LIMIT_BACKOFF_MAX_RETRIES"
    )
    sweep_interval_s: float = Field(
        default=60.0, gt=0, validation_alias="SPEECHGATE_RATE_LIMIT_SWEEP_INTERVAL_S"
    )
    max_violations: int = Field(
        default=100, ge=1, validation_alias="SPEECHGATE_RATE_LIMIT_MAX_VIOLATIONS"
    )

    @model_validator(mode="after")
    def _windows_are_nested(self) -> RateLimitSettings:
        if not self.requests_per_minute <= self.requests_per_hour <= self.requests_per_day:
            msg = "requests_per_minute <= requests_per_hour <= requests_per_day must hold"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _backoff_bounds(self) -> RateLimitSettings:
        if self.backoff_initial_ms > self.backoff_max_ms:
            msg = "backoff_initial_ms must be <= backoff_max_ms"
            raise ValueError(msg)
        return self


class RetrySettings(BaseSettings):
    """Retry policy applied by the error classifier."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_attempts: int = Field(default=3, ge=0, le=20, validation_alias="SPEECHGATE_RETRY_MAX_ATTEMPTS")
    initial_delay_ms: int = Field(
        default=1000, ge=1, validation_alias="SPEECHGATE_RETRY_INITIAL_DELAY_MS"
    )
    max_delay_ms: int = Field(default=30_000, ge=1, validation_alias="SPEECHGATE_RETRY_MAX_DELAY_MS")
    backoff_factor: float = Field(
        default=2.0, ge=1.0, le=10.0, validation_alias="SPEECHGATE_RETRY_BACKOFF_FACTOR"
    )
    enable_jitter: bool = Field(default=True, validation_alias="SPEECHGATE_RETRY_JITTER")
    retry_status_codes: tuple[int, ...] = Field(
        default=(408, 429, 500, 502, 503, 504),
        validation_alias="SPEECHGATE_RETRY_STATUS_CODES",
    )

    @model_validator(mode="after")
    def _delay_bounds(self) -> RetrySettings:
        if self.initial_delay_ms > self.max_delay_ms:
            msg = "initial_delay_ms must be <= max_delay_ms"
            raise ValueError(msg)
        return self


class HealthCheckSettings(BaseSettings):
    """Periodic health checks run by the coordinator."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    enabled: bool = Field(default=False, validation_alias="SPEECHGATE_HEALTH_CHECK_ENABLED")
    interval_s: float = Field(
        default=60.0, gt=0, le=3600, validation_alias="SPEECHGATE_HEALTH_CHECK_INTERVAL_S"
    )
    timeout_s: float = Field(
        default=5.0, gt=0, le=120, validation_alias="SPEECHGATE_HEALTH_CHECK_TIMEOUT_S"
    )

    @model_validator(mode="after")
    def _timeout_lt_interval(self) -> HealthCheckSettings:
        if self.timeout_s >= self.interval_s:
            msg = "timeout_s must be < interval_s"
            raise ValueError(msg)
        return self


class CoordinatorSettings(BaseSettings):
    """API call coordinator behavior."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_concurrent_calls: int = Field(
        default=10, ge=1, validation_alias="SPEECHGATE_COORDINATOR_MAX_CONCURRENT"
    )
    default_timeout_s: float = Field(
        default=30.0, gt=0, le=600, validation_alias="SPEECHGATE_COORDINATOR_DEFAULT_TIMEOUT_S"
    )
    default_retries: int = Field(
        default=3, ge=0, le=20, validation_alias="SPEECHGATE_COORDINATOR_DEFAULT_RETRIES"
    )
    enable_caching: bool = Field(default=True, validation_alias="SPEECHGATE_COORDINATOR_CACHING")
    cache_size: int = Field(default=100, ge=1, validation_alias="SPEECHGATE_COORDINATOR_CACHE_SIZE")
    default_cache_ttl_s: float = Field(
        default=300.0, gt=0, validation_alias="SPEECHGATE_COORDINATOR_CACHE_TTL_S"
    )
    enable_deduplication: bool = Field(
        default=True, validation_alias="SPEECHGATE_COORDINATOR_DEDUPLICATION"
    )
    load_balancing: Literal["round_robin", "least_loaded", "region_affinity"] = Field(
        default="round_robin", validation_alias="SPEECHGATE_COORDINATOR_LOAD_BALANCING"
    )
    # None waits for admission indefinitely
    max_admission_wait_s: float | None = Field(
        default=300.0, gt=0, validation_alias="SPEECHGATE_COORDINATOR_MAX_ADMISSION_WAIT_S"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, gt=0, le=600, validation_alias="SPEECHGATE_COORDINATOR_SHUTDOWN_TIMEOUT_S"
    )
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)


class ClientPoolSettings(BaseSettings):
    """In-memory client pool limits."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_clients: int = Field(default=10, ge=1, validation_alias="SPEECHGATE_POOL_MAX_CLIENTS")
    idle_timeout_s: float = Field(
        default=300.0, gt=0, validation_alias="SPEECHGATE_POOL_IDLE_TIMEOUT_S"
    )
    enable_reuse: bool = Field(default=True, validation_alias="SPEECHGATE_POOL_REUSE")


class TransportSettings(BaseSettings):
    """HTTP transport endpoints and timeouts."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    base_url_template: str = Field(
        default="https://{region}.api.cognitive.microsoft.com/speechtotext/{api_version}",
        validation_alias="SPEECHGATE_TRANSPORT_BASE_URL",
    )
    token_url_template: str = Field(
        default="https://{region}.api.cognitive.microsoft.com/sts/v1.0/issueToken",
        validation_alias="SPEECHGATE_TRANSPORT_TOKEN_URL",
    )
    api_version: str = Field(default="v3.1", validation_alias="SPEECHGATE_TRANSPORT_API_VERSION")
    connect_timeout_s: float = Field(
        default=5.0, gt=0, le=120, validation_alias="SPEECHGATE_TRANSPORT_CONNECT_TIMEOUT_S"
    )
    token_lifetime_s: int = Field(
        default=600, ge=1, validation_alias="SPEECHGATE_TRANSPORT_TOKEN_LIFETIME_S"
    )

    @model_validator(mode="after")
    def _templates_have_region(self) -> TransportSettings:
        for name in ("base_url_template", "token_url_template"):
            if "{region}" not in getattr(self, name):
                msg = f"{name} must contain a '{{region}}' placeholder"
                raise ValueError(msg)
        return self


class SpeechGateSettings(BaseSettings):
    """Root settings: aggregates all component settings.

    Loads ``.env`` from the current directory when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    cache: CacheSettings = Field(default_factory=CacheSettings)
    transcription_cache: TranscriptionCacheSettings = Field(
        default_factory=TranscriptionCacheSettings
    )
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)
    client_pool: ClientPoolSettings = Field(default_factory=ClientPoolSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)


@lru_cache(maxsize=1)
def get_settings() -> SpeechGateSettings:
    """Return the process-wide ``SpeechGateSettings`` instance.

    The result is cached; subsequent calls return the same object.
    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    return SpeechGateSettings()


def merge_settings(current: _SettingsT, **changes: Any) -> _SettingsT:
    """Return a validated copy of ``current`` with ``changes`` applied.

    Backs the ``update_config(**changes)`` methods of the components.

    Raises:
        ConfigError: Unknown field name or a value failing validation.
    """
    unknown = set(changes) - set(type(current).model_fields)
    if unknown:
        raise ConfigError(f"unknown setting(s) for {type(current).__name__}: {sorted(unknown)}")
    try:
        return type(current).model_validate({**current.model_dump(), **changes})
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
