"""TranscriptionCache: content-addressed cache of finished transcriptions.

Keys are derived from the audio location, not the caller's request id:

    sha256(canonical_json({url, auth_headers, content_hash, date}))

- ``url`` is reduced to ``scheme://host/path`` so signed query strings and
  fragments do not fragment the cache
- ``auth_headers`` are rendered as ``k:v;k:v`` sorted by header name
- ``date`` is the current UTC day, so every key rotates daily

Entries live for ``base_ttl_s * max(0.5, confidence)``: low-confidence
results age out sooner.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

from speechgate.cache.engine import CacheEngine, CacheStats
from speechgate.cache.integrity import canonical_json, json_checksum, json_size, sha256_hex
from speechgate.config.settings import CacheSettings, TranscriptionCacheSettings
from speechgate.exceptions import TranscriptionValidationError
from speechgate.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from speechgate._types import TranscriptionData

logger = get_logger("cache.transcription")

# Fixed per-entry overhead added to the size estimate
_ENTRY_OVERHEAD_BYTES = 24

# TTL multiplier floor for low-confidence results
_MIN_TTL_FACTOR = 0.5

# Analytics bucket boundaries
_HIGH_CONFIDENCE = 0.9
_MEDIUM_CONFIDENCE = 0.7
_SMALL_TEXT_BYTES = 1024
_MEDIUM_TEXT_BYTES = 10 * 1024


def _utc_today() -> date:
    return datetime.now(UTC).date()


def transcription_size(data: TranscriptionData) -> int:
    """Estimated footprint: text bytes + words JSON + metadata JSON + overhead."""
    return (
        len(data.text.encode("utf-8"))
        + json_size(data.words)
        + json_size(data.service_metadata)
        + _ENTRY_OVERHEAD_BYTES
    )


def transcription_checksum(data: TranscriptionData) -> str:
    """Digest of the fields that identify a transcription's content."""
    return json_checksum(
        {
            "text": data.text,
            "confidence": data.confidence,
            "language": data.language,
            "duration": data.duration_s,
            "word_count": len(data.words),
        }
    )


@dataclass(frozen=True, slots=True)
class TranscriptionLookup:
    """Result of ``TranscriptionCache.lookup_transcription``."""

    found: bool
    hash: str
    cache_size: int
    hit_ratio: float
    bytes_used: int
    data: TranscriptionData | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TranscriptionAnalytics:
    """Aggregate view over the cached transcriptions."""

    total: int
    languages: dict[str, int]
    average_confidence: float
    average_duration_s: float
    total_duration_s: float
    confidence_buckets: dict[str, int]
    size_buckets: dict[str, int]


class TranscriptionCache:
    """Validating cache of transcription results keyed by audio location.

    Args:
        settings: Limits and validation switches.
        clock: Wall-clock function in seconds, forwarded to the engine.
        today: UTC date provider used in lookup hashes.
    """

    def __init__(
        self,
        settings: TranscriptionCacheSettings | None = None,
        *,
        clock: Callable[[], float] | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._settings = settings if settings is not None else TranscriptionCacheSettings()
        self._today = today if today is not None else _utc_today
        self._clock = clock if clock is not None else time.time
        self._engine: CacheEngine[TranscriptionData] = CacheEngine(
            CacheSettings(
                max_entries=self._settings.max_entries,
                max_bytes=self._settings.max_bytes,
                default_ttl_s=self._settings.base_ttl_s,
            ),
            sizer=transcription_size,
            checksum=transcription_checksum,
            clock=self._clock,
            name="transcription",
        )

    @property
    def engine(self) -> CacheEngine[TranscriptionData]:
        return self._engine

    def compute_lookup_hash(
        self,
        audio_url: str,
        auth_headers: Mapping[str, str] | None = None,
        content_hash: str | None = None,
    ) -> str:
        """Deterministic cache key for an audio source on the current UTC day."""
        parts = urlsplit(audio_url)
        normalized_url = urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
        headers = ";".join(f"{k}:{v}" for k, v in sorted((auth_headers or {}).items()))
        return sha256_hex(
            canonical_json(
                {
                    "url": normalized_url,
                    "auth_headers": headers,
                    "content_hash": content_hash or "",
                    "date": self._today().isoformat(),
                }
            )
        )

    def cache_transcription(
        self,
        audio_url: str,
        data: TranscriptionData,
        *,
        auth_headers: Mapping[str, str] | None = None,
        content_hash: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Validate and store ``data``. Returns the lookup hash.

        Raises:
            TranscriptionValidationError: Data fails validation.
        """
        if self._settings.enable_content_validation:
            self._validate(data)

        lookup_hash = self.compute_lookup_hash(audio_url, auth_headers, content_hash)
        ttl_s = self._settings.base_ttl_s * max(_MIN_TTL_FACTOR, data.confidence)
        entry_metadata: dict[str, Any] = {
            "language": data.language,
            "confidence": data.confidence,
            "duration_s": data.duration_s,
            "word_count": len(data.words),
        }
        if metadata:
            entry_metadata.update(metadata)

        self._engine.set(lookup_hash, data, ttl_s=ttl_s, metadata=entry_metadata)
        logger.debug(
            "transcription_cached",
            hash=lookup_hash[:12],
            language=data.language,
            confidence=data.confidence,
            ttl_s=ttl_s,
        )
        return lookup_hash

    def lookup_transcription(
        self,
        audio_url: str,
        *,
        auth_headers: Mapping[str, str] | None = None,
        content_hash: str | None = None,
        require_min_confidence: bool = False,
    ) -> TranscriptionLookup:
        """Find a cached transcription for an audio source.

        With ``require_min_confidence``, hits below the configured minimum
        confidence are reported as misses.
        """
        lookup_hash = self.compute_lookup_hash(audio_url, auth_headers, content_hash)
        result = self._engine.get(lookup_hash)
        data = result.data if result.found else None

        if (
            data is not None
            and require_min_confidence
            and data.confidence < self._settings.min_confidence
        ):
            data = None

        metadata: dict[str, Any] = {}
        if data is not None:
            entry = self._engine.peek(lookup_hash)
            if entry is not None:
                metadata = dict(entry.metadata)

        stats = self._engine.get_stats()
        return TranscriptionLookup(
            found=data is not None,
            hash=lookup_hash,
            cache_size=stats.entry_count,
            hit_ratio=stats.hit_ratio,
            bytes_used=stats.bytes_used,
            data=data,
            metadata=metadata,
        )

    def by_language(self, language: str) -> list[TranscriptionData]:
        """Cached transcriptions in ``language``, highest confidence first."""
        matches = [e.data for e in self._engine.entries() if e.data.language == language]
        return sorted(matches, key=lambda d: d.confidence, reverse=True)

    def by_confidence(self, minimum: float, maximum: float = 1.0) -> list[TranscriptionData]:
        """Cached transcriptions with confidence in [minimum, maximum], newest first."""
        matches = [
            e.data for e in self._engine.entries() if minimum <= e.data.confidence <= maximum
        ]
        return sorted(matches, key=lambda d: d.timestamp, reverse=True)

    def clear_older_than(self, cutoff: datetime) -> int:
        """Delete entries cached before ``cutoff``. Returns the number removed."""
        threshold = cutoff.timestamp()
        stale = [e.key for e in self._engine.entries() if e.created_at < threshold]
        for key in stale:
            self._engine.delete(key)
        if stale:
            logger.info("transcriptions_cleared", count=len(stale), cutoff=cutoff.isoformat())
        return len(stale)

    def get_analytics(self) -> TranscriptionAnalytics:
        """Language, confidence, duration and size distribution of cached results."""
        items = [e.data for e in self._engine.entries()]
        total = len(items)
        confidence_buckets = {"high": 0, "medium": 0, "low": 0}
        size_buckets = {"small": 0, "medium": 0, "large": 0}

        for item in items:
            if item.confidence > _HIGH_CONFIDENCE:
                confidence_buckets["high"] += 1
            elif item.confidence >= _MEDIUM_CONFIDENCE:
                confidence_buckets["medium"] += 1
            else:
                confidence_buckets["low"] += 1

            text_bytes = len(item.text.encode("utf-8"))
            if text_bytes < _SMALL_TEXT_BYTES:
                size_buckets["small"] += 1
            elif text_bytes < _MEDIUM_TEXT_BYTES:
                size_buckets["medium"] += 1
            else:
                size_buckets["large"] += 1

        total_duration = sum(item.duration_s for item in items)
        return TranscriptionAnalytics(
            total=total,
            languages=dict(Counter(item.language for item in items)),
            average_confidence=sum(i.confidence for i in items) / total if total else 0.0,
            average_duration_s=total_duration / total if total else 0.0,
            total_duration_s=total_duration,
            confidence_buckets=confidence_buckets,
            size_buckets=size_buckets,
        )

    def get_stats(self) -> CacheStats:
        return self._engine.get_stats()

    def clear(self) -> None:
        self._engine.clear()

    def _validate(self, data: TranscriptionData) -> None:
        if not data.text or not data.text.strip():
            raise TranscriptionValidationError("text is empty")
        if not 0.0 <= data.confidence <= 1.0:
            raise TranscriptionValidationError(
                f"confidence {data.confidence} outside [0, 1]"
            )
        if data.duration_s <= 0:
            raise TranscriptionValidationError(f"duration {data.duration_s}s must be positive")
        if len(data.text) > self._settings.max_text_length:
            raise TranscriptionValidationError(
                f"text length {len(data.text)} exceeds {self._settings.max_text_length}"
            )
        if data.confidence < self._settings.min_confidence:
            raise TranscriptionValidationError(
                f"confidence {data.confidence} below minimum {self._settings.min_confidence}"
            )
        for index, word in enumerate(data.words):
            if (
                not word.word
                or word.start < 0
                or word.end < word.start
                or not 0.0 <= word.confidence <= 1.0
            ):
                raise TranscriptionValidationError(f"malformed word timing at index {index}")
