"""In-memory caches: the generic LRU engine and the transcription cache."""

from __future__ import annotations

from speechgate.cache.engine import CacheEngine, CacheEntry, CacheEvent, CacheEventType, CacheStats
from speechgate.cache.transcription import TranscriptionCache, TranscriptionLookup

__all__ = [
    "CacheEngine",
    "CacheEntry",
    "CacheEvent",
    "CacheEventType",
    "CacheStats",
    "TranscriptionCache",
    "TranscriptionLookup",
]
