"""Checksum and size helpers for cached payloads.

Checksums are sha256 over a canonical JSON rendering (sorted keys, no
whitespace), so logically equal payloads hash equally regardless of dict
insertion order. Values JSON cannot represent natively (datetimes, enums,
dataclasses) are rendered through ``_json_default``.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any

CHECKSUM_ALGORITHM = "sha256"

# Size category boundaries (bytes)
_SMALL_MAX = 1024
_MEDIUM_MAX = 1024 * 1024
_LARGE_MAX = 10 * 1024 * 1024


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, set | frozenset):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.hex()
    return repr(value)


def canonical_json(value: Any) -> str:
    """Deterministic JSON text for ``value``."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def sha256_hex(text: str) -> str:
    """Hex sha256 digest of UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def json_checksum(value: Any) -> str:
    """Checksum of an arbitrary JSON-like value."""
    return sha256_hex(canonical_json(value))


def json_size(value: Any) -> int:
    """Approximate in-memory footprint: UTF-8 length of the canonical JSON."""
    return len(canonical_json(value).encode("utf-8"))


def size_category(size_bytes: int) -> str:
    """Bucket a byte size into small / medium / large / xlarge."""
    if size_bytes < _SMALL_MAX:
        return "small"
    if size_bytes < _MEDIUM_MAX:
        return "medium"
    if size_bytes < _LARGE_MAX:
        return "large"
    return "xlarge"
