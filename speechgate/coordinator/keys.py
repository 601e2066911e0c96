"""Deterministic request keys shared by the response cache and deduplication."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from speechgate.cache.integrity import canonical_json, sha256_hex

if TYPE_CHECKING:
    from collections.abc import Mapping

    from speechgate._types import APICallRequest, CallType


def cache_key(call_type: CallType, region: str, payload: Mapping[str, Any]) -> str:
    """Key of a logical call.

    Payloads are compared by canonical JSON, so dict ordering does not
    matter and deep-equal payloads collide on purpose.
    """
    return sha256_hex(
        canonical_json({"call_type": call_type.value, "region": region, "payload": payload})
    )


def request_key(request: APICallRequest) -> str:
    return cache_key(request.call_type, request.service.region, request.payload)
