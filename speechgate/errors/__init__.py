"""Failure normalization and classification."""

from __future__ import annotations

from speechgate.errors.adapter import parse_error_body, response_error_details, to_raw_failure
from speechgate.errors.classifier import (
    CommonError,
    ErrorClassifier,
    ErrorHandlingResult,
    ErrorHandlingStats,
    RecoveryAction,
)

__all__ = [
    "CommonError",
    "ErrorClassifier",
    "ErrorHandlingResult",
    "ErrorHandlingStats",
    "RecoveryAction",
    "parse_error_body",
    "response_error_details",
    "to_raw_failure",
]
