"""Structured logging for speechgate.

Uses structlog with stdlib logging as the backend. Two renderers:
- console: human-readable for development (default)
- json: one object per line for log shippers

Every event passes through ``redact_secrets`` so service credentials bound
into a log call never reach the output.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping

_configured = False

# Event keys whose values are replaced before rendering
_SECRET_KEYS = frozenset(
    {"credential", "subscription_key", "api_key", "authorization", "token", "auth_headers"}
)
_REDACTED = "***"


def redact_secrets(
    _logger: Any,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor masking values of credential-like keys."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = _REDACTED
    return event_dict


def configure_logging(
    log_format: str | None = None,
    level: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Idempotent: only the first call takes effect.

    Args:
        log_format: "json" or "console". Default via SPEECHGATE_LOG_FORMAT env or "console".
        level: DEBUG, INFO, WARNING or ERROR. Default via SPEECHGATE_LOG_LEVEL env or "INFO".
    """
    global _configured
    if _configured:
        return

    resolved_format = log_format or os.environ.get("SPEECHGATE_LOG_FORMAT", "console")
    resolved_level = level or os.environ.get("SPEECHGATE_LOG_LEVEL", "INFO")

    shared_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if resolved_format == "json":
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    # Only the package logger is touched; host applications keep their root config.
    package_logger = logging.getLogger("speechgate")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.propagate = False
    package_logger.setLevel(getattr(logging, resolved_level.upper(), logging.INFO))

    _configured = True


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Return a logger bound to a component.

    Args:
        component: Dotted component name (e.g., "ratelimit", "cache.transcription").

    Returns:
        BoundLogger named ``speechgate.<component>`` with the component field bound.
    """
    configure_logging()
    return structlog.get_logger(f"speechgate.{component}").bind(  # type: ignore[no-any-return]
        component=component
    )
