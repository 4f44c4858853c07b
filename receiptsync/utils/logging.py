"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

from receiptsync.config.settings import settings

# Event keys whose values must never reach a log sink
REDACTED_KEYS = frozenset({"access_token", "refresh_token", "tokens", "code", "client_secret", "api_key"})


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask OAuth tokens and other secrets passed as log fields."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def configure_logging() -> None:
    """Configure structured logging."""
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.app.log_format == "json":
        processors: list[Processor] = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.app.log_level),
    )


def bind_job_context(**context: Any) -> None:
    """Attach sync job identifiers to every log line emitted by the current task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_job_context(*keys: str) -> None:
    """Remove identifiers bound by bind_job_context."""
    structlog.contextvars.unbind_contextvars(*keys)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance."""
    return structlog.get_logger(name)
